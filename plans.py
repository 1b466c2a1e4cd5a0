"""
PedaClic — premium plans and access rules.
Prices are in FCFA (XOF). Durations are in days.
"""
import datetime

# ─── PLAN CATALOGUE ───────────────────────────────────────────────────────────

PLANS = {
    'a_la_carte_1':    {'name': '1 cours',           'price': 1000,  'days': 30,  'max_courses': 1,    'unlimited': False},
    'a_la_carte_3':    {'name': '3 cours',           'price': 2000,  'days': 30,  'max_courses': 3,    'unlimited': False},
    'a_la_carte_7':    {'name': '7 cours',           'price': 5000,  'days': 30,  'max_courses': 7,    'unlimited': False},
    'a_la_carte_tous': {'name': 'Tous les contenus', 'price': 25000, 'days': 270, 'max_courses': None, 'unlimited': True},
    'illimite_3m':     {'name': '3 mois',            'price': 10000, 'days': 90,  'max_courses': None, 'unlimited': True},
    'illimite_6m':     {'name': '6 mois',            'price': 20000, 'days': 180, 'max_courses': None, 'unlimited': True},
    'illimite_1an':    {'name': '1 an',              'price': 30000, 'days': 365, 'max_courses': None, 'unlimited': True},
}

# Plans sold before the catalogue above existed
LEGACY_UNLIMITED = ('mensuel', 'annuel')

# Pro plans have no resource quota
PRO_PLANS      = ('illimite_1an', 'a_la_carte_tous')
RESOURCE_QUOTA = 30

CURRENCY = 'XOF'


def get_plan(plan_id: str) -> dict:
    if plan_id not in PLANS:
        raise ValueError(f'Unknown plan: {plan_id}')
    return dict(PLANS[plan_id], id=plan_id, currency=CURRENCY)


def list_plans() -> list:
    return [get_plan(p) for p in PLANS]


def is_a_la_carte(plan_id) -> bool:
    return bool(plan_id) and plan_id.startswith('a_la_carte_')


def max_courses(plan_id):
    """Number of courses a plan may pick, None for unlimited."""
    if not plan_id or plan_id not in PLANS:
        return None
    return PLANS[plan_id]['max_courses']


def has_unlimited_access(plan_id) -> bool:
    if not plan_id:
        return False
    if plan_id in PLANS:
        return PLANS[plan_id]['unlimited']
    return plan_id in LEGACY_UNLIMITED


def can_access_course(course_id: str, is_premium: bool, plan_id, chosen: list) -> bool:
    if not is_premium:
        return False
    plan_id = plan_id or 'mensuel'
    if has_unlimited_access(plan_id):
        return True
    if not is_a_la_carte(plan_id):
        return True
    return course_id in (chosen or [])


def remaining_courses(plan_id, chosen: list):
    cap = max_courses(plan_id or 'mensuel')
    if cap is None:
        return None
    return max(0, cap - len(chosen or []))


# ─── RESOURCE QUOTA ───────────────────────────────────────────────────────────

def is_pro(plan_id) -> bool:
    return plan_id in PRO_PLANS


def resource_limit(plan_id):
    return None if is_pro(plan_id) else RESOURCE_QUOTA


def can_consume(plan_id, usage: int) -> bool:
    limit = resource_limit(plan_id)
    return limit is None or (usage or 0) < limit


# ─── SUBSCRIPTION DATES ───────────────────────────────────────────────────────

def subscription_end(plan_id: str, start: datetime.datetime = None) -> datetime.datetime:
    start = start or datetime.datetime.utcnow()
    return start + datetime.timedelta(days=get_plan(plan_id)['days'])


def is_subscription_active(is_premium: bool, end, now: datetime.datetime = None) -> bool:
    """A premium flag without an end date never expires."""
    if not is_premium:
        return False
    if end is None:
        return True
    return end > (now or datetime.datetime.utcnow())
