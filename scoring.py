"""
PedaClic — quiz scoring, student statistics, progression and badges.
Every function here works on plain dicts/lists so routes can feed it
rows fetched wholesale from the database.
"""
import math
import random
import re
import uuid

DIFFICULTIES      = ('facile', 'moyen', 'difficile')
QUESTION_TYPES    = ('qcm_unique', 'qcm_multiple', 'drag_drop', 'mise_en_relation', 'essai')
ESSAY_MODES       = ('manuelle', 'semi_auto', 'mots_cles')
HIDDEN_FIELDS     = ('answer', 'explanation', 'keywords', 'model_answer')
DEFAULT_PASS_MARK = 50
TREND_THRESHOLD   = 5
TAG_RE            = re.compile(r'<[^>]*>')


def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def round_points(x: float) -> float:
    """Partial credit keeps two decimals."""
    return math.floor(x * 100 + 0.5) / 100


def _mean(values) -> float:
    values = list(values)
    return sum(values) / len(values) if values else 0.0


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _new_id(prefix: str) -> str:
    return f'{prefix}_{uuid.uuid4().hex[:12]}'


# ─── QUIZ EDITING ─────────────────────────────────────────────────────────────

def _options(q: dict, i: int) -> list:
    options = [str(o).strip() for o in (q.get('options') or [])]
    if len(options) < 2 or not all(options):
        raise ValueError(f'Question {i} needs at least two non-empty options.')
    return options


def _single_choice(q: dict, i: int) -> dict:
    options = _options(q, i)
    answer = q.get('answer')
    if not _is_int(answer) or not 0 <= answer < len(options):
        raise ValueError(f'Question {i} has an invalid correct answer.')
    return {'options': options, 'answer': answer}


def _multiple_choice(q: dict, i: int) -> dict:
    options = _options(q, i)
    answer = q.get('answer')
    if (not isinstance(answer, list) or not answer
            or not all(_is_int(a) and 0 <= a < len(options) for a in answer)):
        raise ValueError(f'Question {i} needs at least one valid correct option.')
    return {'options': options, 'answer': sorted(set(answer)),
            'partial_credit': bool(q.get('partial_credit', True))}


def _ordering(q: dict, i: int) -> dict:
    # items arrive in their correct order, as text or as {'id', 'text'}
    items = []
    for item in q.get('items') or []:
        if isinstance(item, dict):
            text, item_id = str(item.get('text') or '').strip(), item.get('id')
        else:
            text, item_id = str(item).strip(), None
        if not text:
            raise ValueError(f'Question {i} has an empty item.')
        items.append({'id': str(item_id or _new_id('it')), 'text': text})
    if len(items) < 2:
        raise ValueError(f'Question {i} needs at least two items to order.')
    if len({it['id'] for it in items}) != len(items):
        raise ValueError(f'Question {i} reuses an item id.')
    instruction = (q.get('instruction') or '').strip() or 'Remettez les éléments dans le bon ordre'
    return {'items': items, 'answer': [it['id'] for it in items], 'instruction': instruction}


def _matching(q: dict, i: int) -> dict:
    pairs = []
    for pair in q.get('pairs') or []:
        if not isinstance(pair, dict):
            raise ValueError(f'Question {i} has a malformed pair.')
        left  = str(pair.get('left') or '').strip()
        right = str(pair.get('right') or '').strip()
        if not left or not right:
            raise ValueError(f'Question {i} has an incomplete pair.')
        pairs.append({'id': str(pair.get('id') or _new_id('p')), 'left': left,
                      'right_id': str(pair.get('right_id') or _new_id('r')), 'right': right})
    if len(pairs) < 2:
        raise ValueError(f'Question {i} needs at least two pairs.')
    ids = [p['id'] for p in pairs] + [p['right_id'] for p in pairs]
    if len(set(ids)) != len(ids):
        raise ValueError(f'Question {i} reuses a pair id.')
    return {'pairs': pairs, 'answer': {p['id']: p['right_id'] for p in pairs}}


def _essay(q: dict, i: int) -> dict:
    mode = q.get('mode') or 'manuelle'
    if mode not in ESSAY_MODES:
        raise ValueError(f'Question {i} has an unknown correction mode: {mode}.')
    keywords = []
    for kw in q.get('keywords') or []:
        word   = str((kw.get('word') if isinstance(kw, dict) else kw) or '').strip()
        weight = kw.get('weight', 1) if isinstance(kw, dict) else 1
        if not word:
            raise ValueError(f'Question {i} has an empty keyword.')
        if not _is_int(weight) or not 1 <= weight <= 5:
            raise ValueError(f'Question {i}: keyword weights go from 1 to 5.')
        keywords.append({'word': word, 'weight': weight})
    if mode == 'mots_cles' and not keywords:
        raise ValueError(f'Question {i} is graded by keywords but lists none.')
    fields = {'mode': mode, 'keywords': keywords,
              'model_answer': (q.get('model_answer') or '').strip()}
    for key in ('min_words', 'max_words'):
        if q.get(key) is not None:
            if not _is_int(q[key]) or q[key] < 0:
                raise ValueError(f'Question {i}: {key} must be a positive number.')
            fields[key] = q[key]
    if fields.get('min_words', 0) > fields.get('max_words', math.inf):
        raise ValueError(f'Question {i}: min_words is above max_words.')
    return fields


TYPE_FIELDS = {
    'qcm_unique':       _single_choice,
    'qcm_multiple':     _multiple_choice,
    'drag_drop':        _ordering,
    'mise_en_relation': _matching,
    'essai':            _essay,
}


def validate_questions(questions) -> list:
    """Check an editor payload and return a normalised copy. Raises ValueError."""
    if not isinstance(questions, list) or not questions:
        raise ValueError('A quiz needs at least one question.')
    clean, seen = [], set()
    for i, q in enumerate(questions, start=1):
        if not isinstance(q, dict):
            raise ValueError(f'Question {i} is malformed.')
        qtype = q.get('type') or 'qcm_unique'
        if qtype not in QUESTION_TYPES:
            raise ValueError(f'Question {i} has an unknown type: {qtype}.')
        text = (q.get('question') or '').strip()
        if not text:
            raise ValueError(f'Question {i} has no text.')
        difficulty = q.get('difficulty') or 'moyen'
        if difficulty not in DIFFICULTIES:
            raise ValueError(f'Question {i} has an unknown difficulty: {difficulty}.')
        points = q.get('points', 1)
        if not isinstance(points, (int, float)) or isinstance(points, bool) or points <= 0:
            raise ValueError(f'Question {i} must be worth a positive number of points.')
        # submitted answers are keyed by JSON object keys, always strings
        qid = str(q.get('id') or _new_id('q'))
        if qid in seen:
            raise ValueError(f'Question {i} reuses id {qid}.')
        seen.add(qid)
        item = {'id': qid, 'type': qtype, 'question': text,
                'explanation': (q.get('explanation') or '').strip(),
                'difficulty': difficulty, 'points': points}
        item.update(TYPE_FIELDS[qtype](q, i))
        clean.append(item)
    return clean


def public_question(q: dict) -> dict:
    """What a student sees: no answer key, orderable items shuffled."""
    out = {k: v for k, v in q.items() if k not in HIDDEN_FIELDS}
    qtype = q.get('type')
    if qtype == 'drag_drop':
        items = list(q['items'])
        random.Random(q['id']).shuffle(items)
        out['items'] = items
    elif qtype == 'mise_en_relation':
        out.pop('pairs')
        right = [{'id': p['right_id'], 'text': p['right']} for p in q['pairs']]
        random.Random(q['id']).shuffle(right)
        out['left']  = [{'id': p['id'], 'text': p['left']} for p in q['pairs']]
        out['right'] = right
    return out


def strip_answer_key(questions: list) -> list:
    return [public_question(q) for q in questions]


def quiz_stats(questions: list) -> dict:
    questions = questions or []
    return {
        'question_count': len(questions),
        'total_points':   sum(q.get('points') or 1 for q in questions),
        'by_difficulty':  {d: sum(1 for q in questions if q.get('difficulty') == d)
                           for d in DIFFICULTIES},
        'by_type':        {t: sum(1 for q in questions if (q.get('type') or 'qcm_unique') == t)
                           for t in QUESTION_TYPES},
    }


# ─── QUIZ GRADING ─────────────────────────────────────────────────────────────

def coerce_answer(qtype: str, value):
    """Bring a submitted answer to the shape its question type expects."""
    if qtype == 'qcm_multiple':
        return sorted({a for a in value if _is_int(a)}) if isinstance(value, list) else []
    if qtype == 'drag_drop':
        return [str(a) for a in value] if isinstance(value, list) else []
    if qtype == 'mise_en_relation':
        return {str(k): str(v) for k, v in value.items()} if isinstance(value, dict) else {}
    if qtype == 'essai':
        return value if isinstance(value, str) else ''
    return value if _is_int(value) else -1


def _share(points, hits, total) -> float:
    return round_points(points * hits / total) if total else 0


def grade_question(q: dict, given) -> dict:
    """
    Grade one coerced answer. Multiple choice, ordering and matching give
    proportional credit; essays are scored on weighted keywords, or left
    for the teacher to grade.
    """
    qtype  = q.get('type') or 'qcm_unique'
    points = q.get('points') or 1
    awarded, correct, needs_review = 0, False, False

    if qtype == 'qcm_unique':
        correct = given == q['answer']
        awarded = points if correct else 0
    elif qtype == 'qcm_multiple':
        right, picked = set(q['answer']), set(given)
        if picked == right:
            correct, awarded = True, points
        elif q.get('partial_credit', True) and picked and picked <= right:
            awarded = _share(points, len(picked), len(right))
    elif qtype == 'drag_drop':
        order = q['answer']
        hits = sum(1 for a, b in zip(given, order) if a == b)
        correct = hits == len(order)
        awarded = points if correct else _share(points, hits, len(order))
    elif qtype == 'mise_en_relation':
        key = q['answer']
        hits = sum(1 for left, right in key.items() if given.get(left) == right)
        correct = hits == len(key)
        awarded = points if correct else _share(points, hits, len(key))
    else:
        keywords = q.get('keywords') or []
        if q.get('mode') == 'mots_cles' and keywords:
            text  = TAG_RE.sub('', given).lower()
            total = sum(k['weight'] for k in keywords)
            found = sum(k['weight'] for k in keywords if k['word'].lower() in text)
            correct = found == total
            awarded = points if correct else _share(points, found, total)
        else:
            needs_review = True

    return {'id': q['id'], 'type': qtype, 'given': given,
            'answer': q.get('model_answer') if qtype == 'essai' else q.get('answer'),
            'points_awarded': awarded, 'points_max': points,
            'correct': correct, 'partial': 0 < awarded < points,
            'needs_review': needs_review, 'explanation': q.get('explanation', '')}


def summarise(details: list, pass_mark=None) -> dict:
    score = round_points(sum(d['points_awarded'] for d in details))
    total = sum(d['points_max'] for d in details)
    pct = round_half_up(score / total * 100) if total > 0 else 0
    return {
        'score':          score,
        'total_points':   total,
        'percentage':     pct,
        'passed':         pct >= (pass_mark or DEFAULT_PASS_MARK),
        'question_count': len(details),
        'correct_count':  sum(1 for d in details if d['correct']),
        'needs_review':   any(d['needs_review'] for d in details),
    }


def score_quiz(questions: list, answers, pass_mark=None) -> dict:
    """
    Grade a submission against the answer key.
    `answers` is either {question_id: answer} or a list aligned with the
    questions. Missing single-choice answers are recorded as -1.
    """
    if isinstance(answers, dict):
        raw = [answers.get(str(q['id'])) for q in questions]
    else:
        answers = list(answers or [])
        raw = [answers[i] if i < len(answers) else None for i in range(len(questions))]

    details = [grade_question(q, coerce_answer(q.get('type') or 'qcm_unique', a))
               for q, a in zip(questions, raw)]
    out = summarise(details, pass_mark)
    out['answers']    = [d['given'] for d in details]
    out['correction'] = details
    return out


def review_answer(details: list, question_id: str, points, comment: str = '') -> list:
    """Teacher grading of one answer. Returns updated details; raises ValueError."""
    details = [dict(d) for d in details]
    for d in details:
        if d['id'] == question_id:
            break
    else:
        raise ValueError('That question is not part of this result.')
    if not isinstance(points, (int, float)) or isinstance(points, bool) \
            or not 0 <= points <= d['points_max']:
        raise ValueError(f"Points must be between 0 and {d['points_max']}.")
    points = round_points(points)
    d.update(points_awarded=points, correct=points == d['points_max'],
             partial=0 < points < d['points_max'], needs_review=False,
             comment=(comment or '').strip())
    return details


# ─── STUDENT STATISTICS ───────────────────────────────────────────────────────

def student_progress(results: list) -> dict:
    """`results` must be sorted newest first."""
    if not results:
        return {'attempts': 0, 'passed': 0, 'average': 0, 'best': 0,
                'total_time_sec': 0, 'pass_streak': 0, 'best_pass_streak': 0}

    current = 0
    for r in results:
        if not r['passed']:
            break
        current += 1

    best, run = 0, 0
    for r in results:
        run = run + 1 if r['passed'] else 0
        best = max(best, run)

    return {
        'attempts':         len(results),
        'passed':           sum(1 for r in results if r['passed']),
        'average':          round_half_up(_mean(r['percentage'] for r in results)),
        'best':             max(r['percentage'] for r in results),
        'total_time_sec':   sum(r.get('elapsed_sec') or 0 for r in results),
        'pass_streak':      current,
        'best_pass_streak': best,
    }


def _trend(pcts: list) -> str:
    if len(pcts) < 4:
        return 'stable'
    recent, older = _mean(pcts[:3]), _mean(pcts[3:6])
    if recent - older > TREND_THRESHOLD:
        return 'up'
    if older - recent > TREND_THRESHOLD:
        return 'down'
    return 'stable'


def discipline_progress(results: list) -> list:
    """Per-discipline quiz statistics, results sorted newest first."""
    groups = {}
    for r in results:
        groups.setdefault(r['discipline_id'], []).append(r)

    out = []
    for discipline_id, rows in groups.items():
        pcts = [r['percentage'] for r in rows]
        out.append({
            'discipline_id':   discipline_id,
            'discipline_name': rows[0].get('discipline_name') or discipline_id,
            'attempts':        len(rows),
            'average':         round_half_up(_mean(pcts)),
            'best':            max(pcts),
            'latest':          pcts[0],
            'passed':          sum(1 for r in rows if r['passed']),
            'total_time_sec':  sum(r.get('elapsed_sec') or 0 for r in rows),
            'trend':           _trend(pcts),
        })
    return out


def timeline(results: list, max_points: int = 20) -> list:
    """Chart points, oldest first."""
    points = []
    for r in reversed(results[:max(1, max_points)]):
        points.append({'date':       r['taken_at'].strftime('%d/%m'),
                       'score':      r['percentage'],
                       'discipline': r.get('discipline_name') or r['discipline_id']})
    return points


# ─── PROGRESSION ──────────────────────────────────────────────────────────────

def progression_percentage(viewed: int, passed: int, total_resources: int, total_quizzes: int) -> int:
    total = (total_resources or 0) + (total_quizzes or 0)
    if total <= 0:
        return 0
    return min(100, round_half_up((viewed + passed) / total * 100))


def global_progression(progressions: list, login_streak: int = 0, best_login_streak: int = 0) -> dict:
    return {
        'resources_viewed':       sum(len(p['viewed_resources']) for p in progressions),
        'quizzes_passed':         sum(len(p['passed_quizzes']) for p in progressions),
        'average_percentage':     round_half_up(_mean(p['percentage'] for p in progressions)),
        'disciplines_started':    len(progressions),
        'disciplines_completed':  sum(1 for p in progressions if p['percentage'] >= 100),
        'login_streak':           login_streak or 0,
        'best_login_streak':      max(best_login_streak or 0, login_streak or 0),
        'by_discipline':          progressions,
    }


# ─── BADGES ───────────────────────────────────────────────────────────────────

BADGES = [
    # (id, name, description, icon, category, predicate)
    ('premier_quiz',    'Premier pas',    'Passer votre premier quiz',          '🎯', 'quiz',
     lambda p, d: p['attempts'] >= 1),
    ('dix_quiz',        'Explorateur',    'Passer 10 quiz',                     '🔍', 'quiz',
     lambda p, d: p['attempts'] >= 10),
    ('vingt_cinq_quiz', 'Assidu',         'Passer 25 quiz',                     '📚', 'quiz',
     lambda p, d: p['attempts'] >= 25),
    ('cinquante_quiz',  'Champion',       'Passer 50 quiz',                     '🏆', 'quiz',
     lambda p, d: p['attempts'] >= 50),
    ('score_parfait',   'Score parfait',  'Obtenir 100% à un quiz',             '⭐', 'performance',
     lambda p, d: p['best'] >= 100),
    ('moyenne_80',      'Excellent',      'Maintenir une moyenne de 80%+',      '🌟', 'performance',
     lambda p, d: p['average'] >= 80 and p['attempts'] >= 5),
    ('moyenne_60',      'Bon élève',      'Maintenir une moyenne de 60%+',      '👍', 'performance',
     lambda p, d: p['average'] >= 60 and p['attempts'] >= 5),
    ('serie_3',         'En forme',       "3 quiz réussis d'affilée",           '🔥', 'streak',
     lambda p, d: p['best_pass_streak'] >= 3),
    ('serie_5',         'Imbattable',     "5 quiz réussis d'affilée",           '💪', 'streak',
     lambda p, d: p['best_pass_streak'] >= 5),
    ('serie_10',        'Légende',        "10 quiz réussis d'affilée",          '👑', 'streak',
     lambda p, d: p['best_pass_streak'] >= 10),
    ('multi_3',         'Polyvalent',     'Passer des quiz dans 3 disciplines', '🎨', 'discipline',
     lambda p, d: len(d) >= 3),
    ('multi_5',         'Touche-à-tout',  'Passer des quiz dans 5 disciplines', '🌈', 'discipline',
     lambda p, d: len(d) >= 5),
]


def compute_badges(progress: dict, per_discipline: list) -> list:
    return [{'id': bid, 'name': name, 'description': desc, 'icon': icon,
             'category': cat, 'unlocked': bool(rule(progress, per_discipline))}
            for bid, name, desc, icon, cat, rule in BADGES]


# ─── DISPLAY HELPERS ──────────────────────────────────────────────────────────

def score_color(pct: int) -> str:
    if pct >= 80: return '#10b981'
    if pct >= 60: return '#3b82f6'
    if pct >= 40: return '#f59e0b'
    return '#ef4444'


def score_label(pct: int) -> str:
    if pct >= 80: return 'Excellent'
    if pct >= 60: return 'Bien'
    if pct >= 40: return 'Passable'
    return 'À améliorer'


def format_duration(seconds: int) -> str:
    """125 -> '2 min 05 s'"""
    seconds = int(seconds or 0)
    if seconds < 60:
        return f'{seconds} s'
    minutes, sec = divmod(seconds, 60)
    return f'{minutes} min {sec:02d} s' if sec else f'{minutes} min'
