"""
PedaClic — student follow-up.
Login and activity streaks, gap detection, recommendations, weekly goals,
the 0-100 health score, alerts for students/teachers/parents, and
group analytics, roll-call summaries and CSV / Excel export.

Quiz results are dicts with at least: quiz_id, discipline_id,
discipline_name, percentage, passed, taken_at (datetime), answers, and
optionally the per-question grading details.
Lists of results are always sorted newest first.
"""
import csv
import datetime
import io

from openpyxl import Workbook
from openpyxl.styles import Font

from scoring import round_half_up

CRITICAL_BELOW   = 8     # /20
IMPORTANT_BELOW  = 12
MODERATE_BELOW   = 14
INACTIVITY_DAYS  = 7
STRUGGLING_BELOW = 8
PRAISE_FROM      = 16
URGENCY_ORDER    = {'critique': 0, 'important': 1, 'modere': 2, 'info': 3}


def _as_date(value) -> datetime.date:
    return value.date() if isinstance(value, datetime.datetime) else value


def _on_20(pct) -> float:
    return pct / 100 * 20


def _one_decimal(x: float) -> float:
    return round_half_up(x * 10) / 10


def week_start(today: datetime.date) -> datetime.date:
    return today - datetime.timedelta(days=today.weekday())


# ─── STREAKS ──────────────────────────────────────────────────────────────────

def update_login_streak(last_active, streak: int, best: int, today: datetime.date):
    """Return (streak, best) after a visit on `today`."""
    if last_active is None:
        streak = 1
    else:
        diff = (today - _as_date(last_active)).days
        if diff == 1:
            streak = (streak or 0) + 1
        elif diff > 1:
            streak = 1
        else:
            streak = streak or 1
    return streak, max(best or 0, streak)


def activity_streak(dates, today: datetime.date) -> dict:
    """Streak of consecutive days with at least one quiz taken."""
    days = sorted({_as_date(d) for d in dates}, reverse=True)
    monday = week_start(today)
    if not days:
        return {'current': 0, 'best': 0, 'last_active': None, 'active_days': 0,
                'this_week': [False] * 7, 'weekly_history': []}

    current = 0
    if (today - days[0]).days <= 1:
        current = 1
        for prev, day in zip(days, days[1:]):
            if (prev - day).days != 1:
                break
            current += 1

    best, run = 0, 1
    for prev, day in zip(days, days[1:]):
        if (prev - day).days == 1:
            run += 1
        else:
            best = max(best, run)
            run = 1
    best = max(best, run, current)

    active = set(days)
    this_week = [monday + datetime.timedelta(days=i) in active for i in range(7)]
    history = []
    for s in range(4):
        start = monday - datetime.timedelta(days=7 * s)
        count = sum(1 for i in range(7) if start + datetime.timedelta(days=i) in active)
        history.append({'week': 'Cette sem.' if s == 0 else f'Sem. -{s}', 'active_days': count})
    history.reverse()

    return {'current': current, 'best': best, 'last_active': days[0],
            'active_days': len(days), 'this_week': this_week, 'weekly_history': history}


# ─── GAPS & RECOMMENDATIONS ───────────────────────────────────────────────────

def detect_gaps(results: list) -> list:
    """Disciplines whose /20 average is below 14, most urgent first."""
    groups = {}
    for r in results:
        groups.setdefault(r['discipline_id'], []).append(r)

    gaps = []
    for discipline_id, rows in groups.items():
        scores = [_on_20(r['percentage']) for r in rows]
        mean = sum(scores) / len(scores)
        if mean >= MODERATE_BELOW:
            continue

        trend = 'stable'
        if len(scores) >= 3:
            recent, older = scores[:2], scores[2:4]
            diff = sum(recent) / len(recent) - sum(older) / len(older)
            if diff > 1.5:
                trend = 'hausse'
            elif diff < -1.5:
                trend = 'baisse'

        if mean < CRITICAL_BELOW:
            urgency = 'critique'
        elif mean < IMPORTANT_BELOW:
            urgency = 'important'
        else:
            urgency = 'modere'

        gaps.append({
            'id':              f'lacune_{discipline_id}',
            'discipline_id':   discipline_id,
            'discipline_name': rows[0].get('discipline_name') or 'Discipline inconnue',
            'average':         _one_decimal(mean),
            'attempts':        len(rows),
            'trend':           trend,
            'urgency':         urgency,
            'last_quiz_at':    rows[0]['taken_at'],
            'latest':          _one_decimal(scores[0]),
            'best':            _one_decimal(max(scores)),
            'worst':           _one_decimal(min(scores)),
        })

    gaps.sort(key=lambda g: (URGENCY_ORDER[g['urgency']], g['average']))
    return gaps


def recommendations(gaps: list) -> list:
    recos = []

    def add(kind, gap, suffix, title, description):
        recos.append({'id': f"reco_{suffix}_{gap['id']}", 'gap_id': gap['id'], 'type': kind,
                      'title': title, 'description': description,
                      'discipline_name': gap['discipline_name'],
                      'priority': len(recos) + 1, 'done': False})

    for g in gaps:
        name, avg = g['discipline_name'], g['average']
        if g['urgency'] == 'critique':
            add('revoir_cours', g, 'cours', f'Revoir les cours de {name}',
                f'Ta moyenne est de {avg}/20 en {name}. Reprends les bases avec les cours disponibles.')
            add('refaire_quiz', g, 'quiz', f'Refaire les quiz de {name}',
                'Après avoir révisé, refais les quiz pour vérifier ta compréhension. Vise au moins 12/20 !')
        elif g['urgency'] == 'important':
            encouragement = 'Tu progresses, continue !' if g['trend'] == 'hausse' \
                else 'Un effort supplémentaire est nécessaire.'
            add('exercice_cible', g, 'exercice', f'Exercices ciblés en {name}',
                f'Avec {avg}/20 de moyenne, concentre-toi sur les exercices pratiques. {encouragement}')
            add('revoir_cours', g, 'cours2', f'Réviser les points clés en {name}',
                'Identifie les concepts qui te posent problème et revois-les attentivement.')
        else:
            add('refaire_quiz', g, 'consolider', f'Consolider tes acquis en {name}',
                f'Tu es proche du niveau attendu ({avg}/20). Un quiz de plus devrait suffire pour atteindre 14/20 !')
    return recos


# ─── WEEKLY GOALS ─────────────────────────────────────────────────────────────

def weekly_goals(user_id: str, gaps: list, streak: dict, today: datetime.date) -> list:
    start = week_start(today)
    end   = start + datetime.timedelta(days=6)
    stamp = start.strftime('%Y%m%d')
    base  = {'user_id': user_id, 'week_start': start, 'week_end': end}

    quiz_target = 5 if len(gaps) > 2 else 3
    goals = [dict(base, id=f'obj_quiz_{user_id}_{stamp}', type='quiz_count',
                  title=f'Passer {quiz_target} quiz cette semaine',
                  target=quiz_target, progress=0, status='en_cours',
                  reward='Badge "Travailleur"')]

    if gaps:
        worst  = gaps[0]
        target = round_half_up(min(worst['average'] + 3, MODERATE_BELOW))
        goals.append(dict(base, id=f'obj_score_{user_id}_{stamp}', type='score_min',
                          title=f"Atteindre {target}/20 en {worst['discipline_name']}",
                          target=target, progress=round_half_up(worst['average']),
                          status='en_cours', discipline_id=worst['discipline_id'],
                          reward='Badge "En progrès"'))

    current       = streak['current']
    streak_target = 7 if current >= 5 else current + 2
    goals.append(dict(base, id=f'obj_streak_{user_id}_{stamp}', type='streak',
                      title=f'Maintenir un streak de {streak_target} jours',
                      target=streak_target, progress=current,
                      status='atteint' if current >= streak_target else 'en_cours',
                      reward='Badge "Flamme"'))
    return goals


def update_goal_progress(goals: list, results: list, streak: dict, today: datetime.date) -> list:
    monday = week_start(today)
    week   = [r for r in results if _as_date(r['taken_at']) >= monday]
    updated = []
    for goal in goals:
        g = dict(goal)
        if g['type'] == 'quiz_count':
            g['progress'] = len(week)
        elif g['type'] == 'score_min' and g.get('discipline_id'):
            pcts = [r['percentage'] for r in week if r['discipline_id'] == g['discipline_id']]
            if pcts:
                g['progress'] = round_half_up(_on_20(max(pcts)))
        elif g['type'] == 'streak':
            g['progress'] = streak['current']
        if g['progress'] >= g['target']:
            g['status'] = 'atteint'
        updated.append(g)
    return updated


def goal_percentage(goal: dict) -> int:
    if not goal['target']:
        return 0
    return min(100, round_half_up(goal['progress'] / goal['target'] * 100))


# ─── HEALTH SCORE ─────────────────────────────────────────────────────────────

def health_score(gaps: list, streak: dict, goals: list, results: list) -> int:
    """Weighted 0-100 score: 40% average, 25% gaps, 20% regularity, 15% goals."""
    avg_score = 0.0
    if results:
        mean = sum(_on_20(r['percentage']) for r in results) / len(results)
        avg_score = min(mean / 20 * 100, 100)

    critical  = sum(1 for g in gaps if g['urgency'] == 'critique')
    important = sum(1 for g in gaps if g['urgency'] == 'important')
    gap_score = max(100 - critical * 25 - important * 15, 0)

    streak_score = min(streak['current'] / 7 * 100, 100)

    goal_score = 0.0
    if goals:
        goal_score = sum(1 for g in goals if g['status'] == 'atteint') / len(goals) * 100

    total = avg_score * 0.4 + gap_score * 0.25 + streak_score * 0.2 + goal_score * 0.15
    return round_half_up(min(max(total, 0), 100))


def tracking_summary(user_id: str, results: list, today: datetime.date) -> dict:
    gaps   = detect_gaps(results)
    streak = activity_streak([r['taken_at'] for r in results], today)
    goals  = update_goal_progress(weekly_goals(user_id, gaps, streak, today), results, streak, today)
    return {
        'gaps':            gaps,
        'recommendations': recommendations(gaps),
        'streak':          streak,
        'goals':           goals,
        'score':           health_score(gaps, streak, goals, results),
    }


def motivation_message(score: int) -> str:
    if score >= 80: return 'Excellent travail ! Continue comme ça, tu es sur la bonne voie !'
    if score >= 60: return 'Bon travail ! Quelques efforts supplémentaires et tu seras au top !'
    if score >= 40: return 'Tu peux faire mieux ! Suis les recommandations pour progresser.'
    if score >= 20: return 'Courage ! Chaque effort compte. Commence par les recommandations prioritaires.'
    return "C'est le moment de se lancer ! Passe ton premier quiz pour commencer."


def parent_message(score: int) -> str:
    if score >= 80: return "Votre enfant fait un excellent travail ! Continuez à l'encourager."
    if score >= 60: return 'De bons résultats ! Quelques efforts supplémentaires et ce sera parfait.'
    if score >= 40: return 'Des progrès sont possibles. Encouragez votre enfant à suivre les recommandations.'
    if score >= 20: return 'Votre enfant a besoin de soutien. Un suivi régulier est recommandé.'
    return 'Il est temps de commencer ! Encouragez votre enfant à passer ses premiers quiz.'


# ─── ALERTS ───────────────────────────────────────────────────────────────────

def student_alerts(user_id: str, name: str, gaps: list, streak: dict, today: datetime.date) -> list:
    alerts = []
    for g in gaps:
        if g['urgency'] == 'critique':
            alerts.append({'id': f"alerte_lacune_{g['id']}", 'user_id': user_id, 'type': 'lacune_critique',
                           'urgency': 'critique',
                           'message': f"{name} a une moyenne critique de {g['average']}/20 en "
                                      f"{g['discipline_name']}. Intervention recommandée."})
    if streak['last_active'] is not None:
        idle = (today - streak['last_active']).days
        if idle >= INACTIVITY_DAYS:
            alerts.append({'id': f'alerte_inactif_{user_id}', 'user_id': user_id, 'type': 'inactivite',
                           'urgency': 'important',
                           'message': f"{name} n'a pas été actif depuis {idle} jours."})
    for g in gaps:
        if g['trend'] == 'hausse':
            alerts.append({'id': f"alerte_progression_{g['id']}", 'user_id': user_id, 'type': 'progression',
                           'urgency': 'info',
                           'message': f"Bonne nouvelle ! {name} progresse en {g['discipline_name']}."})
    return alerts


def teacher_alerts(stats: list, group_name: str, today: datetime.date) -> list:
    alerts = []
    for s in stats:
        sid, name = s['student_id'], s['name']
        if s['attempts'] > 0 and s['average'] < STRUGGLING_BELOW:
            weak = ', '.join(g['discipline_name'] for g in s['gaps']) or 'non détectées'
            alerts.append({'id': f'diff-{sid}', 'type': 'difficulte', 'student_id': sid,
                           'group': group_name,
                           'urgency': 'critique' if s['average'] < 5 else 'important',
                           'message': f"{name} a une moyenne de {s['average']}/20. Lacunes : {weak}."})

        if s['last_quiz_at'] is not None:
            idle = (today - _as_date(s['last_quiz_at'])).days
            if idle >= INACTIVITY_DAYS:
                alerts.append({'id': f'inact-{sid}', 'type': 'inactivite', 'student_id': sid,
                               'group': group_name,
                               'urgency': 'important' if idle >= 14 else 'info',
                               'message': f"{name} n'a pas fait de quiz depuis {idle} jours."})
        elif s['attempts'] == 0:
            alerts.append({'id': f'inact-{sid}', 'type': 'inactivite', 'student_id': sid,
                           'group': group_name, 'urgency': 'info',
                           'message': f"{name} n'a encore passé aucun quiz."})

        if s['trend'] == 'baisse' and s['attempts'] >= 4:
            alerts.append({'id': f'baisse-{sid}', 'type': 'baisse', 'student_id': sid,
                           'group': group_name, 'urgency': 'important',
                           'message': f'{name} est en baisse de résultats.'})

        if s['average'] >= PRAISE_FROM and s['attempts'] >= 3:
            alerts.append({'id': f'felicite-{sid}', 'type': 'felicitation', 'student_id': sid,
                           'group': group_name, 'urgency': 'info',
                           'message': f"{name} excelle avec {s['average']}/20 !"})

    alerts.sort(key=lambda a: URGENCY_ORDER[a['urgency']])
    return alerts


# ─── GROUP ANALYTICS ──────────────────────────────────────────────────────────

def group_stats(member_ids: list, results: list) -> dict:
    """Aggregate /20 statistics for the members of a group."""
    per_student = {}
    for r in results:
        if r['user_id'] not in member_ids:
            continue
        st = per_student.setdefault(r['user_id'], {'total': 0, 'sum': 0.0, 'passed': 0})
        note = _on_20(r['percentage'])
        st['total'] += 1
        st['sum']   += note
        if note >= 10:
            st['passed'] += 1

    means = [st['sum'] / st['total'] for st in per_student.values()]
    total = sum(st['total'] for st in per_student.values())
    return {
        'students':           len(member_ids),
        'class_average':      _one_decimal(sum(means) / len(means)) if means else 0,
        'pass_rate':          round_half_up(sum(st['passed'] for st in per_student.values()) / total * 100) if total else 0,
        'participation_rate': round_half_up(len(means) / len(member_ids) * 100) if member_ids else 0,
        'quizzes_taken':      total,
        'struggling':         sum(1 for m in means if m < STRUGGLING_BELOW),
        'best_average':       _one_decimal(max(means)) if means else 0,
        'worst_average':      _one_decimal(min(means)) if means else 0,
    }


def student_group_stats(student: dict, results: list, today: datetime.date) -> dict:
    notes = [_on_20(r['percentage']) for r in results]
    trend = 'stable'
    if len(notes) >= 4:
        half = -(-len(notes) // 2)
        recent = sum(notes[:half]) / half
        older  = sum(notes[half:]) / (len(notes) - half)
        if recent - older > 1:
            trend = 'hausse'
        elif older - recent > 1:
            trend = 'baisse'

    summary = tracking_summary(student['id'], results, today)
    return {
        'student_id':   student['id'],
        'name':         student['name'],
        'email':        student['email'],
        'average':      _one_decimal(sum(notes) / len(notes)) if notes else 0,
        'attempts':     len(notes),
        'pass_rate':    round_half_up(sum(1 for n in notes if n >= 10) / len(notes) * 100) if notes else 0,
        'score':        summary['score'],
        'streak':       {'current': summary['streak']['current'], 'best': summary['streak']['best']},
        'gaps':         [{'discipline_name': g['discipline_name'], 'average': g['average'],
                          'urgency': g['urgency']} for g in summary['gaps']],
        'last_quiz_at': results[0]['taken_at'] if results else None,
        'trend':        trend,
    }


def _missed(result: dict, i: int, question: dict) -> bool:
    details = result.get('details') or []
    if i < len(details):
        return not details[i]['correct']
    answers = result['answers']
    return i >= len(answers) or answers[i] != question.get('answer')


def quiz_group_analysis(questions: list, results: list) -> dict:
    """Per-question error rates for one quiz, most missed first."""
    attempts = len(results)
    per_question = []
    for i, q in enumerate(questions):
        wrong = sum(1 for r in results if _missed(r, i, q))
        per_question.append({'id': q['id'], 'question': q['question'],
                             'type': q.get('type') or 'qcm_unique', 'wrong': wrong,
                             'error_rate': round_half_up(wrong / attempts * 100) if attempts else 0})
    per_question.sort(key=lambda p: p['error_rate'], reverse=True)
    pcts = [r['percentage'] for r in results]
    return {
        'participants': len({r['user_id'] for r in results}),
        'attempts':     attempts,
        'average':      round_half_up(sum(pcts) / attempts) if attempts else 0,
        'pass_rate':    round_half_up(sum(1 for r in results if r['passed']) / attempts * 100) if attempts else 0,
        'questions':    per_question,
    }


# ─── ATTENDANCE ───────────────────────────────────────────────────────────────

def attendance_summary(records: list, student_ids: list) -> list:
    """
    records: roll calls as {'date', 'absent': [student ids]} over a period.
    One line per student: days absent and attendance rate over those calls.
    """
    sessions = len(records)
    out = []
    for sid in student_ids:
        absences = sum(1 for rec in records if sid in rec['absent'])
        out.append({'student_id': sid, 'absences': absences, 'sessions': sessions,
                    'attendance_rate': round_half_up((sessions - absences) / sessions * 100)
                    if sessions else 100})
    return out


# ─── EXPORT ───────────────────────────────────────────────────────────────────

EXPORT_HEADERS = ['Nom', 'Email', 'Moyenne (/20)', 'Quiz passés', 'Taux réussite (%)',
                  'Streak (jours)', 'Lacunes principales', 'Tendance']


def _export_rows(stats: list):
    for s in stats:
        weak = ' | '.join(f"{g['discipline_name']} ({g['average']}/20)" for g in s['gaps']) or 'Aucune'
        yield [s['name'], s['email'], s['average'], s['attempts'], s['pass_rate'],
               s['streak']['current'], weak, s['trend']]


def export_csv(stats: list) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator='\n')
    writer.writerow(EXPORT_HEADERS)
    writer.writerows(_export_rows(stats))
    return '\ufeff' + buf.getvalue()


def export_xlsx(stats: list, sheet_title: str = 'Élèves') -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_title[:31]
    ws.append(EXPORT_HEADERS)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for row in _export_rows(stats):
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()
