import datetime
import io

from openpyxl import load_workbook

import tracking
from conftest import results

TODAY = datetime.date(2026, 10, 14)   # a Wednesday
NOW   = datetime.datetime(2026, 10, 14, 18, 0)


def row(discipline_id, pct, days_ago=0, name=None, user_id='u1', answers=None):
    return {'quiz_id': 'z', 'user_id': user_id, 'discipline_id': discipline_id,
            'discipline_name': name or discipline_id.capitalize(), 'percentage': pct,
            'passed': pct >= 50, 'answers': answers or [],
            'taken_at': NOW - datetime.timedelta(days=days_ago)}


class TestLoginStreak:
    def test_first_visit(self):
        assert tracking.update_login_streak(None, 0, 0, TODAY) == (1, 1)

    def test_same_day_is_unchanged(self):
        assert tracking.update_login_streak(TODAY, 3, 5, TODAY) == (3, 5)

    def test_next_day_extends_and_updates_best(self):
        assert tracking.update_login_streak(TODAY - datetime.timedelta(days=1), 3, 3, TODAY) == (4, 4)

    def test_gap_resets(self):
        assert tracking.update_login_streak(TODAY - datetime.timedelta(days=3), 4, 5, TODAY) == (1, 5)


class TestActivityStreak:
    def test_counts_consecutive_days(self):
        dates = [TODAY - datetime.timedelta(days=d) for d in (0, 1, 2, 6, 7)]
        streak = tracking.activity_streak(dates, TODAY)
        assert streak['current'] == 3
        assert streak['best'] == 3
        assert streak['active_days'] == 5
        assert streak['last_active'] == TODAY
        assert streak['this_week'] == [True, True, True, False, False, False, False]
        assert [w['active_days'] for w in streak['weekly_history']] == [0, 0, 2, 3]
        assert streak['weekly_history'][-1]['week'] == 'Cette sem.'

    def test_streak_still_counts_from_yesterday(self):
        assert tracking.activity_streak([NOW - datetime.timedelta(days=1)], TODAY)['current'] == 1

    def test_older_activity_breaks_the_streak(self):
        streak = tracking.activity_streak([TODAY - datetime.timedelta(days=3)], TODAY)
        assert streak['current'] == 0
        assert streak['best'] == 1

    def test_no_activity(self):
        streak = tracking.activity_streak([], TODAY)
        assert streak['current'] == 0
        assert streak['last_active'] is None


class TestGaps:
    def test_urgency_and_order(self):
        rows = [row('svt', 60), row('maths', 30), row('anglais', 90), row('histoire', 50)]
        gaps = tracking.detect_gaps(rows)
        assert [g['discipline_id'] for g in gaps] == ['maths', 'histoire', 'svt']
        assert [g['urgency'] for g in gaps] == ['critique', 'important', 'modere']
        assert gaps[0]['average'] == 6.0
        assert gaps[0]['id'] == 'lacune_maths'

    def test_trend_needs_three_scores(self):
        rows = [row('maths', 70, 0), row('maths', 70, 1), row('maths', 30, 2), row('maths', 30, 3)]
        (gap,) = tracking.detect_gaps(rows)
        assert gap['average'] == 10.0
        assert gap['urgency'] == 'important'
        assert gap['trend'] == 'hausse'
        assert tracking.detect_gaps(rows[:2] + rows[3:])[0]['trend'] == 'hausse'
        assert tracking.detect_gaps([row('maths', 70), row('maths', 30, 1)])[0]['trend'] == 'stable'

    def test_recommendations(self):
        gaps = tracking.detect_gaps([row('maths', 30), row('svt', 60)])
        recos = tracking.recommendations(gaps)
        assert [r['priority'] for r in recos] == [1, 2, 3]
        assert [r['type'] for r in recos] == ['revoir_cours', 'refaire_quiz', 'refaire_quiz']
        assert recos[0]['gap_id'] == 'lacune_maths'


class TestGoalsAndScore:
    def test_weekly_goals(self):
        gaps = tracking.detect_gaps([row('maths', 30), row('svt', 60), row('pc', 45)])
        goals = tracking.weekly_goals('u1', gaps, {'current': 6}, TODAY)
        by_type = {g['type']: g for g in goals}
        assert by_type['quiz_count']['target'] == 5
        assert by_type['score_min']['target'] == 9
        assert by_type['score_min']['discipline_id'] == 'maths'
        assert by_type['streak']['target'] == 7
        assert by_type['quiz_count']['week_start'] == datetime.date(2026, 10, 12)

    def test_goal_progress_uses_this_week(self):
        rows = [row('maths', 80, 0), row('maths', 40, 1), row('maths', 40, 5)]
        gaps = tracking.detect_gaps(rows)
        streak = tracking.activity_streak([r['taken_at'] for r in rows], TODAY)
        goals = tracking.update_goal_progress(tracking.weekly_goals('u1', gaps, streak, TODAY),
                                              rows, streak, TODAY)
        by_type = {g['type']: g for g in goals}
        assert by_type['quiz_count']['progress'] == 2
        assert by_type['score_min']['progress'] == 16
        assert by_type['score_min']['status'] == 'atteint'
        assert tracking.goal_percentage(by_type['quiz_count']) == 67

    def test_fresh_student_scores_only_the_gap_component(self):
        summary = tracking.tracking_summary('u1', [], TODAY)
        assert summary['gaps'] == []
        assert summary['score'] == 25

    def test_health_score_is_clamped(self):
        rows = results(10, 100, NOW)
        streak = {'current': 10}
        goals = [{'status': 'atteint'}]
        assert tracking.health_score([], streak, goals, rows) == 100

    def test_messages(self):
        assert tracking.motivation_message(85).startswith('Excellent')
        assert tracking.parent_message(5).startswith('Il est temps')


class TestAlerts:
    def test_student_alerts(self):
        gaps = tracking.detect_gaps([row('maths', 30, 10), row('maths', 30, 11)])
        streak = tracking.activity_streak([NOW - datetime.timedelta(days=10)], TODAY)
        alerts = tracking.student_alerts('u1', 'Awa', gaps, streak, TODAY)
        assert [a['type'] for a in alerts] == ['lacune_critique', 'inactivite']
        assert '10 jours' in alerts[1]['message']

    def test_teacher_alerts_sorted_by_urgency(self):
        stats = [
            {'student_id': 's1', 'name': 'Moussa', 'attempts': 0, 'average': 0, 'gaps': [],
             'last_quiz_at': None, 'trend': 'stable'},
            {'student_id': 's2', 'name': 'Fatou', 'attempts': 4, 'average': 4.0,
             'gaps': [{'discipline_name': 'Maths'}], 'last_quiz_at': NOW, 'trend': 'baisse'},
            {'student_id': 's3', 'name': 'Awa', 'attempts': 3, 'average': 17.0, 'gaps': [],
             'last_quiz_at': NOW - datetime.timedelta(days=15), 'trend': 'stable'},
        ]
        alerts = tracking.teacher_alerts(stats, '6eme A', TODAY)
        assert alerts[0]['urgency'] == 'critique'
        assert alerts[0]['student_id'] == 's2'
        kinds = {(a['student_id'], a['type']): a['urgency'] for a in alerts}
        assert kinds[('s1', 'inactivite')] == 'info'
        assert kinds[('s2', 'baisse')] == 'important'
        assert kinds[('s3', 'inactivite')] == 'important'
        assert kinds[('s3', 'felicitation')] == 'info'


class TestGroupAnalytics:
    def test_group_stats(self):
        rows = [row('maths', 50, user_id='a'), row('maths', 70, user_id='a'),
                row('maths', 30, user_id='b'), row('maths', 90, user_id='outsider')]
        stats = tracking.group_stats(['a', 'b', 'c'], rows)
        assert stats['class_average'] == 9.0
        assert stats['pass_rate'] == 67
        assert stats['participation_rate'] == 67
        assert stats['quizzes_taken'] == 3
        assert stats['struggling'] == 1
        assert stats['best_average'] == 12.0
        assert stats['worst_average'] == 6.0

    def test_empty_group(self):
        stats = tracking.group_stats([], [])
        assert stats['class_average'] == 0
        assert stats['participation_rate'] == 0

    def test_student_group_stats(self):
        rows = [row('maths', 90, 0), row('maths', 90, 1), row('maths', 40, 2), row('maths', 40, 3)]
        stats = tracking.student_group_stats({'id': 'u1', 'name': 'Awa', 'email': 'awa@example.com'},
                                             rows, TODAY)
        assert stats['average'] == 13.0
        assert stats['pass_rate'] == 50
        assert stats['trend'] == 'hausse'
        assert stats['streak']['current'] == 4

    def test_quiz_group_analysis(self):
        questions = [{'id': 'q1', 'question': 'A', 'answer': 0},
                     {'id': 'q2', 'question': 'B', 'answer': 1}]
        rows = [dict(row('maths', 50, user_id='a'), answers=[0, 0]),
                dict(row('maths', 100, user_id='b'), answers=[0, 1])]
        out = tracking.quiz_group_analysis(questions, rows)
        assert out['participants'] == 2
        assert out['average'] == 75
        assert [q['id'] for q in out['questions']] == ['q2', 'q1']
        assert out['questions'][0]['error_rate'] == 50

    def test_quiz_group_analysis_reads_graded_details(self):
        questions = [{'id': 'm', 'type': 'qcm_multiple', 'question': 'A', 'answer': [0, 1]},
                     {'id': 'e', 'type': 'essai', 'question': 'B'}]
        rows = [dict(row('maths', 50, user_id='a'), answers=[[0, 1], 'texte'],
                     details=[{'correct': True}, {'correct': False}]),
                dict(row('maths', 25, user_id='b'), answers=[[0], 'texte'],
                     details=[{'correct': False}, {'correct': False}])]
        out = tracking.quiz_group_analysis(questions, rows)
        by_id = {q['id']: q for q in out['questions']}
        assert by_id['m']['error_rate'] == 50
        assert by_id['e']['error_rate'] == 100
        assert by_id['e']['type'] == 'essai'


class TestAttendance:
    def test_rates_over_the_period(self):
        records = [{'date': TODAY, 'absent': ['a']},
                   {'date': TODAY - datetime.timedelta(days=1), 'absent': ['a', 'b']},
                   {'date': TODAY - datetime.timedelta(days=2), 'absent': []}]
        out = {s['student_id']: s for s in tracking.attendance_summary(records, ['a', 'b', 'c'])}
        assert out['a']['absences'] == 2
        assert out['a']['attendance_rate'] == 33
        assert out['b']['attendance_rate'] == 67
        assert out['c'] == {'student_id': 'c', 'absences': 0, 'sessions': 3, 'attendance_rate': 100}

    def test_no_roll_call_yet(self):
        (line,) = tracking.attendance_summary([], ['a'])
        assert line['sessions'] == 0
        assert line['attendance_rate'] == 100


class TestExport:
    STATS = [{'name': 'Awa', 'email': 'awa@example.com', 'average': 12.5, 'attempts': 4,
              'pass_rate': 75, 'streak': {'current': 2, 'best': 3},
              'gaps': [{'discipline_name': 'SVT', 'average': 9.0}], 'trend': 'stable'}]

    def test_csv_has_bom_and_header(self):
        data = tracking.export_csv(self.STATS)
        assert data.startswith('\ufeff')
        lines = data.lstrip('\ufeff').splitlines()
        assert lines[0].startswith('Nom,Email')
        assert 'SVT (9.0/20)' in lines[1]

    def test_xlsx(self):
        wb = load_workbook(io.BytesIO(tracking.export_xlsx(self.STATS)))
        ws = wb.active
        assert ws.title == 'Élèves'
        assert ws['A1'].value == 'Nom'
        assert ws['A1'].font.bold
        assert ws['A2'].value == 'Awa'
        assert ws['C2'].value == 12.5
