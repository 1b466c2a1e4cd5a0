import datetime

import pytest

import scoring
from conftest import QUESTIONS, results


class TestScoreQuiz:
    def test_answers_by_question_id(self):
        out = scoring.score_quiz(QUESTIONS, {'q1': 1, 'q2': 0, 'q3': 1})
        assert out['score'] == 3
        assert out['total_points'] == 4
        assert out['percentage'] == 75
        assert out['passed'] is True
        assert out['correct_count'] == 2
        assert [c['correct'] for c in out['correction']] == [True, False, True]

    def test_positional_answers_and_missing_ones(self):
        out = scoring.score_quiz(QUESTIONS, [1])
        assert out['answers'] == [1, -1, -1]
        assert out['percentage'] == 25
        assert out['passed'] is False

    def test_non_integer_answers_count_as_unanswered(self):
        out = scoring.score_quiz(QUESTIONS, {'q1': '1', 'q2': True})
        assert out['answers'] == [-1, -1, -1]
        assert out['score'] == 0

    def test_points_default_to_one(self):
        questions = [dict(q, points=0) for q in QUESTIONS]
        out = scoring.score_quiz(questions, [1, 1, 0])
        assert out['total_points'] == 3
        assert out['percentage'] == 67

    def test_percentage_rounds_half_up(self):
        questions = [{'id': f'q{i}', 'answer': 0, 'points': 1} for i in range(8)]
        out = scoring.score_quiz(questions, [0])
        assert out['percentage'] == 13

    def test_custom_pass_mark(self):
        out = scoring.score_quiz(QUESTIONS, {'q1': 1, 'q2': 1}, pass_mark=60)
        assert out['percentage'] == 50
        assert out['passed'] is False

    def test_empty_quiz_scores_zero(self):
        out = scoring.score_quiz([], [])
        assert out['percentage'] == 0
        assert out['passed'] is False


class TestValidateQuestions:
    def test_normalises_and_generates_ids(self):
        clean = scoring.validate_questions([
            {'question': ' Capitale du Sénégal ? ', 'options': ['Dakar', 'Thiès'], 'answer': 0}])
        assert clean[0]['id'].startswith('q_')
        assert clean[0]['question'] == 'Capitale du Sénégal ?'
        assert clean[0]['difficulty'] == 'moyen'
        assert clean[0]['points'] == 1

    @pytest.mark.parametrize('questions', [
        [],
        [{'question': '', 'options': ['a', 'b'], 'answer': 0}],
        [{'question': 'Q', 'options': ['a'], 'answer': 0}],
        [{'question': 'Q', 'options': ['a', 'b'], 'answer': 2}],
        [{'question': 'Q', 'options': ['a', 'b'], 'answer': 0, 'difficulty': 'extreme'}],
        [{'question': 'Q', 'options': ['a', 'b'], 'answer': 0, 'points': -1}],
    ])
    def test_rejects_invalid_questions(self, questions):
        with pytest.raises(ValueError):
            scoring.validate_questions(questions)

    def test_quiz_stats_by_difficulty(self):
        stats = scoring.quiz_stats(QUESTIONS)
        assert stats['question_count'] == 3
        assert stats['total_points'] == 4
        assert stats['by_difficulty'] == {'facile': 1, 'moyen': 1, 'difficile': 1}
        assert stats['by_type']['qcm_unique'] == 3
        assert stats['by_type']['essai'] == 0

    def test_ids_are_stored_as_strings(self):
        clean = scoring.validate_questions([
            {'id': 1, 'question': 'A ?', 'options': ['a', 'b'], 'answer': 0},
            {'id': 2, 'question': 'B ?', 'options': ['a', 'b'], 'answer': 1}])
        assert [q['id'] for q in clean] == ['1', '2']
        assert scoring.score_quiz(clean, {'1': 0, '2': 1})['percentage'] == 100

    def test_duplicate_ids_are_rejected(self):
        with pytest.raises(ValueError, match='Question 2 reuses id q1'):
            scoring.validate_questions([
                {'id': 'q1', 'question': 'A ?', 'options': ['a', 'b'], 'answer': 0},
                {'id': 'q1', 'question': 'B ?', 'options': ['a', 'b'], 'answer': 1}])
        with pytest.raises(ValueError):
            scoring.validate_questions([
                {'id': 1, 'question': 'A ?', 'options': ['a', 'b'], 'answer': 0},
                {'id': '1', 'question': 'B ?', 'options': ['a', 'b'], 'answer': 1}])

    @pytest.mark.parametrize('question', [
        {'type': 'vrai_faux', 'question': 'Q', 'options': ['a', 'b'], 'answer': 0},
        {'type': 'qcm_multiple', 'question': 'Q', 'options': ['a', 'b'], 'answer': []},
        {'type': 'qcm_multiple', 'question': 'Q', 'options': ['a', 'b'], 'answer': [0, 4]},
        {'type': 'drag_drop', 'question': 'Q', 'items': ['seul']},
        {'type': 'drag_drop', 'question': 'Q', 'items': [{'id': 'a', 'text': 'x'}, {'id': 'a', 'text': 'y'}]},
        {'type': 'mise_en_relation', 'question': 'Q', 'pairs': [{'left': 'a', 'right': 'b'}]},
        {'type': 'mise_en_relation', 'question': 'Q', 'pairs': [{'left': 'a', 'right': ''},
                                                                {'left': 'c', 'right': 'd'}]},
        {'type': 'essai', 'question': 'Q', 'mode': 'mots_cles'},
        {'type': 'essai', 'question': 'Q', 'mode': 'oral'},
        {'type': 'essai', 'question': 'Q', 'keywords': [{'word': 'x', 'weight': 9}]},
        {'type': 'essai', 'question': 'Q', 'min_words': 50, 'max_words': 10},
    ])
    def test_rejects_invalid_typed_questions(self, question):
        with pytest.raises(ValueError):
            scoring.validate_questions([question])

    def test_strip_answer_key(self):
        stripped = scoring.strip_answer_key(QUESTIONS)
        assert all('answer' not in q and 'explanation' not in q for q in stripped)
        assert stripped[0]['options'] == ['3', '4', '5']

    def test_public_view_of_ordering_and_matching(self):
        order, match, essay = scoring.validate_questions([
            {'id': 'o', 'type': 'drag_drop', 'question': 'Dates', 'items': ['1492', '1789', '1960']},
            {'id': 'm', 'type': 'mise_en_relation', 'question': 'Capitales',
             'pairs': [{'left': 'Sénégal', 'right': 'Dakar'}, {'left': 'Mali', 'right': 'Bamako'}]},
            {'id': 'e', 'type': 'essai', 'question': 'Explique', 'mode': 'mots_cles',
             'keywords': [{'word': 'eau', 'weight': 2}], 'model_answer': "L'eau s'évapore."}])
        shown = scoring.public_question(order)
        assert 'answer' not in shown
        assert sorted(i['text'] for i in shown['items']) == ['1492', '1789', '1960']
        assert scoring.public_question(order) == shown

        shown = scoring.public_question(match)
        assert 'pairs' not in shown and 'answer' not in shown
        assert [p['text'] for p in shown['left']] == ['Sénégal', 'Mali']
        assert sorted(p['text'] for p in shown['right']) == ['Bamako', 'Dakar']

        shown = scoring.public_question(essay)
        assert 'keywords' not in shown and 'model_answer' not in shown
        assert shown['mode'] == 'mots_cles'


class TestQuestionTypes:
    def test_round_points(self):
        assert scoring.round_points(2 / 3) == 0.67
        assert scoring.round_points(0.125) == 0.13

    def test_multiple_choice(self):
        (q,) = scoring.validate_questions([
            {'id': 'm', 'type': 'qcm_multiple', 'question': 'Nombres pairs ?',
             'options': ['2', '3', '4', '6'], 'answer': [0, 2, 3], 'points': 3}])
        full = scoring.score_quiz([q], {'m': [3, 0, 2]})
        assert full['score'] == 3 and full['correct_count'] == 1

        partial = scoring.score_quiz([q], {'m': [0, 2]})
        assert partial['score'] == 2
        assert partial['correction'][0]['partial'] is True
        assert partial['correction'][0]['correct'] is False

        # one wrong pick loses everything
        assert scoring.score_quiz([q], {'m': [0, 1]})['score'] == 0
        assert scoring.score_quiz([q], {'m': []})['score'] == 0

    def test_multiple_choice_without_partial_credit(self):
        (q,) = scoring.validate_questions([
            {'id': 'm', 'type': 'qcm_multiple', 'question': 'Q', 'options': ['a', 'b', 'c'],
             'answer': [0, 1], 'partial_credit': False}])
        assert scoring.score_quiz([q], {'m': [0]})['score'] == 0

    def test_ordering_credits_each_position(self):
        (q,) = scoring.validate_questions([
            {'id': 'o', 'type': 'drag_drop', 'question': 'Dans l\'ordre', 'points': 2,
             'items': [{'id': 'a', 'text': '1492'}, {'id': 'b', 'text': '1789'},
                       {'id': 'c', 'text': '1960'}]}])
        assert q['answer'] == ['a', 'b', 'c']
        assert q['instruction'] == 'Remettez les éléments dans le bon ordre'
        assert scoring.score_quiz([q], {'o': ['a', 'b', 'c']})['percentage'] == 100
        out = scoring.score_quiz([q], {'o': ['a', 'c', 'b']})
        assert out['score'] == 0.67
        assert scoring.score_quiz([q], {'o': 'abc'})['score'] == 0

    def test_matching_credits_each_pair(self):
        (q,) = scoring.validate_questions([
            {'id': 'r', 'type': 'mise_en_relation', 'question': 'Relie', 'points': 4,
             'pairs': [{'id': 'sn', 'left': 'Sénégal', 'right_id': 'dk', 'right': 'Dakar'},
                       {'id': 'ml', 'left': 'Mali', 'right_id': 'bk', 'right': 'Bamako'}]}])
        assert q['answer'] == {'sn': 'dk', 'ml': 'bk'}
        assert scoring.score_quiz([q], {'r': {'sn': 'dk', 'ml': 'bk'}})['score'] == 4
        half = scoring.score_quiz([q], {'r': {'sn': 'dk', 'ml': 'dk'}})
        assert half['score'] == 2
        assert half['correction'][0]['partial'] is True

    def test_essay_keywords_are_weighted(self):
        (q,) = scoring.validate_questions([
            {'id': 'e', 'type': 'essai', 'question': 'Le cycle de l\'eau', 'mode': 'mots_cles',
             'points': 5, 'model_answer': 'Évaporation puis condensation.',
             'keywords': [{'word': 'Évaporation', 'weight': 3}, {'word': 'condensation', 'weight': 2}]}])
        out = scoring.score_quiz([q], {'e': "<p>L'<b>évaporation</b> de l'eau</p>"})
        assert out['score'] == 3
        assert out['needs_review'] is False
        assert out['correction'][0]['answer'] == 'Évaporation puis condensation.'
        assert scoring.score_quiz([q], {'e': 'ÉVAPORATION et CONDENSATION'})['score'] == 5

    def test_manual_essay_waits_for_the_teacher(self):
        questions = scoring.validate_questions(
            [{'id': 'e', 'type': 'essai', 'question': 'Raconte', 'points': 4}] + QUESTIONS[:1])
        out = scoring.score_quiz(questions, {'e': 'Il était une fois', 'q1': 1})
        assert out['needs_review'] is True
        assert out['correction'][0]['needs_review'] is True
        assert out['score'] == 1
        assert out['percentage'] == 20

        details = scoring.review_answer(out['correction'], 'e', 3, comment=' Bien ')
        assert details[0]['points_awarded'] == 3
        assert details[0]['partial'] is True
        assert details[0]['comment'] == 'Bien'
        assert out['correction'][0]['needs_review'] is True
        summary = scoring.summarise(details)
        assert summary['needs_review'] is False
        assert summary['percentage'] == 80

    def test_review_checks_question_and_points(self):
        (q,) = scoring.validate_questions([{'id': 'e', 'type': 'essai', 'question': 'Q', 'points': 2}])
        details = scoring.score_quiz([q], {'e': 'texte'})['correction']
        with pytest.raises(ValueError, match='not part'):
            scoring.review_answer(details, 'zz', 1)
        with pytest.raises(ValueError, match='between 0 and 2'):
            scoring.review_answer(details, 'e', 3)
        with pytest.raises(ValueError):
            scoring.review_answer(details, 'e', '1')


class TestStudentStatistics:
    def test_no_results_is_all_zeros(self):
        assert scoring.student_progress([]) == {
            'attempts': 0, 'passed': 0, 'average': 0, 'best': 0,
            'total_time_sec': 0, 'pass_streak': 0, 'best_pass_streak': 0}

    def test_pass_streaks(self):
        rows = [{'percentage': p, 'passed': p >= 50} for p in (80, 70, 20, 90, 60, 55)]
        out = scoring.student_progress(rows)
        assert out['attempts'] == 6
        assert out['passed'] == 5
        assert out['best'] == 90
        assert out['pass_streak'] == 2
        assert out['best_pass_streak'] == 3

    @pytest.mark.parametrize('pcts, trend', [
        ([90, 90, 90, 40, 40, 40], 'up'),
        ([40, 40, 40, 90], 'down'),
        ([62, 60, 58, 60], 'stable'),
        ([90, 10, 90], 'stable'),
    ])
    def test_discipline_trend(self, pcts, trend):
        rows = [{'discipline_id': 'maths', 'percentage': p, 'passed': p >= 50} for p in pcts]
        (stats,) = scoring.discipline_progress(rows)
        assert stats['trend'] == trend
        assert stats['latest'] == pcts[0]
        assert stats['attempts'] == len(pcts)

    def test_timeline_is_chronological(self):
        rows = results(3, 70, datetime.datetime(2026, 10, 14, 10))
        points = scoring.timeline(rows)
        assert [p['date'] for p in points] == ['12/10', '13/10', '14/10']
        assert points[0]['discipline'] == 'Mathématiques'

    def test_timeline_keeps_most_recent_points(self):
        rows = results(30, 70, datetime.datetime(2026, 10, 14))
        assert len(scoring.timeline(rows, max_points=5)) == 5
        assert scoring.timeline(rows, max_points=5)[-1]['date'] == '14/10'


class TestProgression:
    def test_percentage(self):
        assert scoring.progression_percentage(3, 1, 5, 3) == 50
        assert scoring.progression_percentage(9, 9, 5, 3) == 100
        assert scoring.progression_percentage(0, 0, 0, 0) == 0

    def test_global_progression(self):
        progs = [{'viewed_resources': ['r1', 'r2'], 'passed_quizzes': ['z1'], 'percentage': 100},
                 {'viewed_resources': ['r3'], 'passed_quizzes': [], 'percentage': 25}]
        out = scoring.global_progression(progs, login_streak=4, best_login_streak=2)
        assert out['resources_viewed'] == 3
        assert out['quizzes_passed'] == 1
        assert out['average_percentage'] == 63
        assert out['disciplines_started'] == 2
        assert out['disciplines_completed'] == 1
        assert out['best_login_streak'] == 4


class TestBadges:
    def test_catalogue_has_twelve_badges(self):
        badges = scoring.compute_badges(scoring.student_progress([]), [])
        assert len(badges) == 12
        assert not any(b['unlocked'] for b in badges)

    def test_unlocks(self):
        rows = [{'discipline_id': d, 'percentage': 100, 'passed': True} for d in ('a', 'b', 'c')]
        progress = scoring.student_progress(rows)
        unlocked = {b['id'] for b in scoring.compute_badges(progress, scoring.discipline_progress(rows))
                    if b['unlocked']}
        assert unlocked == {'premier_quiz', 'score_parfait', 'serie_3', 'multi_3'}

    def test_average_badges_need_five_attempts(self):
        rows = [{'discipline_id': 'a', 'percentage': 90, 'passed': True}] * 4
        progress = scoring.student_progress(rows)
        ids = {b['id'] for b in scoring.compute_badges(progress, []) if b['unlocked']}
        assert 'moyenne_80' not in ids
        progress = scoring.student_progress(rows + rows[:1])
        ids = {b['id'] for b in scoring.compute_badges(progress, []) if b['unlocked']}
        assert {'moyenne_80', 'moyenne_60', 'serie_5'} <= ids


class TestDisplayHelpers:
    @pytest.mark.parametrize('pct, label, color', [
        (95, 'Excellent', '#10b981'), (60, 'Bien', '#3b82f6'),
        (40, 'Passable', '#f59e0b'), (10, 'À améliorer', '#ef4444'),
    ])
    def test_buckets(self, pct, label, color):
        assert scoring.score_label(pct) == label
        assert scoring.score_color(pct) == color

    def test_format_duration(self):
        assert scoring.format_duration(45) == '45 s'
        assert scoring.format_duration(60) == '1 min'
        assert scoring.format_duration(125) == '2 min 05 s'
