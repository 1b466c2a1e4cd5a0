import pytest

import app as pedaclic
import lessons


def make_notebook(prof, **overrides):
    payload = {'grade': '6eme', 'subject': 'Mathématiques', 'school_year': '2026-2027',
               'planned_sessions': 4}
    payload.update(overrides)
    r = prof.post('/notebooks', json=payload)
    assert r.status_code == 201, r.get_json()
    return r.get_json()['notebook']


def add_entry(prof, notebook_id, **overrides):
    payload = {'date': '2026-10-12', 'chapter': 'Les fractions', 'status': 'realise',
               'start_time': '08:00', 'end_time': '10:00'}
    payload.update(overrides)
    return prof.post(f'/notebooks/{notebook_id}/entries', json=payload)


class TestHelpers:
    def test_minutes(self):
        assert lessons.minutes('08:30') == 510
        for bad in ('8h30', '24:00', '', None):
            with pytest.raises(ValueError):
                lessons.minutes(bad)

    def test_session_hours(self):
        assert lessons.session_hours('08:00', '09:30') == 1.5
        assert lessons.session_hours('10:00', '08:00') == 0
        assert lessons.session_hours(None, '08:00') == 0

    def test_notebook_stats(self):
        entries = [{'status': 'realise', 'content_type': 'cours', 'start_time': '08:00', 'end_time': '09:00'},
                   {'status': 'realise', 'content_type': 'exercices', 'start_time': '10:00', 'end_time': '10:20'},
                   {'status': 'annule', 'content_type': 'cours', 'start_time': None, 'end_time': None}]
        stats = lessons.notebook_stats(entries)
        assert stats['total'] == 3
        assert stats['realise'] == 2
        assert stats['annule'] == 1
        assert stats['planifie'] == 0
        assert stats['by_type'] == {'cours': 2, 'exercices': 1}
        assert stats['hours'] == 1.33

    def test_progress_rate(self):
        assert lessons.progress_rate(1, 3) == 33
        assert lessons.progress_rate(5, 4) == 100
        assert lessons.progress_rate(3, 0) == 0


class TestNotebooks:
    def test_create_with_default_title(self, login_as):
        notebook = make_notebook(login_as('prof'))
        assert notebook['title'] == 'Mathématiques - 6eme 2026-2027'
        assert notebook['color'] == '#2563eb'
        assert notebook['progress'] == 0

    @pytest.mark.parametrize('overrides', [
        {'grade': 'debutant'},
        {'subject': ' '},
        {'school_year': '2026'},
        {'color': 'blue'},
        {'planned_sessions': 'beaucoup'},
    ])
    def test_validation(self, login_as, overrides):
        r = login_as('prof').post('/notebooks', json=dict(
            {'grade': '6eme', 'subject': 'SVT', 'school_year': '2026-2027'}, **overrides))
        assert r.status_code == 400

    def test_owner_only(self, login_as):
        notebook = make_notebook(login_as('prof'))
        other = login_as('prof')
        assert other.get(f"/notebooks/{notebook['id']}").status_code == 403
        assert other.delete(f"/notebooks/{notebook['id']}").status_code == 403
        assert login_as('eleve').post('/notebooks', json={}).status_code == 403
        assert login_as('admin').get(f"/notebooks/{notebook['id']}").status_code == 200
        assert other.get('/notebooks/missing').status_code == 404

    def test_update_archive_and_list(self, login_as):
        prof = login_as('prof')
        notebook = make_notebook(prof)
        make_notebook(prof, subject='SVT', school_year='2025-2026')
        r = prof.put(f"/notebooks/{notebook['id']}", json={'title': 'Maths 6eA', 'color': '#10b981'})
        assert r.get_json()['notebook']['title'] == 'Maths 6eA'
        assert r.get_json()['notebook']['subject'] == 'Mathématiques'

        assert prof.post(f"/notebooks/{notebook['id']}/archive").get_json()['notebook']['archived'] is True
        assert [n['subject'] for n in prof.get('/notebooks').get_json()['notebooks']] == ['SVT']
        assert [n['title'] for n in prof.get('/notebooks?archived=true').get_json()['notebooks']] == ['Maths 6eA']
        assert prof.get('/notebooks?school_year=2026-2027').get_json()['notebooks'] == []
        assert prof.post(f"/notebooks/{notebook['id']}/archive").get_json()['notebook']['archived'] is False


class TestEntries:
    def test_done_sessions_follow_the_entries(self, login_as):
        prof = login_as('prof')
        notebook = make_notebook(prof)
        r = add_entry(prof, notebook['id'], skills=['Calculer', ' '])
        assert r.status_code == 201
        entry = r.get_json()['entry']
        assert entry['skills'] == ['Calculer']
        assert r.get_json()['notebook']['progress'] == 25

        add_entry(prof, notebook['id'], date='2026-10-14', status='planifie', content_type='exercices')
        body = prof.get(f"/notebooks/{notebook['id']}").get_json()
        assert body['notebook']['done_sessions'] == 1
        assert body['stats']['total'] == 2
        assert body['stats']['hours'] == 4.0

        r = prof.put(f"/entries/{entry['id']}", json={'status': 'annule', 'cancel_reason': 'Grève'})
        assert r.get_json()['notebook']['done_sessions'] == 0
        assert prof.delete(f"/entries/{entry['id']}").get_json()['notebook']['done_sessions'] == 0
        assert prof.get(f"/notebooks/{notebook['id']}").get_json()['stats']['total'] == 1

    @pytest.mark.parametrize('overrides', [
        {'date': '12/10/2026'},
        {'chapter': ''},
        {'content_type': 'sieste'},
        {'status': 'oublie'},
        {'start_time': '10:00', 'end_time': '09:00'},
        {'start_time': '8h'},
        {'status': 'annule'},
        {'status': 'reporte'},
        {'skills': 'Calculer'},
        {'is_evaluation': True, 'evaluation_type': 'concours'},
    ])
    def test_validation(self, login_as, overrides):
        prof = login_as('prof')
        notebook = make_notebook(prof)
        assert add_entry(prof, notebook['id'], **overrides).status_code == 400

    def test_month_filter(self, login_as):
        prof = login_as('prof')
        notebook = make_notebook(prof)
        for day in ('2026-09-30', '2026-10-01', '2026-10-31', '2026-11-02'):
            add_entry(prof, notebook['id'], date=day)
        url = f"/notebooks/{notebook['id']}/entries"
        october = prof.get(f'{url}?month=2026-10').get_json()['entries']
        assert [e['date'] for e in october] == ['2026-10-01', '2026-10-31']
        assert len(prof.get(url).get_json()['entries']) == 4
        assert len(prof.get(f'{url}?limit=-1').get_json()['entries']) == 1
        assert prof.get(f'{url}?month=octobre').status_code == 400

    def test_postponed_and_evaluations(self, login_as):
        prof = login_as('prof')
        notebook = make_notebook(prof)
        r = add_entry(prof, notebook['id'], status='reporte', postponed_to='2026-10-19')
        assert r.get_json()['entry']['postponed_to'] == '2026-10-19'
        r = add_entry(prof, notebook['id'], chapter='Contrôle fractions', content_type='evaluation',
                      is_evaluation=True, evaluation_type='ds', evaluation_date='2026-10-20')
        entry = r.get_json()['entry']
        assert entry['evaluation_status'] == 'a_evaluer'
        (marked,) = prof.get('/notebooks/evaluations').get_json()['entries']
        assert marked['id'] == entry['id']

        r = prof.put(f"/entries/{entry['id']}", json={'is_evaluation': False})
        assert r.get_json()['entry']['evaluation_type'] is None
        assert prof.get('/notebooks/evaluations').get_json()['entries'] == []

    def test_entries_are_owner_only(self, login_as):
        prof = login_as('prof')
        notebook = make_notebook(prof)
        entry = add_entry(prof, notebook['id']).get_json()['entry']
        other = login_as('prof')
        assert add_entry(other, notebook['id']).status_code == 403
        assert other.put(f"/entries/{entry['id']}", json={'chapter': 'X'}).status_code == 403
        assert other.delete(f"/entries/{entry['id']}").status_code == 403
        assert prof.put('/entries/missing', json={}).status_code == 404

    def test_deleting_a_notebook_drops_its_entries(self, login_as):
        prof = login_as('prof')
        notebook = make_notebook(prof)
        add_entry(prof, notebook['id'])
        assert prof.delete(f"/notebooks/{notebook['id']}").status_code == 200
        with pedaclic.app.app_context():
            assert pedaclic.NotebookEntry.query.count() == 0
