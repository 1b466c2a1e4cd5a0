import datetime
import json
import os
import tempfile

# The app configures itself from the environment at import time
_fd, _db_path = tempfile.mkstemp(suffix='.db', prefix='pedaclic-test-')
os.close(_fd)
os.environ['DATABASE_URL']      = f'sqlite:///{_db_path}'
os.environ['BCRYPT_LOG_ROUNDS'] = '4'
os.environ['SECRET_KEY']        = 'pedaclic-test-secret'
os.environ.pop('PRODUCTION', None)
os.environ.pop('RENDER', None)

import pytest

import app as pedaclic

PASSWORD = 'password123'


@pytest.fixture
def db():
    pedaclic.app.config['TESTING'] = True
    with pedaclic.app.app_context():
        pedaclic.db.drop_all()
        pedaclic.db.create_all()
    yield pedaclic.db
    with pedaclic.app.app_context():
        pedaclic.db.session.remove()


@pytest.fixture
def client(db):
    return pedaclic.app.test_client()


def create_user(role='eleve', email=None, name=None, **fields):
    """Insert a user straight into the database and return its id."""
    with pedaclic.app.app_context():
        user = pedaclic.User(email=email or f'{role}-{os.urandom(3).hex()}@example.com',
                             display_name=name or role.capitalize(), role=role, **{'active': True, **fields})
        user.set_password(PASSWORD)
        pedaclic.db.session.add(user)
        pedaclic.db.session.commit()
        return user.id


def update_user(user_id, **fields):
    with pedaclic.app.app_context():
        user = pedaclic.db.session.get(pedaclic.User, user_id)
        for key, value in fields.items():
            setattr(user, key, value)
        pedaclic.db.session.commit()


def get_user(user_id):
    with pedaclic.app.app_context():
        user = pedaclic.db.session.get(pedaclic.User, user_id)
        pedaclic.db.session.expunge(user)
        return user


@pytest.fixture
def login_as(db):
    """login_as(role, **fields) -> logged-in test client with a `.user_id` attribute."""
    def _login(role='eleve', **fields):
        user_id = create_user(role, **fields)
        email = get_user(user_id).email
        c = pedaclic.app.test_client()
        r = c.post('/auth/login', json={'email': email, 'password': PASSWORD})
        assert r.status_code == 200, r.get_json()
        c.user_id = user_id
        return c
    return _login


def add_discipline(name='Mathématiques', level='college', grade='6eme', position=1):
    with pedaclic.app.app_context():
        disc = pedaclic.Discipline(name=name, level=level, grade=grade, position=position)
        pedaclic.db.session.add(disc)
        pedaclic.db.session.commit()
        return disc.id


QUESTIONS = [
    {'id': 'q1', 'question': '2 + 2 ?', 'options': ['3', '4', '5'], 'answer': 1,
     'explanation': 'Deux plus deux font quatre.', 'difficulty': 'facile', 'points': 1},
    {'id': 'q2', 'question': '3 x 3 ?', 'options': ['6', '9'], 'answer': 1,
     'explanation': '', 'difficulty': 'moyen', 'points': 1},
    {'id': 'q3', 'question': '10 / 4 ?', 'options': ['2', '2.5', '3'], 'answer': 1,
     'explanation': '', 'difficulty': 'difficile', 'points': 2},
]


def add_quiz(discipline_id, title='Calcul mental', is_premium=False, questions=None):
    with pedaclic.app.app_context():
        quiz = pedaclic.Quiz(discipline_id=discipline_id, title=title, is_premium=is_premium,
                             questions=json.dumps(questions or QUESTIONS))
        pedaclic.db.session.add(quiz)
        pedaclic.db.session.commit()
        return quiz.id


def add_resource(discipline_id, title='Les fractions', is_premium=False, **fields):
    fields.setdefault('active', True)
    with pedaclic.app.app_context():
        res = pedaclic.Resource(discipline_id=discipline_id, title=title, type='cours',
                                content='Contenu du cours', is_premium=is_premium, **fields)
        pedaclic.db.session.add(res)
        pedaclic.db.session.commit()
        return res.id


def add_result(user_id, discipline_id, percentage, taken_at=None, quiz_id='quiz-x',
               discipline_name='Mathématiques', answers=None):
    with pedaclic.app.app_context():
        pedaclic.db.session.add(pedaclic.QuizResult(
            quiz_id=quiz_id, user_id=user_id, discipline_id=discipline_id,
            discipline_name=discipline_name, quiz_title='Quiz', percentage=percentage,
            passed=percentage >= 50, answers=json.dumps(answers or []),
            taken_at=taken_at or datetime.datetime.utcnow()))
        pedaclic.db.session.commit()


def results(n, pct, start):
    """`n` result dicts one day apart, newest first, for the pure modules."""
    return [{'quiz_id': f'quiz-{i}', 'user_id': 'u1', 'discipline_id': 'maths',
             'discipline_name': 'Mathématiques', 'percentage': pct, 'passed': pct >= 50,
             'answers': [], 'elapsed_sec': 60,
             'taken_at': start - datetime.timedelta(days=i)} for i in range(n)]
