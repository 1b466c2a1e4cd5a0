"""
PedaClic — education platform API (Flask)
Auth: Flask-Login + Flask-Bcrypt + SQLAlchemy (PostgreSQL / SQLite)
Roles admin / prof / eleve / parent, premium gating, quizzes, progression,
class groups with homework, attendance and a lesson log, parent follow-up,
in-app notifications and Moneroo checkout.
"""
import os, json, re, uuid, secrets, logging, datetime
from functools import wraps

from flask import Flask, Response, request, jsonify, session
from flask_sqlalchemy import SQLAlchemy
from flask_login import (LoginManager, UserMixin,
                         login_user, logout_user, login_required,
                         current_user)
from flask_bcrypt import Bcrypt
import requests as http_req

import gateway
import lessons
import notifications
import plans
import scoring
import tracking

# ─── APP FACTORY ──────────────────────────────────────────────────────────────

app = Flask(__name__)

# ── detect production (Render sets the RENDER env var) ──
IS_PRODUCTION = bool(os.environ.get('RENDER') or os.environ.get('PRODUCTION'))

app.secret_key = os.environ.get('SECRET_KEY')
if not app.secret_key:
    if IS_PRODUCTION:
        raise RuntimeError('SECRET_KEY environment variable is required in production!')
    app.secret_key = 'pedaclic-local-dev-only-change-me'

raw_db_url = os.environ.get('DATABASE_URL', 'sqlite:///pedaclic.db')
# SQLAlchemy requires postgresql://
if raw_db_url.startswith('postgres://'):
    raw_db_url = raw_db_url.replace('postgres://', 'postgresql://', 1)

app.config['SQLALCHEMY_DATABASE_URI'] = raw_db_url
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
    'pool_pre_ping': True,
    'pool_recycle': 300,
}
app.config['MAX_CONTENT_LENGTH'] = 5 * 1024 * 1024   # JSON bodies only
app.config['BCRYPT_LOG_ROUNDS']  = int(os.environ.get('BCRYPT_LOG_ROUNDS', 12))

# ── Session / Cookie security ──
app.config['PERMANENT_SESSION_LIFETIME'] = datetime.timedelta(days=30)
app.config['SESSION_COOKIE_HTTPONLY']    = True
app.config['SESSION_COOKIE_SAMESITE']   = 'Lax'
app.config['SESSION_COOKIE_SECURE']     = IS_PRODUCTION
app.config['SESSION_COOKIE_NAME']       = 'pedaclic_session'
app.config['REMEMBER_COOKIE_DURATION']  = datetime.timedelta(days=30)
app.config['REMEMBER_COOKIE_SECURE']    = IS_PRODUCTION
app.config['REMEMBER_COOKIE_HTTPONLY']  = True
app.config['REMEMBER_COOKIE_SAMESITE']  = 'Lax'

# ── Logging ──
logging.basicConfig(format='%(asctime)s %(levelname)s [%(name)s] %(message)s')
app.logger.setLevel(os.environ.get('PEDACLIC_LOG_LEVEL', 'INFO').upper())
log = app.logger

# ── Extensions ──
db      = SQLAlchemy(app)
bcrypt  = Bcrypt(app)
login_manager = LoginManager(app)

# ── App constants ──
GOOGLE_CLIENT_ID = os.environ.get('GOOGLE_CLIENT_ID', '')
APP_BASE_URL     = os.environ.get('APP_BASE_URL', 'http://localhost:5000').rstrip('/')

ROLES              = ('admin', 'prof', 'eleve', 'parent')
SELF_SERVICE_ROLES = ('eleve', 'prof', 'parent')
STAFF_ROLES        = ('admin', 'prof')
LEVEL_GRADES = {
    'college':         ['6eme', '5eme', '4eme', '3eme'],
    'lycee':           ['2nde', '1ere', 'Terminale'],
    'formation_libre': ['debutant', 'intermediaire', 'avance'],
}
RESOURCE_TYPES = ('cours', 'exercice', 'video', 'document', 'quiz')
GROUP_STATUSES = ('actif', 'archive', 'suspendu')
CODE_CHARS     = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'   # no 0/O, 1/I
CODE_ATTEMPTS  = 10
ADMIN_PREMIUM_DAYS = 30
EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

DEFAULT_DISCIPLINES = [
    # (name, level, grade, position, coefficient, color, description)
    ('Français',            'college', '6eme',      1, 3, '#3b82f6', 'Langue française, grammaire, conjugaison, littérature'),
    ('Mathématiques',       'college', '6eme',      2, 3, '#ef4444', 'Nombres, géométrie, calculs, problèmes'),
    ('Anglais',             'college', '6eme',      3, 2, '#8b5cf6', 'Langue anglaise, vocabulaire, grammaire'),
    ('Histoire-Géographie', 'college', '6eme',      4, 2, '#f59e0b', 'Histoire et géographie du monde'),
    ('SVT',                 'college', '6eme',      5, 2, '#10b981', 'Sciences de la Vie et de la Terre'),
    ('Français',            'college', '3eme',      1, 4, '#3b82f6', 'Préparation au BFEM - Français'),
    ('Mathématiques',       'college', '3eme',      2, 4, '#ef4444', 'Préparation au BFEM - Mathématiques'),
    ('Physique-Chimie',     'college', '3eme',      3, 3, '#06b6d4', 'Sciences physiques et chimiques'),
    ('Philosophie',         'lycee',   'Terminale', 1, 5, '#6366f1', 'Préparation au BAC - Philosophie'),
    ('Mathématiques',       'lycee',   'Terminale', 2, 5, '#ef4444', 'Préparation au BAC - Mathématiques'),
    ('Physique-Chimie',     'lycee',   'Terminale', 3, 4, '#06b6d4', 'Préparation au BAC - Physique-Chimie'),
    ('SVT',                 'lycee',   'Terminale', 4, 4, '#10b981', 'Préparation au BAC - SVT'),
]


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime.datetime:
    return datetime.datetime.utcnow()


def iso(value):
    return value.isoformat() if value else None


def load_list(text) -> list:
    return json.loads(text) if text else []

# ─── MODELS ───────────────────────────────────────────────────────────────────

class User(UserMixin, db.Model):
    __tablename__ = 'users'
    id                = db.Column(db.String(36),  primary_key=True, default=new_id)
    email             = db.Column(db.String(200), unique=True, nullable=False)
    display_name      = db.Column(db.String(120), nullable=False)
    role              = db.Column(db.String(20),  nullable=False, default='eleve')
    password_hash     = db.Column(db.String(255), nullable=True)    # null for Google-only accounts
    google_id         = db.Column(db.String(128), unique=True, nullable=True)
    grade             = db.Column(db.String(30),  nullable=True)
    active            = db.Column(db.Boolean,     default=True)
    is_premium        = db.Column(db.Boolean,     default=False)
    subscription_end  = db.Column(db.DateTime,    nullable=True)
    subscription_plan = db.Column(db.String(40),  nullable=True)
    chosen_courses    = db.Column(db.Text,        default='[]')
    usage_count       = db.Column(db.Integer,     default=0)
    parent_code       = db.Column(db.String(20),  unique=True, nullable=True)
    login_streak      = db.Column(db.Integer,     default=0)
    best_login_streak = db.Column(db.Integer,     default=0)
    last_active       = db.Column(db.Date,        nullable=True)
    created_at        = db.Column(db.DateTime,    default=utcnow)
    last_login        = db.Column(db.DateTime,    nullable=True)

    @property
    def is_active(self) -> bool:
        return self.active is not False

    def set_password(self, password: str):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password: str) -> bool:
        if not self.password_hash:
            return False   # Google-only account
        return bcrypt.check_password_hash(self.password_hash, password)

    def touch(self, today: datetime.date = None):
        """Record a visit and update the login streak."""
        today = today or datetime.date.today()
        self.login_streak, self.best_login_streak = tracking.update_login_streak(
            self.last_active, self.login_streak, self.best_login_streak, today)
        self.last_active = today

    def courses(self) -> list:
        return load_list(self.chosen_courses)

    def has_premium(self) -> bool:
        return plans.is_subscription_active(self.is_premium, self.subscription_end)

    def can_open(self, item) -> bool:
        """Premium gate for a Resource or Quiz."""
        if not item.is_premium or self.role in STAFF_ROLES:
            return True
        if not self.has_premium():
            return False
        return plans.can_access_course(item.discipline_id, True, self.subscription_plan, self.courses())

    def public_dict(self) -> dict:
        return {'id': self.id, 'display_name': self.display_name, 'email': self.email,
                'role': self.role, 'grade': self.grade}

    def to_dict(self) -> dict:
        premium = self.has_premium()
        return {
            'id':                self.id,
            'email':             self.email,
            'display_name':      self.display_name,
            'role':              self.role,
            'grade':             self.grade,
            'is_active':         self.is_active,
            'is_premium':        premium,
            'subscription_plan': self.subscription_plan if premium else None,
            'subscription_end':  iso(self.subscription_end) if premium else None,
            'chosen_courses':    self.courses(),
            'usage_count':       self.usage_count or 0,
            'login_streak':      self.login_streak or 0,
            'best_login_streak': self.best_login_streak or 0,
            'last_active':       iso(self.last_active),
            'created_at':        iso(self.created_at),
            'last_login':        iso(self.last_login),
        }


class Discipline(db.Model):
    __tablename__ = 'disciplines'
    id          = db.Column(db.String(36),  primary_key=True, default=new_id)
    name        = db.Column(db.String(120), nullable=False)
    level       = db.Column(db.String(20),  nullable=False)
    grade       = db.Column(db.String(30),  nullable=False)
    position    = db.Column(db.Integer,     default=0)
    coefficient = db.Column(db.Integer,     nullable=True)
    color       = db.Column(db.String(20),  nullable=True)
    icon        = db.Column(db.String(60),  nullable=True)
    description = db.Column(db.Text,        nullable=True)
    created_at  = db.Column(db.DateTime,    default=utcnow)
    updated_at  = db.Column(db.DateTime,    nullable=True)
    chapters    = db.relationship('Chapter', backref='discipline', cascade='all, delete-orphan',
                                  order_by='Chapter.position')

    def to_dict(self, with_chapters: bool = False) -> dict:
        d = {'id': self.id, 'name': self.name, 'level': self.level, 'grade': self.grade,
             'position': self.position, 'coefficient': self.coefficient, 'color': self.color,
             'icon': self.icon, 'description': self.description,
             'created_at': iso(self.created_at), 'updated_at': iso(self.updated_at)}
        if with_chapters:
            d['chapters'] = [c.to_dict() for c in self.chapters]
        return d


class Chapter(db.Model):
    __tablename__ = 'chapters'
    id            = db.Column(db.String(36),  primary_key=True, default=new_id)
    discipline_id = db.Column(db.String(36),  db.ForeignKey('disciplines.id'), nullable=False)
    title         = db.Column(db.String(200), nullable=False)
    position      = db.Column(db.Integer,     default=0)
    description   = db.Column(db.Text,        nullable=True)

    def to_dict(self) -> dict:
        return {'id': self.id, 'discipline_id': self.discipline_id, 'title': self.title,
                'position': self.position, 'description': self.description}


class Resource(db.Model):
    __tablename__ = 'resources'
    id            = db.Column(db.String(36),  primary_key=True, default=new_id)
    discipline_id = db.Column(db.String(36),  db.ForeignKey('disciplines.id'), nullable=False)
    chapter_id    = db.Column(db.String(36),  nullable=True)
    title         = db.Column(db.String(200), nullable=False)
    type          = db.Column(db.String(20),  nullable=False, default='cours')
    content       = db.Column(db.Text,        default='')
    description   = db.Column(db.Text,        nullable=True)
    is_premium    = db.Column(db.Boolean,     default=False)
    position      = db.Column(db.Integer,     default=0)
    file_url      = db.Column(db.String(500), nullable=True)
    external_url  = db.Column(db.String(500), nullable=True)
    duration_min  = db.Column(db.Integer,     nullable=True)
    tags          = db.Column(db.Text,        default='[]')
    active        = db.Column(db.Boolean,     default=True)
    author_id     = db.Column(db.String(36),  nullable=True)
    created_at    = db.Column(db.DateTime,    default=utcnow)
    updated_at    = db.Column(db.DateTime,    nullable=True)

    def to_dict(self, locked: bool = False) -> dict:
        d = {'id': self.id, 'discipline_id': self.discipline_id, 'chapter_id': self.chapter_id,
             'title': self.title, 'type': self.type, 'description': self.description,
             'is_premium': bool(self.is_premium), 'position': self.position,
             'duration_min': self.duration_min, 'tags': load_list(self.tags),
             'active': bool(self.active), 'author_id': self.author_id,
             'has_file': bool(self.file_url), 'locked': locked,
             'created_at': iso(self.created_at)}
        if not locked:
            d['content']      = self.content
            d['external_url'] = self.external_url
        return d


class Quiz(db.Model):
    __tablename__ = 'quizzes'
    id            = db.Column(db.String(36),  primary_key=True, default=new_id)
    discipline_id = db.Column(db.String(36),  db.ForeignKey('disciplines.id'), nullable=False)
    title         = db.Column(db.String(200), nullable=False)
    description   = db.Column(db.Text,        nullable=True)
    questions     = db.Column(db.Text,        nullable=False, default='[]')
    duration_min  = db.Column(db.Integer,     default=15)
    is_premium    = db.Column(db.Boolean,     default=False)
    pass_mark     = db.Column(db.Integer,     default=scoring.DEFAULT_PASS_MARK)
    author_id     = db.Column(db.String(36),  nullable=True)
    created_at    = db.Column(db.DateTime,    default=utcnow)
    updated_at    = db.Column(db.DateTime,    nullable=True)
    discipline    = db.relationship('Discipline')

    def question_list(self) -> list:
        return load_list(self.questions)

    def to_dict(self, with_questions: bool = False, with_key: bool = False, locked: bool = False) -> dict:
        questions = self.question_list()
        d = {'id': self.id, 'discipline_id': self.discipline_id, 'title': self.title,
             'description': self.description, 'duration_min': self.duration_min,
             'is_premium': bool(self.is_premium), 'pass_mark': self.pass_mark,
             'author_id': self.author_id, 'locked': locked,
             'created_at': iso(self.created_at)}
        d.update(scoring.quiz_stats(questions))
        if with_questions and not locked:
            d['questions'] = questions if with_key else scoring.strip_answer_key(questions)
        return d


class QuizResult(db.Model):
    __tablename__ = 'quiz_results'
    id              = db.Column(db.String(36),  primary_key=True, default=new_id)
    quiz_id         = db.Column(db.String(36),  nullable=False)   # history survives quiz deletion
    user_id         = db.Column(db.String(36),  db.ForeignKey('users.id'), nullable=False)
    discipline_id   = db.Column(db.String(36),  nullable=False)
    discipline_name = db.Column(db.String(120), nullable=True)
    quiz_title      = db.Column(db.String(200), nullable=True)
    score           = db.Column(db.Float,       default=0)
    total_points    = db.Column(db.Float,       default=0)
    percentage      = db.Column(db.Integer,     default=0)
    answers         = db.Column(db.Text,        default='[]')
    details         = db.Column(db.Text,        default='[]')   # per-question grading
    needs_review    = db.Column(db.Boolean,     default=False)  # essays awaiting the teacher
    elapsed_sec     = db.Column(db.Integer,     default=0)
    passed          = db.Column(db.Boolean,     default=False)
    question_count  = db.Column(db.Integer,     default=0)
    correct_count   = db.Column(db.Integer,     default=0)
    taken_at        = db.Column(db.DateTime,    default=utcnow, index=True)
    reviewed_at     = db.Column(db.DateTime,    nullable=True)

    def to_row(self) -> dict:
        """Plain dict consumed by the scoring and tracking modules."""
        return {'id': self.id, 'quiz_id': self.quiz_id, 'user_id': self.user_id,
                'discipline_id': self.discipline_id, 'discipline_name': self.discipline_name,
                'quiz_title': self.quiz_title, 'score': self.score,
                'total_points': self.total_points, 'percentage': self.percentage,
                'passed': bool(self.passed), 'answers': load_list(self.answers),
                'details': load_list(self.details),
                'elapsed_sec': self.elapsed_sec or 0, 'taken_at': self.taken_at}

    def to_dict(self) -> dict:
        d = self.to_row()
        d.update({'taken_at': iso(self.taken_at), 'question_count': self.question_count,
                  'correct_count': self.correct_count, 'needs_review': bool(self.needs_review),
                  'reviewed_at': iso(self.reviewed_at),
                  'label': scoring.score_label(self.percentage),
                  'color': scoring.score_color(self.percentage),
                  'duration': scoring.format_duration(self.elapsed_sec)})
        return d


class Progression(db.Model):
    __tablename__ = 'progressions'
    id               = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id          = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    discipline_id    = db.Column(db.String(36), db.ForeignKey('disciplines.id'), nullable=False)
    viewed_resources = db.Column(db.Text,       default='[]')
    passed_quizzes   = db.Column(db.Text,       default='[]')
    total_resources  = db.Column(db.Integer,    default=0)
    total_quizzes    = db.Column(db.Integer,    default=0)
    percentage       = db.Column(db.Integer,    default=0)
    last_access      = db.Column(db.DateTime,   default=utcnow)
    discipline       = db.relationship('Discipline')
    __table_args__   = (db.UniqueConstraint('user_id', 'discipline_id'),)

    def to_dict(self) -> dict:
        return {'discipline_id':    self.discipline_id,
                'discipline_name':  self.discipline.name if self.discipline else None,
                'viewed_resources': load_list(self.viewed_resources),
                'passed_quizzes':   load_list(self.passed_quizzes),
                'total_resources':  self.total_resources,
                'total_quizzes':    self.total_quizzes,
                'percentage':       self.percentage or 0,
                'last_access':      iso(self.last_access)}


class UserBadge(db.Model):
    __tablename__ = 'user_badges'
    id          = db.Column(db.Integer,    primary_key=True)
    user_id     = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    badge_id    = db.Column(db.String(40), nullable=False)
    unlocked_at = db.Column(db.DateTime,   default=utcnow)
    __table_args__ = (db.UniqueConstraint('user_id', 'badge_id'),)


class Group(db.Model):
    __tablename__ = 'groups'
    id            = db.Column(db.String(36),  primary_key=True, default=new_id)
    teacher_id    = db.Column(db.String(36),  db.ForeignKey('users.id'), nullable=False)
    name          = db.Column(db.String(120), nullable=False)
    description   = db.Column(db.Text,        nullable=True)
    discipline_id = db.Column(db.String(36),  nullable=True)
    grade         = db.Column(db.String(30),  nullable=True)
    invite_code   = db.Column(db.String(20),  unique=True, nullable=False)
    member_count  = db.Column(db.Integer,     default=0)
    status        = db.Column(db.String(20),  default='actif')
    school_year   = db.Column(db.String(20),  nullable=True)
    created_at    = db.Column(db.DateTime,    default=utcnow)
    updated_at    = db.Column(db.DateTime,    nullable=True)
    teacher       = db.relationship('User')

    def to_dict(self, with_code: bool = True) -> dict:
        d = {'id': self.id, 'teacher_id': self.teacher_id,
             'teacher_name': self.teacher.display_name if self.teacher else None,
             'name': self.name, 'description': self.description,
             'discipline_id': self.discipline_id, 'grade': self.grade,
             'member_count': self.member_count or 0, 'status': self.status,
             'school_year': self.school_year, 'created_at': iso(self.created_at)}
        if with_code:
            d['invite_code'] = self.invite_code
        return d


class GroupMembership(db.Model):
    __tablename__ = 'group_memberships'
    id         = db.Column(db.Integer,    primary_key=True)
    group_id   = db.Column(db.String(36), db.ForeignKey('groups.id'), nullable=False)
    student_id = db.Column(db.String(36), db.ForeignKey('users.id'),  nullable=False)
    status     = db.Column(db.String(20), default='actif')
    joined_at  = db.Column(db.DateTime,   default=utcnow)
    removed_at = db.Column(db.DateTime,   nullable=True)
    __table_args__ = (db.UniqueConstraint('group_id', 'student_id'),)


class Assignment(db.Model):
    __tablename__ = 'assignments'
    id          = db.Column(db.String(36),  primary_key=True, default=new_id)
    group_id    = db.Column(db.String(36),  db.ForeignKey('groups.id'), nullable=False)
    teacher_id  = db.Column(db.String(36),  db.ForeignKey('users.id'),  nullable=False)
    title       = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text,        default='')
    subject     = db.Column(db.String(120), nullable=True)
    due_date    = db.Column(db.Date,        nullable=False)
    created_at  = db.Column(db.DateTime,    default=utcnow)
    group       = db.relationship('Group')

    def to_dict(self) -> dict:
        return {'id': self.id, 'group_id': self.group_id,
                'group_name': self.group.name if self.group else None,
                'teacher_id': self.teacher_id, 'title': self.title,
                'description': self.description, 'subject': self.subject,
                'due_date': iso(self.due_date), 'created_at': iso(self.created_at)}


class Attendance(db.Model):
    """One roll call per group and day; saving it again replaces the list."""
    __tablename__ = 'attendance'
    id          = db.Column(db.Integer,    primary_key=True)
    group_id    = db.Column(db.String(36), db.ForeignKey('groups.id'), nullable=False)
    teacher_id  = db.Column(db.String(36), db.ForeignKey('users.id'),  nullable=False)
    day         = db.Column(db.Date,       nullable=False)
    absent_ids  = db.Column(db.Text,       default='[]')
    updated_at  = db.Column(db.DateTime,   default=utcnow)
    __table_args__ = (db.UniqueConstraint('group_id', 'day'),)

    def to_dict(self) -> dict:
        return {'group_id': self.group_id, 'date': iso(self.day),
                'absent': load_list(self.absent_ids), 'updated_at': iso(self.updated_at)}


class Observation(db.Model):
    __tablename__ = 'observations'
    id          = db.Column(db.Integer,    primary_key=True)
    group_id    = db.Column(db.String(36), db.ForeignKey('groups.id'), nullable=False)
    student_id  = db.Column(db.String(36), db.ForeignKey('users.id'),  nullable=False)
    teacher_id  = db.Column(db.String(36), nullable=False)
    text        = db.Column(db.Text,       default='')
    updated_at  = db.Column(db.DateTime,   default=utcnow)
    student     = db.relationship('User', foreign_keys=[student_id])
    __table_args__ = (db.UniqueConstraint('group_id', 'student_id'),)

    def to_dict(self) -> dict:
        return {'group_id': self.group_id, 'student_id': self.student_id,
                'student_name': self.student.display_name if self.student else None,
                'text': self.text, 'updated_at': iso(self.updated_at)}


class Notebook(db.Model):
    """A lesson log: one per class, subject and school year."""
    __tablename__ = 'notebooks'
    id               = db.Column(db.String(36),  primary_key=True, default=new_id)
    teacher_id       = db.Column(db.String(36),  db.ForeignKey('users.id'), nullable=False)
    grade            = db.Column(db.String(30),  nullable=False)
    subject          = db.Column(db.String(120), nullable=False)
    school_year      = db.Column(db.String(20),  nullable=False)
    title            = db.Column(db.String(200), nullable=False)
    description      = db.Column(db.Text,        default='')
    color            = db.Column(db.String(7),   default=lessons.DEFAULT_COLOR)
    planned_sessions = db.Column(db.Integer,     default=0)
    done_sessions    = db.Column(db.Integer,     default=0)
    archived         = db.Column(db.Boolean,     default=False)
    created_at       = db.Column(db.DateTime,    default=utcnow)
    updated_at       = db.Column(db.DateTime,    default=utcnow)
    entries          = db.relationship('NotebookEntry', backref='notebook', lazy='dynamic')

    def to_dict(self) -> dict:
        return {'id': self.id, 'teacher_id': self.teacher_id, 'grade': self.grade,
                'subject': self.subject, 'school_year': self.school_year, 'title': self.title,
                'description': self.description, 'color': self.color,
                'planned_sessions': self.planned_sessions or 0,
                'done_sessions': self.done_sessions or 0,
                'progress': lessons.progress_rate(self.done_sessions or 0, self.planned_sessions or 0),
                'archived': bool(self.archived),
                'created_at': iso(self.created_at), 'updated_at': iso(self.updated_at)}


class NotebookEntry(db.Model):
    __tablename__ = 'notebook_entries'
    id                = db.Column(db.String(36),  primary_key=True, default=new_id)
    notebook_id       = db.Column(db.String(36),  db.ForeignKey('notebooks.id'), nullable=False)
    teacher_id        = db.Column(db.String(36),  nullable=False)
    day               = db.Column(db.Date,        nullable=False)
    start_time        = db.Column(db.String(5),   nullable=True)
    end_time          = db.Column(db.String(5),   nullable=True)
    chapter           = db.Column(db.String(200), nullable=False)
    content_type      = db.Column(db.String(30),  default='cours')
    content           = db.Column(db.Text,        default='')
    objectives        = db.Column(db.Text,        default='')
    skills            = db.Column(db.Text,        default='[]')
    status            = db.Column(db.String(20),  default='planifie')
    cancel_reason     = db.Column(db.Text,        nullable=True)
    postponed_to      = db.Column(db.Date,        nullable=True)
    private_notes     = db.Column(db.Text,        default='')
    is_evaluation     = db.Column(db.Boolean,     default=False)
    evaluation_type   = db.Column(db.String(20),  nullable=True)
    evaluation_date   = db.Column(db.Date,        nullable=True)
    evaluation_status = db.Column(db.String(30),  nullable=True)
    position          = db.Column(db.Integer,     default=0)
    created_at        = db.Column(db.DateTime,    default=utcnow)
    updated_at        = db.Column(db.DateTime,    default=utcnow)

    def to_dict(self) -> dict:
        return {'id': self.id, 'notebook_id': self.notebook_id, 'date': iso(self.day),
                'start_time': self.start_time, 'end_time': self.end_time,
                'chapter': self.chapter, 'content_type': self.content_type,
                'content': self.content, 'objectives': self.objectives,
                'skills': load_list(self.skills), 'status': self.status,
                'cancel_reason': self.cancel_reason, 'postponed_to': iso(self.postponed_to),
                'private_notes': self.private_notes, 'is_evaluation': bool(self.is_evaluation),
                'evaluation_type': self.evaluation_type,
                'evaluation_date': iso(self.evaluation_date),
                'evaluation_status': self.evaluation_status, 'position': self.position,
                'created_at': iso(self.created_at), 'updated_at': iso(self.updated_at)}


class Notification(db.Model):
    __tablename__ = 'notifications'
    id             = db.Column(db.String(36),  primary_key=True, default=new_id)
    recipient_id   = db.Column(db.String(36),  db.ForeignKey('users.id'), nullable=False, index=True)
    recipient_role = db.Column(db.String(20),  nullable=True)
    type           = db.Column(db.String(30),  nullable=False)
    title          = db.Column(db.String(200), nullable=False)
    message        = db.Column(db.Text,        nullable=False)
    action_url     = db.Column(db.String(500), nullable=True)
    action_label   = db.Column(db.String(120), nullable=True)
    sender_id      = db.Column(db.String(36),  nullable=True)
    sender_name    = db.Column(db.String(120), nullable=True)
    entity_id      = db.Column(db.String(36),  nullable=True)
    entity_type    = db.Column(db.String(20),  nullable=True)
    status         = db.Column(db.String(20),  default='non_lue')
    created_at     = db.Column(db.DateTime,    default=utcnow, index=True)
    read_at        = db.Column(db.DateTime,    nullable=True)

    def to_dict(self) -> dict:
        return {'id': self.id, 'type': self.type, 'title': self.title, 'message': self.message,
                'action_url': self.action_url, 'action_label': self.action_label,
                'sender_id': self.sender_id, 'sender_name': self.sender_name,
                'entity_id': self.entity_id, 'entity_type': self.entity_type,
                'status': self.status, 'created_at': iso(self.created_at),
                'read_at': iso(self.read_at)}


class ParentLink(db.Model):
    __tablename__ = 'parent_links'
    id             = db.Column(db.String(36), primary_key=True, default=new_id)
    parent_id      = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    child_id       = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    invite_code    = db.Column(db.String(20), nullable=False)
    status         = db.Column(db.String(20), default='actif')
    created_at     = db.Column(db.DateTime,   default=utcnow)
    last_viewed_at = db.Column(db.DateTime,   nullable=True)
    child          = db.relationship('User', foreign_keys=[child_id])

    def to_dict(self) -> dict:
        return {'id': self.id, 'parent_id': self.parent_id, 'child_id': self.child_id,
                'child': self.child.public_dict() if self.child else None,
                'status': self.status, 'created_at': iso(self.created_at),
                'last_viewed_at': iso(self.last_viewed_at)}


class Transaction(db.Model):
    __tablename__ = 'transactions'
    id                  = db.Column(db.String(36),  primary_key=True, default=new_id)
    user_id             = db.Column(db.String(36),  db.ForeignKey('users.id'), nullable=False)
    plan                = db.Column(db.String(40),  nullable=False)
    amount              = db.Column(db.Integer,     nullable=False)
    currency            = db.Column(db.String(3),   default=plans.CURRENCY)
    status              = db.Column(db.String(20),  default='pending')
    provider_payment_id = db.Column(db.String(120), unique=True, nullable=True)
    created_at          = db.Column(db.DateTime,    default=utcnow)
    expires_at          = db.Column(db.DateTime,    nullable=True)

    def to_dict(self) -> dict:
        return {'id': self.id, 'plan': self.plan, 'amount': self.amount,
                'currency': self.currency, 'status': self.status,
                'provider_payment_id': self.provider_payment_id,
                'created_at': iso(self.created_at), 'expires_at': iso(self.expires_at)}

# ─── FLASK-LOGIN ──────────────────────────────────────────────────────────────

@login_manager.user_loader
def load_user(user_id: str):
    return db.session.get(User, str(user_id))

@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'error': 'Not authenticated, please log in.'}), 401

# ─── SESSION PERSISTENCE ─────────────────────────────────────────────────────

@app.before_request
def make_session_permanent():
    session.permanent = True
    # a deactivated account loses its open sessions
    if current_user.is_authenticated and not current_user.is_active:
        logout_user()

# ─── DB INIT & MIGRATION ──────────────────────────────────────────────────────

def run_migrations():
    """Add columns introduced after a database was first created. Idempotent."""
    try:
        with db.engine.connect() as conn:
            dialect = db.engine.dialect.name

            def column_exists(table, column):
                if dialect == 'postgresql':
                    result = conn.execute(
                        db.text("SELECT 1 FROM information_schema.columns "
                                "WHERE table_name=:t AND column_name=:c"),
                        {'t': table, 'c': column}
                    )
                    return result.fetchone() is not None
                result = conn.execute(db.text(f"PRAGMA table_info({table})"))
                return any(row[1] == column for row in result)

            migrations = [
                ('users', 'usage_count',
                 'ALTER TABLE users ADD COLUMN usage_count INTEGER DEFAULT 0'),
                ('users', 'best_login_streak',
                 'ALTER TABLE users ADD COLUMN best_login_streak INTEGER DEFAULT 0'),
                ('quizzes', 'pass_mark',
                 f'ALTER TABLE quizzes ADD COLUMN pass_mark INTEGER DEFAULT {scoring.DEFAULT_PASS_MARK}'),
                ('quiz_results', 'details',
                 "ALTER TABLE quiz_results ADD COLUMN details TEXT DEFAULT '[]'"),
                ('quiz_results', 'needs_review',
                 'ALTER TABLE quiz_results ADD COLUMN needs_review BOOLEAN DEFAULT FALSE'),
                ('quiz_results', 'reviewed_at',
                 'ALTER TABLE quiz_results ADD COLUMN reviewed_at TIMESTAMP'),
            ]

            for table, column, ddl in migrations:
                if not column_exists(table, column):
                    conn.execute(db.text(ddl))
                    conn.commit()
                    log.info('migration: added %s.%s', table, column)

    except Exception as migration_err:
        # never let a migration failure crash the app
        log.warning('migration failed: %s', migration_err)


with app.app_context():
    db.create_all()
    run_migrations()

# ─── HELPERS ──────────────────────────────────────────────────────────────────

def roles_required(*roles):
    """Login required, and the current user's role must be one of `roles`."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                return login_manager.unauthorized()
            if current_user.role not in roles:
                return jsonify({'error': 'You do not have access to this resource.'}), 403
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def body() -> dict:
    return request.get_json(silent=True) or {}


def flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def parse_date(value) -> datetime.date:
    try:
        return datetime.datetime.strptime(str(value), '%Y-%m-%d').date()
    except (TypeError, ValueError):
        raise ValueError('Dates must use the YYYY-MM-DD format.')


def invite_code(prefix: str) -> str:
    block = lambda: ''.join(secrets.choice(CODE_CHARS) for _ in range(4))
    return f'{prefix}-{block()}-{block()}'


def unique_code(prefix: str, model, field: str) -> str:
    for _ in range(CODE_ATTEMPTS):
        code = invite_code(prefix)
        if not model.query.filter_by(**{field: code}).first():
            return code
    raise RuntimeError(f'Could not generate a unique {prefix} code.')


def normalise_code(value) -> str:
    return re.sub(r'\s+', '', str(value or '')).upper()


def result_rows(user_ids) -> list:
    """Quiz results as plain dicts, newest first."""
    if isinstance(user_ids, str):
        user_ids = [user_ids]
    if not user_ids:
        return []
    q = QuizResult.query.filter(QuizResult.user_id.in_(user_ids))
    return [r.to_row() for r in q.order_by(QuizResult.taken_at.desc()).all()]


def record_progress(user_id: str, discipline_id: str, resource_id: str = None, quiz_id: str = None):
    """Mark a resource viewed or a quiz passed and refresh the percentage."""
    prog = Progression.query.filter_by(user_id=user_id, discipline_id=discipline_id).first()
    if not prog:
        prog = Progression(user_id=user_id, discipline_id=discipline_id)
        db.session.add(prog)
    viewed = load_list(prog.viewed_resources)
    passed = load_list(prog.passed_quizzes)
    if resource_id and resource_id not in viewed:
        viewed.append(resource_id)
    if quiz_id and quiz_id not in passed:
        passed.append(quiz_id)
    prog.viewed_resources = json.dumps(viewed)
    prog.passed_quizzes   = json.dumps(passed)
    prog.total_resources  = Resource.query.filter_by(discipline_id=discipline_id, active=True).count()
    prog.total_quizzes    = Quiz.query.filter_by(discipline_id=discipline_id).count()
    prog.percentage       = scoring.progression_percentage(len(viewed), len(passed),
                                                           prog.total_resources, prog.total_quizzes)
    prog.last_access      = utcnow()
    return prog


def sync_badges(user, rows: list = None):
    """
    Compute the badge catalogue for `user` and persist newly unlocked badges.
    Returns (catalogue, newly_unlocked). Once stored, a badge stays unlocked.
    """
    rows   = result_rows(user.id) if rows is None else rows
    badges = scoring.compute_badges(scoring.student_progress(rows), scoring.discipline_progress(rows))
    owned  = {b.badge_id: b for b in UserBadge.query.filter_by(user_id=user.id).all()}
    fresh  = []
    for b in badges:
        if b['unlocked'] and b['id'] not in owned:
            owned[b['id']] = UserBadge(user_id=user.id, badge_id=b['id'], unlocked_at=utcnow())
            db.session.add(owned[b['id']])
            fresh.append(b)
            log.info('badge unlocked: user=%s badge=%s', user.id, b['id'])
        stored = owned.get(b['id'])
        b['unlocked']    = stored is not None
        b['unlocked_at'] = iso(stored.unlocked_at) if stored else None
    return badges, fresh


def notify(recipients, ntype: str, sender=None, **fields) -> int:
    """Queue one in-app notification per recipient (caller commits). Returns the count."""
    content = notifications.compose(dict(fields, type=ntype))
    count = 0
    for user in recipients:
        db.session.add(Notification(
            recipient_id=user.id, recipient_role=user.role,
            sender_id=sender.id if sender else None,
            sender_name=sender.display_name if sender else None, **content))
        count += 1
    return count


def can_review(result) -> bool:
    """Admins, the quiz author, or a teacher of one of the student's groups."""
    if current_user.role == 'admin':
        return True
    quiz = db.session.get(Quiz, result.quiz_id)
    if quiz and quiz.author_id == current_user.id:
        return True
    return (GroupMembership.query.join(Group, Group.id == GroupMembership.group_id)
            .filter(Group.teacher_id == current_user.id,
                    GroupMembership.student_id == result.user_id,
                    GroupMembership.status == 'actif').first()) is not None


def active_students(group) -> list:
    return (User.query.join(GroupMembership, GroupMembership.student_id == User.id)
            .filter(GroupMembership.group_id == group.id, GroupMembership.status == 'actif')
            .order_by(User.display_name).all())


def owned_group(group_id: str):
    """Returns (group, None) or (None, error_response)."""
    group = db.session.get(Group, group_id)
    if not group:
        return None, (jsonify({'error': 'Group not found.'}), 404)
    if group.teacher_id != current_user.id and current_user.role != 'admin':
        return None, (jsonify({'error': 'This group belongs to another teacher.'}), 403)
    return group, None


def students_stats(group, today: datetime.date) -> list:
    students = active_students(group)
    rows = result_rows([s.id for s in students])
    stats = []
    for s in students:
        mine = [r for r in rows if r['user_id'] == s.id]
        stats.append(tracking.student_group_stats(
            {'id': s.id, 'name': s.display_name, 'email': s.email}, mine, today))
    return stats


def upcoming_assignments(student_id: str, today: datetime.date) -> list:
    group_ids = [m.group_id for m in
                 GroupMembership.query.filter_by(student_id=student_id, status='actif').all()]
    if not group_ids:
        return []
    q = Assignment.query.filter(Assignment.group_id.in_(group_ids), Assignment.due_date >= today)
    return [a.to_dict() for a in q.order_by(Assignment.due_date).all()]


def export_name(group, ext: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', group.name.lower()).strip('-') or 'groupe'
    return f'{slug}-eleves.{ext}'


def discipline_fields(d: dict, current=None) -> dict:
    """Validate a discipline payload. Raises ValueError."""
    fields = {}
    name = d.get('name', current.name if current else None)
    if not (name or '').strip():
        raise ValueError('A discipline needs a name.')
    fields['name'] = name.strip()
    level = d.get('level', current.level if current else None)
    if level not in LEVEL_GRADES:
        raise ValueError(f'Level must be one of: {", ".join(LEVEL_GRADES)}.')
    grade = d.get('grade', current.grade if current else None)
    if grade not in LEVEL_GRADES[level]:
        raise ValueError(f'Grade {grade} does not exist for level {level}.')
    fields.update(level=level, grade=grade)
    for key in ('position', 'coefficient'):
        if key in d and d[key] is not None:
            try:
                fields[key] = int(d[key])
            except (TypeError, ValueError):
                raise ValueError(f'{key} must be a number.')
    for key in ('color', 'icon', 'description'):
        if key in d:
            fields[key] = d[key]
    return fields


def resource_fields(d: dict, current=None) -> dict:
    """Validate a resource payload. Raises ValueError."""
    fields = {}
    discipline_id = d.get('discipline_id', current.discipline_id if current else None)
    if not discipline_id or not db.session.get(Discipline, discipline_id):
        raise ValueError('Unknown discipline.')
    fields['discipline_id'] = discipline_id
    if 'chapter_id' in d:
        chapter = db.session.get(Chapter, d['chapter_id']) if d['chapter_id'] else None
        if d['chapter_id'] and (not chapter or chapter.discipline_id != discipline_id):
            raise ValueError('Chapter does not belong to this discipline.')
        fields['chapter_id'] = d['chapter_id'] or None
    title = d.get('title', current.title if current else None)
    if not (title or '').strip():
        raise ValueError('A resource needs a title.')
    fields['title'] = title.strip()
    rtype = d.get('type', current.type if current else 'cours')
    if rtype not in RESOURCE_TYPES:
        raise ValueError(f'Type must be one of: {", ".join(RESOURCE_TYPES)}.')
    fields['type'] = rtype
    for key in ('content', 'description', 'file_url', 'external_url'):
        if key in d:
            fields[key] = d[key]
    for key in ('position', 'duration_min'):
        if key in d and d[key] is not None:
            try:
                fields[key] = int(d[key])
            except (TypeError, ValueError):
                raise ValueError(f'{key} must be a number.')
    for key in ('is_premium', 'active'):
        if key in d:
            fields[key] = flag(d[key])
    if 'tags' in d:
        if not isinstance(d['tags'], list):
            raise ValueError('Tags must be a list.')
        fields['tags'] = json.dumps([str(t).strip() for t in d['tags'] if str(t).strip()])
    return fields


def quiz_fields(d: dict, current=None) -> dict:
    """Validate a quiz payload. Raises ValueError."""
    fields = {}
    discipline_id = d.get('discipline_id', current.discipline_id if current else None)
    if not discipline_id or not db.session.get(Discipline, discipline_id):
        raise ValueError('Unknown discipline.')
    fields['discipline_id'] = discipline_id
    title = d.get('title', current.title if current else None)
    if not (title or '').strip():
        raise ValueError('A quiz needs a title.')
    fields['title'] = title.strip()
    if 'questions' in d or current is None:
        fields['questions'] = json.dumps(scoring.validate_questions(d.get('questions')))
    if 'pass_mark' in d:
        try:
            mark = int(d['pass_mark'])
        except (TypeError, ValueError):
            raise ValueError('pass_mark must be a number.')
        if not 1 <= mark <= 100:
            raise ValueError('pass_mark must be between 1 and 100.')
        fields['pass_mark'] = mark
    if 'duration_min' in d:
        try:
            fields['duration_min'] = max(1, int(d['duration_min']))
        except (TypeError, ValueError):
            raise ValueError('duration_min must be a number.')
    if 'description' in d:
        fields['description'] = d['description']
    if 'is_premium' in d:
        fields['is_premium'] = flag(d['is_premium'])
    return fields


def notebook_fields(d: dict, current=None) -> dict:
    """Validate a lesson-log notebook payload. Raises ValueError."""
    fields = {}
    grade = d.get('grade', current.grade if current else None)
    if grade not in LEVEL_GRADES['college'] + LEVEL_GRADES['lycee']:
        raise ValueError('Unknown grade.')
    subject = (d.get('subject', current.subject if current else None) or '').strip()
    if not subject:
        raise ValueError('A notebook needs a subject.')
    school_year = (d.get('school_year', current.school_year if current else None) or '').strip()
    if not re.match(r'^\d{4}-\d{4}$', school_year):
        raise ValueError('school_year must look like 2025-2026.')
    fields.update(grade=grade, subject=subject, school_year=school_year)
    if 'title' in d or current is None:
        fields['title'] = (d.get('title') or '').strip() \
            or lessons.default_title(subject, grade, school_year)
    if 'color' in d:
        if not lessons.COLOR_RE.match(d['color'] or ''):
            raise ValueError('color must be a #rrggbb value.')
        fields['color'] = d['color']
    if 'planned_sessions' in d:
        try:
            fields['planned_sessions'] = max(0, int(d['planned_sessions'] or 0))
        except (TypeError, ValueError):
            raise ValueError('planned_sessions must be a number.')
    if 'description' in d:
        fields['description'] = d['description'] or ''
    return fields


def entry_fields(d: dict, current=None) -> dict:
    """Validate a lesson-log entry payload. Raises ValueError."""
    fields = {}
    if 'date' in d or current is None:
        fields['day'] = parse_date(d.get('date'))
    chapter = (d.get('chapter', current.chapter if current else None) or '').strip()
    if not chapter:
        raise ValueError('An entry needs a chapter.')
    fields['chapter'] = chapter
    content_type = d.get('content_type', current.content_type if current else 'cours')
    if content_type not in lessons.CONTENT_TYPES:
        raise ValueError(f'content_type must be one of: {", ".join(lessons.CONTENT_TYPES)}.')
    status = d.get('status', current.status if current else 'planifie')
    if status not in lessons.SESSION_STATUSES:
        raise ValueError(f'status must be one of: {", ".join(lessons.SESSION_STATUSES)}.')
    fields.update(content_type=content_type, status=status)

    start = d.get('start_time', current.start_time if current else None) or None
    end   = d.get('end_time', current.end_time if current else None) or None
    if start:
        lessons.minutes(start)
    if end:
        lessons.minutes(end)
    if start and end and lessons.minutes(end) <= lessons.minutes(start):
        raise ValueError('A session must end after it starts.')
    fields.update(start_time=start, end_time=end)

    if status == 'annule':
        reason = d.get('cancel_reason', current.cancel_reason if current else None)
        if not (reason or '').strip():
            raise ValueError('A cancelled session needs a reason.')
        fields['cancel_reason'] = reason.strip()
    if status == 'reporte':
        fields['postponed_to'] = parse_date(d.get('postponed_to', iso(current.postponed_to) if current else None))

    if 'skills' in d:
        if not isinstance(d['skills'], list):
            raise ValueError('skills must be a list.')
        fields['skills'] = json.dumps([str(s).strip() for s in d['skills'] if str(s).strip()])
    for key in ('content', 'objectives', 'private_notes'):
        if key in d:
            fields[key] = d[key] or ''
    if 'position' in d:
        try:
            fields['position'] = int(d['position'] or 0)
        except (TypeError, ValueError):
            raise ValueError('position must be a number.')

    is_evaluation = flag(d['is_evaluation']) if 'is_evaluation' in d \
        else bool(current and current.is_evaluation)
    fields['is_evaluation'] = is_evaluation
    if is_evaluation:
        etype = d.get('evaluation_type', current.evaluation_type if current else None)
        if etype not in lessons.EVALUATION_TYPES:
            raise ValueError(f'evaluation_type must be one of: {", ".join(lessons.EVALUATION_TYPES)}.')
        estatus = d.get('evaluation_status', current.evaluation_status if current else None) or 'a_evaluer'
        if estatus not in lessons.EVALUATION_STATUSES:
            raise ValueError(f'evaluation_status must be one of: {", ".join(lessons.EVALUATION_STATUSES)}.')
        fields.update(evaluation_type=etype, evaluation_status=estatus)
        if d.get('evaluation_date'):
            fields['evaluation_date'] = parse_date(d['evaluation_date'])
    else:
        fields.update(evaluation_type=None, evaluation_status=None, evaluation_date=None)
    return fields


def refresh_done_sessions(notebook):
    notebook.done_sessions = notebook.entries.filter_by(status='realise').count()
    notebook.updated_at = utcnow()


def apply(obj, fields: dict):
    for key, value in fields.items():
        setattr(obj, key, value)
    if hasattr(obj, 'updated_at'):
        obj.updated_at = utcnow()

# ─── ROUTES ───────────────────────────────────────────────────────────────────

@app.route('/ping')
def ping():
    return jsonify({'ok': True, 'production': IS_PRODUCTION,
                    'payments': bool(gateway.MONEROO_SECRET_KEY)})

@app.route('/stats')
def stats():
    return jsonify({
        'users':       User.query.count(),
        'students':    User.query.filter_by(role='eleve').count(),
        'disciplines': Discipline.query.count(),
        'resources':   Resource.query.filter_by(active=True).count(),
        'quizzes':     Quiz.query.count(),
        'results':     QuizResult.query.count(),
    })

# ── Auth ──────────────────────────────────────────────────────────────────────

@app.route('/auth/register', methods=['POST'])
def register():
    d        = body()
    name     = (d.get('display_name') or '').strip()
    email    = (d.get('email') or '').strip().lower()
    password = (d.get('password') or '')
    role     = d.get('role') or 'eleve'

    if not all([name, email, password]):
        return jsonify({'error': 'Name, email and password are required.'}), 400
    if not EMAIL_RE.match(email):
        return jsonify({'error': 'That email address is not valid.'}), 400
    if len(password) < 8:
        return jsonify({'error': 'Password must be at least 8 characters.'}), 400
    if role not in SELF_SERVICE_ROLES:
        return jsonify({'error': 'You can only register as eleve, prof or parent.'}), 400
    if User.query.filter_by(email=email).first():
        return jsonify({'error': 'That email address is already registered.'}), 409

    user = User(display_name=name, email=email, role=role, grade=d.get('grade'),
                active=True, last_login=utcnow())
    user.set_password(password)
    user.touch()
    db.session.add(user)
    db.session.flush()
    notify([user], 'bienvenue')
    db.session.commit()
    log.info('user registered: %s (%s)', user.id, role)

    session.permanent = True
    login_user(user, remember=True)
    return jsonify({'user': user.to_dict(), 'message': 'Account created successfully!'}), 201

@app.route('/auth/login', methods=['POST'])
def login():
    d        = body()
    email    = (d.get('email') or '').strip().lower()
    password = (d.get('password') or '')

    if not email or not password:
        return jsonify({'error': 'Email and password are required.'}), 400

    user = User.query.filter_by(email=email).first()
    # identical error for unknown email and wrong password
    if not user or not user.check_password(password):
        return jsonify({'error': 'Invalid email or password.'}), 401
    if not user.is_active:
        return jsonify({'error': 'This account has been deactivated.'}), 403

    user.touch()
    user.last_login = utcnow()
    db.session.commit()

    session.permanent = True
    login_user(user, remember=True)
    return jsonify({'user': user.to_dict()})

@app.route('/auth/google', methods=['POST'])
def google_auth():
    """
    Verify a Google ID token with Google's tokeninfo endpoint, then sign in or
    create the account. The audience claim is checked when GOOGLE_CLIENT_ID is set.
    """
    d     = body()
    token = (d.get('credential') or '').strip()
    if not token:
        return jsonify({'error': 'No Google credential received.'}), 400
    role = d.get('role') or 'eleve'
    if role not in SELF_SERVICE_ROLES:
        return jsonify({'error': 'You can only register as eleve, prof or parent.'}), 400

    try:
        r = http_req.get('https://oauth2.googleapis.com/tokeninfo',
                         params={'id_token': token}, timeout=10)
    except http_req.exceptions.RequestException as e:
        log.warning('google tokeninfo unreachable: %s', e)
        return jsonify({'error': 'Could not reach Google to verify sign-in.'}), 502
    if not r.ok:
        return jsonify({'error': 'Google sign-in failed, invalid token.'}), 401
    info = r.json()

    if GOOGLE_CLIENT_ID and info.get('aud') != GOOGLE_CLIENT_ID:
        return jsonify({'error': 'Google sign-in failed, token audience mismatch.'}), 401

    google_id = info.get('sub', '')
    email     = (info.get('email') or '').strip().lower()
    name      = (info.get('name') or email.split('@')[0]).strip()
    if not google_id or not email:
        return jsonify({'error': 'Google did not return required profile information.'}), 400

    # tokeninfo returns the claim as the string 'true'
    email_verified = str(info.get('email_verified', '')).lower() == 'true'

    user = User.query.filter_by(google_id=google_id).first()
    if not user:
        user = User.query.filter_by(email=email).first()
        if user and not email_verified:
            return jsonify({'error': 'Google has not verified this email address, '
                                     'sign in with your password instead.'}), 403
    created = user is None
    if user:
        if not user.is_active:
            return jsonify({'error': 'This account has been deactivated.'}), 403
        if not user.google_id:
            user.google_id = google_id
    else:
        user = User(display_name=name, email=email, google_id=google_id, role=role, active=True)
        db.session.add(user)
        db.session.flush()
        notify([user], 'bienvenue')
    user.touch()
    user.last_login = utcnow()
    db.session.commit()
    if created:
        log.info('user registered with google: %s (%s)', user.id, role)

    session.permanent = True
    login_user(user, remember=True)
    return jsonify({'user': user.to_dict(), 'created': created}), 201 if created else 200

@app.route('/auth/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'message': 'Signed out successfully.'})

@app.route('/auth/check')
def auth_check():
    if current_user.is_authenticated:
        current_user.touch()
        db.session.commit()
        return jsonify({'authenticated': True, 'user': current_user.to_dict()})
    return jsonify({'authenticated': False})

# ── User ──────────────────────────────────────────────────────────────────────

@app.route('/user/me')
@login_required
def me():
    return jsonify({'user': current_user.to_dict()})

@app.route('/user/dashboard')
@login_required
def dashboard():
    today = datetime.date.today()
    user  = current_user
    out   = {'user': user.to_dict()}

    if user.role == 'eleve':
        rows = result_rows(user.id)
        summary = tracking.tracking_summary(user.id, rows, today)
        badges, _ = sync_badges(user, rows)
        db.session.commit()
        out.update({
            'progress':    scoring.student_progress(rows),
            'badges':      [b for b in badges if b['unlocked']],
            'tracking':    summary,
            'message':     tracking.motivation_message(summary['score']),
            'assignments': upcoming_assignments(user.id, today),
            'recent':      [r.to_dict() for r in QuizResult.query.filter_by(user_id=user.id)
                            .order_by(QuizResult.taken_at.desc()).limit(5).all()],
        })
    elif user.role == 'prof':
        groups = Group.query.filter_by(teacher_id=user.id).all()
        out.update({
            'groups':        len(groups),
            'active_groups': sum(1 for g in groups if g.status == 'actif'),
            'students':      sum(g.member_count or 0 for g in groups if g.status == 'actif'),
            'quizzes':       Quiz.query.filter_by(author_id=user.id).count(),
            'resources':     Resource.query.filter_by(author_id=user.id).count(),
        })
    elif user.role == 'parent':
        links = ParentLink.query.filter_by(parent_id=user.id, status='actif').all()
        out['children'] = [l.to_dict() for l in links]
    else:
        out['stats'] = admin_counts()
    return jsonify(out)

# ── Admin ─────────────────────────────────────────────────────────────────────

def admin_counts() -> dict:
    users = User.query.all()
    return {
        'users':        len(users),
        'by_role':      {r: sum(1 for u in users if u.role == r) for r in ROLES},
        'premium':      sum(1 for u in users if u.has_premium()),
        'active':       sum(1 for u in users if u.is_active),
        'disciplines':  Discipline.query.count(),
        'resources':    Resource.query.count(),
        'quizzes':      Quiz.query.count(),
        'results':      QuizResult.query.count(),
        'groups':       Group.query.count(),
        'revenue':      sum(t.amount for t in Transaction.query.filter_by(status='success').all()),
    }

@app.route('/admin/users')
@roles_required('admin')
def admin_users():
    q = User.query
    role = request.args.get('role')
    if role:
        q = q.filter_by(role=role)
    search = (request.args.get('q') or '').strip()
    if search:
        like = f'%{search}%'
        q = q.filter(db.or_(User.email.ilike(like), User.display_name.ilike(like)))
    users = q.order_by(User.created_at.desc()).all()
    if 'premium' in request.args:
        wanted = flag(request.args['premium'])
        users = [u for u in users if u.has_premium() == wanted]
    return jsonify({'users': [u.to_dict() for u in users]})

@app.route('/admin/users/<user_id>', methods=['PATCH'])
@roles_required('admin')
def admin_update_user(user_id):
    user = db.session.get(User, user_id)
    if not user:
        return jsonify({'error': 'User not found.'}), 404
    d = body()
    if 'role' in d:
        if d['role'] not in ROLES:
            return jsonify({'error': f'Role must be one of: {", ".join(ROLES)}.'}), 400
        user.role = d['role']
    if 'is_active' in d:
        if user.id == current_user.id and not flag(d['is_active']):
            return jsonify({'error': 'You cannot deactivate your own account.'}), 400
        user.active = flag(d['is_active'])
    if 'is_premium' in d:
        if flag(d['is_premium']):
            user.is_premium = True
            user.subscription_end = utcnow() + datetime.timedelta(days=ADMIN_PREMIUM_DAYS)
            user.subscription_plan = user.subscription_plan or 'mensuel'
        else:
            user.is_premium = False
            user.subscription_end = None
    db.session.commit()
    log.info('admin %s updated user %s: %s', current_user.id, user.id, sorted(d))
    return jsonify({'user': user.to_dict()})

@app.route('/admin/stats')
@roles_required('admin')
def admin_stats():
    return jsonify(admin_counts())

@app.route('/admin/results')
@roles_required('admin')
def admin_results():
    limit = min(max(1, request.args.get('limit', 50, type=int)), 500)
    rows = (db.session.query(QuizResult, User)
            .join(User, User.id == QuizResult.user_id)
            .order_by(QuizResult.taken_at.desc()).limit(limit).all())
    return jsonify({'results': [dict(r.to_dict(), user_name=u.display_name, user_email=u.email)
                                for r, u in rows]})

# ── Disciplines & chapters ────────────────────────────────────────────────────

@app.route('/disciplines')
def list_disciplines():
    q = Discipline.query
    if request.args.get('level'):
        q = q.filter_by(level=request.args['level'])
    if request.args.get('grade'):
        q = q.filter_by(grade=request.args['grade'])
    return jsonify({'disciplines': [d.to_dict() for d in q.order_by(Discipline.position, Discipline.name).all()]})

@app.route('/disciplines/<discipline_id>')
def get_discipline(discipline_id):
    disc = db.session.get(Discipline, discipline_id)
    if not disc:
        return jsonify({'error': 'Discipline not found.'}), 404
    return jsonify({'discipline': disc.to_dict(with_chapters=True)})

@app.route('/disciplines', methods=['POST'])
@roles_required('admin')
def create_discipline():
    try:
        fields = discipline_fields(body())
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    disc = Discipline(**fields)
    db.session.add(disc)
    db.session.commit()
    return jsonify({'discipline': disc.to_dict()}), 201

@app.route('/disciplines/<discipline_id>', methods=['PUT'])
@roles_required('admin')
def update_discipline(discipline_id):
    disc = db.session.get(Discipline, discipline_id)
    if not disc:
        return jsonify({'error': 'Discipline not found.'}), 404
    try:
        apply(disc, discipline_fields(body(), current=disc))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    db.session.commit()
    return jsonify({'discipline': disc.to_dict()})

@app.route('/disciplines/<discipline_id>', methods=['DELETE'])
@roles_required('admin')
def delete_discipline(discipline_id):
    disc = db.session.get(Discipline, discipline_id)
    if not disc:
        return jsonify({'error': 'Discipline not found.'}), 404
    if Resource.query.filter_by(discipline_id=disc.id).first() or Quiz.query.filter_by(discipline_id=disc.id).first():
        return jsonify({'error': 'Remove the resources and quizzes of this discipline first.'}), 409
    Progression.query.filter_by(discipline_id=disc.id).delete()
    db.session.delete(disc)
    db.session.commit()
    return jsonify({'message': 'Discipline deleted.'})

@app.route('/disciplines/seed', methods=['POST'])
@roles_required('admin')
def seed_disciplines():
    if Discipline.query.first():
        return jsonify({'error': 'Disciplines already exist.'}), 409
    for name, level, grade, position, coef, color, desc in DEFAULT_DISCIPLINES:
        db.session.add(Discipline(name=name, level=level, grade=grade, position=position,
                                  coefficient=coef, color=color, description=desc))
    db.session.commit()
    log.info('seeded %d default disciplines', len(DEFAULT_DISCIPLINES))
    return jsonify({'created': len(DEFAULT_DISCIPLINES)}), 201

@app.route('/disciplines/<discipline_id>/chapters')
def list_chapters(discipline_id):
    disc = db.session.get(Discipline, discipline_id)
    if not disc:
        return jsonify({'error': 'Discipline not found.'}), 404
    return jsonify({'chapters': [c.to_dict() for c in disc.chapters]})

@app.route('/chapters', methods=['POST'])
@roles_required(*STAFF_ROLES)
def create_chapter():
    d = body()
    if not db.session.get(Discipline, d.get('discipline_id') or ''):
        return jsonify({'error': 'Unknown discipline.'}), 400
    title = (d.get('title') or '').strip()
    if not title:
        return jsonify({'error': 'A chapter needs a title.'}), 400
    try:
        position = int(d.get('position') or 0)
    except (TypeError, ValueError):
        return jsonify({'error': 'position must be a number.'}), 400
    chapter = Chapter(discipline_id=d['discipline_id'], title=title, position=position,
                      description=d.get('description'))
    db.session.add(chapter)
    db.session.commit()
    return jsonify({'chapter': chapter.to_dict()}), 201

@app.route('/chapters/<chapter_id>', methods=['PUT'])
@roles_required(*STAFF_ROLES)
def update_chapter(chapter_id):
    chapter = db.session.get(Chapter, chapter_id)
    if not chapter:
        return jsonify({'error': 'Chapter not found.'}), 404
    d = body()
    if 'title' in d:
        if not (d['title'] or '').strip():
            return jsonify({'error': 'A chapter needs a title.'}), 400
        chapter.title = d['title'].strip()
    if 'position' in d:
        try:
            chapter.position = int(d['position'] or 0)
        except (TypeError, ValueError):
            return jsonify({'error': 'position must be a number.'}), 400
    if 'description' in d:
        chapter.description = d['description']
    db.session.commit()
    return jsonify({'chapter': chapter.to_dict()})

@app.route('/chapters/<chapter_id>', methods=['DELETE'])
@roles_required(*STAFF_ROLES)
def delete_chapter(chapter_id):
    chapter = db.session.get(Chapter, chapter_id)
    if not chapter:
        return jsonify({'error': 'Chapter not found.'}), 404
    Resource.query.filter_by(chapter_id=chapter.id).update({'chapter_id': None})
    db.session.delete(chapter)
    db.session.commit()
    return jsonify({'message': 'Chapter deleted.'})

# ── Resources ─────────────────────────────────────────────────────────────────

@app.route('/resources')
@login_required
def list_resources():
    q = Resource.query.filter_by(active=True)
    for key in ('discipline_id', 'chapter_id', 'type'):
        if request.args.get(key):
            q = q.filter_by(**{key: request.args[key]})
    items = q.order_by(Resource.position, Resource.title).all()
    return jsonify({'resources': [r.to_dict(locked=not current_user.can_open(r)) for r in items]})

@app.route('/resources/<resource_id>')
@login_required
def get_resource(resource_id):
    res = db.session.get(Resource, resource_id)
    if not res or (not res.active and current_user.role not in STAFF_ROLES):
        return jsonify({'error': 'Resource not found.'}), 404
    if not current_user.can_open(res):
        return jsonify({'error': 'This content is reserved for premium members.',
                        'premium_required': True}), 403
    if current_user.role == 'eleve':
        record_progress(current_user.id, res.discipline_id, resource_id=res.id)
        db.session.commit()
    return jsonify({'resource': res.to_dict()})

@app.route('/resources', methods=['POST'])
@roles_required(*STAFF_ROLES)
def create_resource():
    try:
        fields = resource_fields(body())
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    res = Resource(author_id=current_user.id, **fields)
    db.session.add(res)
    db.session.commit()
    return jsonify({'resource': res.to_dict()}), 201

@app.route('/resources/<resource_id>', methods=['PUT'])
@roles_required(*STAFF_ROLES)
def update_resource(resource_id):
    res = db.session.get(Resource, resource_id)
    if not res:
        return jsonify({'error': 'Resource not found.'}), 404
    try:
        apply(res, resource_fields(body(), current=res))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    db.session.commit()
    return jsonify({'resource': res.to_dict()})

@app.route('/resources/<resource_id>', methods=['DELETE'])
@roles_required(*STAFF_ROLES)
def delete_resource(resource_id):
    res = db.session.get(Resource, resource_id)
    if not res:
        return jsonify({'error': 'Resource not found.'}), 404
    db.session.delete(res)
    db.session.commit()
    return jsonify({'message': 'Resource deleted.'})

@app.route('/resources/<resource_id>/download', methods=['POST'])
@login_required
def download_resource(resource_id):
    res = db.session.get(Resource, resource_id)
    if not res or not res.active:
        return jsonify({'error': 'Resource not found.'}), 404
    if not current_user.can_open(res):
        return jsonify({'error': 'This content is reserved for premium members.',
                        'premium_required': True}), 403
    if not res.file_url:
        return jsonify({'error': 'This resource has no downloadable file.'}), 404
    plan = current_user.subscription_plan if current_user.has_premium() else None
    if current_user.role != 'admin':
        if not plans.can_consume(plan, current_user.usage_count):
            return jsonify({'error': 'You have reached your download quota.',
                            'limit': plans.resource_limit(plan)}), 403
        current_user.usage_count = (current_user.usage_count or 0) + 1
        db.session.commit()
    limit = plans.resource_limit(plan)
    return jsonify({'url': res.file_url, 'usage_count': current_user.usage_count or 0,
                    'remaining': None if limit is None else max(0, limit - (current_user.usage_count or 0))})

# ── Quizzes ───────────────────────────────────────────────────────────────────

@app.route('/quizzes')
@login_required
def list_quizzes():
    q = Quiz.query
    if request.args.get('discipline_id'):
        q = q.filter_by(discipline_id=request.args['discipline_id'])
    if 'premium' in request.args:
        q = q.filter_by(is_premium=flag(request.args['premium']))
    quizzes = q.order_by(Quiz.title).all()
    difficulty = request.args.get('difficulty')
    if difficulty:
        quizzes = [z for z in quizzes if any(x.get('difficulty') == difficulty for x in z.question_list())]
    return jsonify({'quizzes': [z.to_dict(locked=not current_user.can_open(z)) for z in quizzes]})

@app.route('/quizzes/<quiz_id>')
@login_required
def get_quiz(quiz_id):
    quiz = db.session.get(Quiz, quiz_id)
    if not quiz:
        return jsonify({'error': 'Quiz not found.'}), 404
    if not current_user.can_open(quiz):
        return jsonify({'error': 'This quiz is reserved for premium members.',
                        'premium_required': True}), 403
    return jsonify({'quiz': quiz.to_dict(with_questions=True,
                                         with_key=current_user.role in STAFF_ROLES)})

@app.route('/quizzes', methods=['POST'])
@roles_required(*STAFF_ROLES)
def create_quiz():
    try:
        fields = quiz_fields(body())
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    quiz = Quiz(author_id=current_user.id, **fields)
    db.session.add(quiz)
    db.session.commit()
    return jsonify({'quiz': quiz.to_dict(with_questions=True, with_key=True)}), 201

@app.route('/quizzes/<quiz_id>', methods=['PUT'])
@roles_required(*STAFF_ROLES)
def update_quiz(quiz_id):
    quiz = db.session.get(Quiz, quiz_id)
    if not quiz:
        return jsonify({'error': 'Quiz not found.'}), 404
    try:
        apply(quiz, quiz_fields(body(), current=quiz))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    db.session.commit()
    return jsonify({'quiz': quiz.to_dict(with_questions=True, with_key=True)})

@app.route('/quizzes/<quiz_id>', methods=['DELETE'])
@roles_required(*STAFF_ROLES)
def delete_quiz(quiz_id):
    quiz = db.session.get(Quiz, quiz_id)
    if not quiz:
        return jsonify({'error': 'Quiz not found.'}), 404
    db.session.delete(quiz)
    db.session.commit()
    return jsonify({'message': 'Quiz deleted.'})

@app.route('/quizzes/<quiz_id>/submit', methods=['POST'])
@roles_required('eleve')
def submit_quiz(quiz_id):
    quiz = db.session.get(Quiz, quiz_id)
    if not quiz:
        return jsonify({'error': 'Quiz not found.'}), 404
    if not current_user.can_open(quiz):
        return jsonify({'error': 'This quiz is reserved for premium members.',
                        'premium_required': True}), 403
    d = body()
    answers = d.get('answers')
    if not isinstance(answers, (list, dict)):
        return jsonify({'error': 'answers must be a list or an object keyed by question id.'}), 400
    try:
        elapsed = max(0, int(d.get('elapsed_sec') or 0))
    except (TypeError, ValueError):
        return jsonify({'error': 'elapsed_sec must be a number.'}), 400

    graded = scoring.score_quiz(quiz.question_list(), answers, quiz.pass_mark)
    result = QuizResult(
        quiz_id=quiz.id, user_id=current_user.id, discipline_id=quiz.discipline_id,
        discipline_name=quiz.discipline.name if quiz.discipline else None,
        quiz_title=quiz.title, score=graded['score'], total_points=graded['total_points'],
        percentage=graded['percentage'], answers=json.dumps(graded['answers']),
        details=json.dumps(graded['correction']), needs_review=graded['needs_review'],
        elapsed_sec=elapsed, passed=graded['passed'],
        question_count=graded['question_count'], correct_count=graded['correct_count'],
        taken_at=utcnow())
    db.session.add(result)
    if graded['passed']:
        record_progress(current_user.id, quiz.discipline_id, quiz_id=quiz.id)
    _, fresh = sync_badges(current_user)
    db.session.commit()

    return jsonify({'result': result.to_dict(), 'correction': graded['correction'],
                    'new_badges': fresh}), 201

@app.route('/quizzes/<quiz_id>/stats')
@roles_required(*STAFF_ROLES)
def quiz_stats(quiz_id):
    quiz = db.session.get(Quiz, quiz_id)
    if not quiz:
        return jsonify({'error': 'Quiz not found.'}), 404
    return jsonify(scoring.quiz_stats(quiz.question_list()))

@app.route('/results')
@login_required
def my_results():
    q = QuizResult.query.filter_by(user_id=current_user.id).order_by(QuizResult.taken_at.desc())
    limit = request.args.get('limit', type=int)
    if limit is not None:
        q = q.limit(max(1, limit))
    return jsonify({'results': [r.to_dict() for r in q.all()]})

@app.route('/results/pending-review')
@roles_required(*STAFF_ROLES)
def pending_reviews():
    q = QuizResult.query.filter_by(needs_review=True)
    if current_user.role != 'admin':
        mine = [z.id for z in Quiz.query.filter_by(author_id=current_user.id).all()]
        student_ids = [m.student_id for m in
                       GroupMembership.query.join(Group, Group.id == GroupMembership.group_id)
                       .filter(Group.teacher_id == current_user.id,
                               GroupMembership.status == 'actif').all()]
        q = q.filter(db.or_(QuizResult.quiz_id.in_(mine), QuizResult.user_id.in_(student_ids)))
    rows = q.order_by(QuizResult.taken_at).all()
    return jsonify({'results': [r.to_dict() for r in rows]})

@app.route('/results/<result_id>/review', methods=['POST'])
@roles_required(*STAFF_ROLES)
def review_result(result_id):
    """Grade one answer by hand (essays) and recompute the result."""
    result = db.session.get(QuizResult, result_id)
    if not result:
        return jsonify({'error': 'Result not found.'}), 404
    if not can_review(result):
        return jsonify({'error': 'You cannot grade this result.'}), 403
    d = body()
    try:
        details = scoring.review_answer(load_list(result.details), str(d.get('question_id') or ''),
                                        d.get('points'), d.get('comment'))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    quiz = db.session.get(Quiz, result.quiz_id)
    summary = scoring.summarise(details, quiz.pass_mark if quiz else None)
    was_passed = bool(result.passed)
    result.details       = json.dumps(details)
    result.score         = summary['score']
    result.percentage    = summary['percentage']
    result.passed        = summary['passed']
    result.correct_count = summary['correct_count']
    result.needs_review  = summary['needs_review']
    result.reviewed_at   = utcnow()

    student = db.session.get(User, result.user_id)
    if summary['passed'] and not was_passed and quiz:
        record_progress(student.id, quiz.discipline_id, quiz_id=quiz.id)
    sync_badges(student)
    if not summary['needs_review']:
        notify([student], 'resultat_quiz', sender=current_user,
               message=f"Votre copie « {result.quiz_title} » a été corrigée : {summary['percentage']}%.",
               entity_id=result.quiz_id, entity_type='quiz')
    db.session.commit()
    log.info('result %s reviewed by %s', result.id, current_user.id)
    return jsonify({'result': result.to_dict()})

# ── Progress ──────────────────────────────────────────────────────────────────

@app.route('/progress')
@login_required
def progress():
    progs = Progression.query.filter_by(user_id=current_user.id).all()
    return jsonify(scoring.global_progression([p.to_dict() for p in progs],
                                              current_user.login_streak,
                                              current_user.best_login_streak))

@app.route('/progress/stats')
@login_required
def progress_stats():
    return jsonify(scoring.student_progress(result_rows(current_user.id)))

@app.route('/progress/disciplines')
@login_required
def progress_disciplines():
    return jsonify({'disciplines': scoring.discipline_progress(result_rows(current_user.id))})

@app.route('/progress/timeline')
@login_required
def progress_timeline():
    points = max(1, request.args.get('points', 20, type=int))
    return jsonify({'timeline': scoring.timeline(result_rows(current_user.id), points)})

@app.route('/progress/badges')
@login_required
def progress_badges():
    badges, _ = sync_badges(current_user)
    db.session.commit()
    return jsonify({'badges': badges, 'unlocked': sum(1 for b in badges if b['unlocked']),
                    'total': len(badges)})

@app.route('/progress/tracking')
@login_required
def progress_tracking():
    summary = tracking.tracking_summary(current_user.id, result_rows(current_user.id),
                                        datetime.date.today())
    summary['message'] = tracking.motivation_message(summary['score'])
    return jsonify(summary)

# ── Groups ────────────────────────────────────────────────────────────────────

@app.route('/groups', methods=['POST'])
@roles_required('prof')
def create_group():
    d = body()
    name = (d.get('name') or '').strip()
    if not name:
        return jsonify({'error': 'A group needs a name.'}), 400
    group = Group(teacher_id=current_user.id, name=name, description=d.get('description'),
                  discipline_id=d.get('discipline_id'), grade=d.get('grade'),
                  school_year=d.get('school_year'), status='actif', member_count=0,
                  invite_code=unique_code('PROF', Group, 'invite_code'))
    db.session.add(group)
    db.session.commit()
    log.info('group created: %s by %s', group.id, current_user.id)
    return jsonify({'group': group.to_dict()}), 201

@app.route('/groups')
@login_required
def list_groups():
    if current_user.role == 'eleve':
        groups = (Group.query.join(GroupMembership, GroupMembership.group_id == Group.id)
                  .filter(GroupMembership.student_id == current_user.id,
                          GroupMembership.status == 'actif')
                  .order_by(Group.name).all())
        return jsonify({'groups': [g.to_dict(with_code=False) for g in groups]})
    if current_user.role not in STAFF_ROLES:
        return jsonify({'error': 'You do not have access to this resource.'}), 403
    groups = Group.query.filter_by(teacher_id=current_user.id).order_by(Group.created_at.desc()).all()
    return jsonify({'groups': [g.to_dict() for g in groups]})

@app.route('/groups/<group_id>')
@roles_required(*STAFF_ROLES)
def get_group(group_id):
    group, err = owned_group(group_id)
    if err:
        return err
    return jsonify({'group': group.to_dict()})

@app.route('/groups/<group_id>', methods=['PUT'])
@roles_required(*STAFF_ROLES)
def update_group(group_id):
    group, err = owned_group(group_id)
    if err:
        return err
    d = body()
    if 'name' in d:
        if not (d['name'] or '').strip():
            return jsonify({'error': 'A group needs a name.'}), 400
        group.name = d['name'].strip()
    if 'status' in d:
        if d['status'] not in GROUP_STATUSES:
            return jsonify({'error': f'Status must be one of: {", ".join(GROUP_STATUSES)}.'}), 400
        group.status = d['status']
    for key in ('description', 'discipline_id', 'grade', 'school_year'):
        if key in d:
            setattr(group, key, d[key])
    group.updated_at = utcnow()
    db.session.commit()
    return jsonify({'group': group.to_dict()})

@app.route('/groups/<group_id>', methods=['DELETE'])
@roles_required(*STAFF_ROLES)
def delete_group(group_id):
    group, err = owned_group(group_id)
    if err:
        return err
    GroupMembership.query.filter_by(group_id=group.id).delete()
    Assignment.query.filter_by(group_id=group.id).delete()
    Attendance.query.filter_by(group_id=group.id).delete()
    Observation.query.filter_by(group_id=group.id).delete()
    db.session.delete(group)
    db.session.commit()
    return jsonify({'message': 'Group deleted.'})

@app.route('/groups/<group_id>/archive', methods=['POST'])
@roles_required(*STAFF_ROLES)
def archive_group(group_id):
    group, err = owned_group(group_id)
    if err:
        return err
    group.status = 'archive'
    group.updated_at = utcnow()
    db.session.commit()
    return jsonify({'group': group.to_dict()})

@app.route('/groups/<group_id>/regenerate-code', methods=['POST'])
@roles_required(*STAFF_ROLES)
def regenerate_group_code(group_id):
    group, err = owned_group(group_id)
    if err:
        return err
    group.invite_code = unique_code('PROF', Group, 'invite_code')
    group.updated_at = utcnow()
    db.session.commit()
    return jsonify({'invite_code': group.invite_code})

@app.route('/groups/join', methods=['POST'])
@roles_required('eleve')
def join_group():
    code = normalise_code(body().get('code'))
    if not code:
        return jsonify({'error': 'An invite code is required.'}), 400
    group = Group.query.filter_by(invite_code=code).first()
    if not group:
        return jsonify({'error': 'Invalid invite code.'}), 404
    if group.status != 'actif':
        return jsonify({'error': 'This group no longer accepts new students.'}), 403

    membership = GroupMembership.query.filter_by(group_id=group.id, student_id=current_user.id).first()
    if membership and membership.status == 'actif':
        return jsonify({'error': 'You are already a member of this group.'}), 409
    if membership:
        membership.status, membership.joined_at, membership.removed_at = 'actif', utcnow(), None
    else:
        db.session.add(GroupMembership(group_id=group.id, student_id=current_user.id, status='actif'))
    group.member_count = (group.member_count or 0) + 1
    db.session.commit()
    log.info('student %s joined group %s', current_user.id, group.id)
    return jsonify({'group': group.to_dict(with_code=False)}), 201

@app.route('/groups/<group_id>/students')
@roles_required(*STAFF_ROLES)
def group_students(group_id):
    group, err = owned_group(group_id)
    if err:
        return err
    return jsonify({'students': [s.public_dict() for s in active_students(group)]})

@app.route('/groups/<group_id>/students/<student_id>', methods=['DELETE'])
@roles_required(*STAFF_ROLES)
def remove_student(group_id, student_id):
    group, err = owned_group(group_id)
    if err:
        return err
    membership = GroupMembership.query.filter_by(group_id=group.id, student_id=student_id,
                                                 status='actif').first()
    if not membership:
        return jsonify({'error': 'This student is not in the group.'}), 404
    membership.status, membership.removed_at = 'retire', utcnow()
    group.member_count = max(0, (group.member_count or 0) - 1)
    db.session.commit()
    return jsonify({'message': 'Student removed from the group.'})

@app.route('/groups/<group_id>/stats')
@roles_required(*STAFF_ROLES)
def group_stats(group_id):
    group, err = owned_group(group_id)
    if err:
        return err
    ids = [s.id for s in active_students(group)]
    return jsonify(tracking.group_stats(ids, result_rows(ids)))

@app.route('/groups/<group_id>/students/stats')
@roles_required(*STAFF_ROLES)
def group_students_stats(group_id):
    group, err = owned_group(group_id)
    if err:
        return err
    return jsonify({'students': students_stats(group, datetime.date.today())})

@app.route('/groups/<group_id>/alerts')
@roles_required(*STAFF_ROLES)
def group_alerts(group_id):
    group, err = owned_group(group_id)
    if err:
        return err
    today = datetime.date.today()
    return jsonify({'alerts': tracking.teacher_alerts(students_stats(group, today), group.name, today)})

@app.route('/groups/<group_id>/quizzes/<quiz_id>/stats')
@roles_required(*STAFF_ROLES)
def group_quiz_stats(group_id, quiz_id):
    group, err = owned_group(group_id)
    if err:
        return err
    quiz = db.session.get(Quiz, quiz_id)
    if not quiz:
        return jsonify({'error': 'Quiz not found.'}), 404
    ids = [s.id for s in active_students(group)]
    rows = [r for r in result_rows(ids) if r['quiz_id'] == quiz.id]
    return jsonify(dict(tracking.quiz_group_analysis(quiz.question_list(), rows),
                        quiz_id=quiz.id, quiz_title=quiz.title))

@app.route('/groups/<group_id>/export.csv')
@roles_required(*STAFF_ROLES)
def export_group_csv(group_id):
    group, err = owned_group(group_id)
    if err:
        return err
    data = tracking.export_csv(students_stats(group, datetime.date.today()))
    return Response(data, mimetype='text/csv; charset=utf-8',
                    headers={'Content-Disposition': f'attachment; filename="{export_name(group, "csv")}"'})

@app.route('/groups/<group_id>/export.xlsx')
@roles_required(*STAFF_ROLES)
def export_group_xlsx(group_id):
    group, err = owned_group(group_id)
    if err:
        return err
    data = tracking.export_xlsx(students_stats(group, datetime.date.today()))
    return Response(data, mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
                    headers={'Content-Disposition': f'attachment; filename="{export_name(group, "xlsx")}"'})

# ── Assignments ───────────────────────────────────────────────────────────────

@app.route('/groups/<group_id>/assignments', methods=['POST'])
@roles_required(*STAFF_ROLES)
def create_assignment(group_id):
    group, err = owned_group(group_id)
    if err:
        return err
    d = body()
    title = (d.get('title') or '').strip()
    if not title:
        return jsonify({'error': 'Homework needs a title.'}), 400
    try:
        due = parse_date(d.get('due_date'))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    item = Assignment(group_id=group.id, teacher_id=current_user.id, title=title,
                      description=d.get('description') or '', subject=d.get('subject'), due_date=due)
    db.session.add(item)
    notify(active_students(group), 'annonce', sender=current_user,
           title=f'Travail à faire : {title}',
           message=f"{group.name} : à rendre pour le {due.strftime('%d/%m/%Y')}.")
    db.session.commit()
    return jsonify({'assignment': item.to_dict()}), 201

@app.route('/groups/<group_id>/assignments')
@roles_required(*STAFF_ROLES)
def list_group_assignments(group_id):
    group, err = owned_group(group_id)
    if err:
        return err
    items = Assignment.query.filter_by(group_id=group.id).order_by(Assignment.due_date).all()
    return jsonify({'assignments': [a.to_dict() for a in items]})

@app.route('/assignments/<assignment_id>', methods=['PUT'])
@roles_required(*STAFF_ROLES)
def update_assignment(assignment_id):
    item = db.session.get(Assignment, assignment_id)
    if not item:
        return jsonify({'error': 'Homework not found.'}), 404
    if item.teacher_id != current_user.id and current_user.role != 'admin':
        return jsonify({'error': 'This homework belongs to another teacher.'}), 403
    d = body()
    if 'title' in d:
        if not (d['title'] or '').strip():
            return jsonify({'error': 'Homework needs a title.'}), 400
        item.title = d['title'].strip()
    if 'due_date' in d:
        try:
            item.due_date = parse_date(d['due_date'])
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
    for key in ('description', 'subject'):
        if key in d:
            setattr(item, key, d[key])
    db.session.commit()
    return jsonify({'assignment': item.to_dict()})

@app.route('/assignments/<assignment_id>', methods=['DELETE'])
@roles_required(*STAFF_ROLES)
def delete_assignment(assignment_id):
    item = db.session.get(Assignment, assignment_id)
    if not item:
        return jsonify({'error': 'Homework not found.'}), 404
    if item.teacher_id != current_user.id and current_user.role != 'admin':
        return jsonify({'error': 'This homework belongs to another teacher.'}), 403
    db.session.delete(item)
    db.session.commit()
    return jsonify({'message': 'Homework deleted.'})

@app.route('/assignments')
@roles_required('eleve')
def my_assignments():
    return jsonify({'assignments': upcoming_assignments(current_user.id, datetime.date.today())})

# ── Attendance & observations ─────────────────────────────────────────────────

@app.route('/groups/<group_id>/attendance/<day>', methods=['PUT'])
@roles_required(*STAFF_ROLES)
def save_attendance(group_id, day):
    group, err = owned_group(group_id)
    if err:
        return err
    try:
        day = parse_date(day)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    absent = body().get('absent')
    if not isinstance(absent, list):
        return jsonify({'error': 'absent must be a list of student ids.'}), 400
    absent = list(dict.fromkeys(str(a) for a in absent))
    members = {s.id for s in active_students(group)}
    strangers = [a for a in absent if a not in members]
    if strangers:
        return jsonify({'error': f'Not in this group: {", ".join(strangers)}.'}), 400

    record = Attendance.query.filter_by(group_id=group.id, day=day).first()
    if not record:
        record = Attendance(group_id=group.id, day=day)
        db.session.add(record)
    record.teacher_id = current_user.id
    record.absent_ids = json.dumps(absent)
    record.updated_at = utcnow()
    db.session.commit()
    return jsonify({'attendance': record.to_dict()})

@app.route('/groups/<group_id>/attendance/<day>')
@roles_required(*STAFF_ROLES)
def get_attendance(group_id, day):
    group, err = owned_group(group_id)
    if err:
        return err
    try:
        day = parse_date(day)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    record = Attendance.query.filter_by(group_id=group.id, day=day).first()
    return jsonify({'attendance': record.to_dict() if record else
                    {'group_id': group.id, 'date': iso(day), 'absent': [], 'updated_at': None}})

@app.route('/groups/<group_id>/attendance')
@roles_required(*STAFF_ROLES)
def attendance_period(group_id):
    group, err = owned_group(group_id)
    if err:
        return err
    today = datetime.date.today()
    try:
        start = parse_date(request.args['from']) if request.args.get('from') \
            else today - datetime.timedelta(days=30)
        end = parse_date(request.args['to']) if request.args.get('to') else today
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    if end < start:
        return jsonify({'error': 'The period ends before it starts.'}), 400
    records = (Attendance.query.filter(Attendance.group_id == group.id,
                                       Attendance.day >= start, Attendance.day <= end)
               .order_by(Attendance.day).all())
    rolls = [{'date': r.day, 'absent': load_list(r.absent_ids)} for r in records]
    students = active_students(group)
    summary = tracking.attendance_summary(rolls, [s.id for s in students])
    names = {s.id: s.display_name for s in students}
    for line in summary:
        line['name'] = names[line['student_id']]
    return jsonify({'from': iso(start), 'to': iso(end),
                    'records': [r.to_dict() for r in records], 'students': summary})

@app.route('/groups/<group_id>/observations/<student_id>', methods=['PUT'])
@roles_required(*STAFF_ROLES)
def save_observation(group_id, student_id):
    group, err = owned_group(group_id)
    if err:
        return err
    if not GroupMembership.query.filter_by(group_id=group.id, student_id=student_id,
                                           status='actif').first():
        return jsonify({'error': 'This student is not in the group.'}), 404
    obs = Observation.query.filter_by(group_id=group.id, student_id=student_id).first()
    if not obs:
        obs = Observation(group_id=group.id, student_id=student_id)
        db.session.add(obs)
    obs.teacher_id = current_user.id
    obs.text = (body().get('text') or '').strip()
    obs.updated_at = utcnow()
    db.session.commit()
    return jsonify({'observation': obs.to_dict()})

@app.route('/groups/<group_id>/observations')
@roles_required(*STAFF_ROLES)
def list_observations(group_id):
    group, err = owned_group(group_id)
    if err:
        return err
    items = Observation.query.filter_by(group_id=group.id).all()
    return jsonify({'observations': [o.to_dict() for o in items]})

# ── Lesson log ────────────────────────────────────────────────────────────────

def owned_notebook(notebook_id: str):
    """Returns (notebook, None) or (None, error_response)."""
    notebook = db.session.get(Notebook, notebook_id)
    if not notebook:
        return None, (jsonify({'error': 'Notebook not found.'}), 404)
    if notebook.teacher_id != current_user.id and current_user.role != 'admin':
        return None, (jsonify({'error': 'This notebook belongs to another teacher.'}), 403)
    return notebook, None

@app.route('/notebooks', methods=['POST'])
@roles_required('prof')
def create_notebook():
    try:
        fields = notebook_fields(body())
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    notebook = Notebook(teacher_id=current_user.id, **fields)
    db.session.add(notebook)
    db.session.commit()
    return jsonify({'notebook': notebook.to_dict()}), 201

@app.route('/notebooks')
@roles_required(*STAFF_ROLES)
def list_notebooks():
    q = Notebook.query.filter_by(teacher_id=current_user.id,
                                 archived=flag(request.args.get('archived', False)))
    if request.args.get('school_year'):
        q = q.filter_by(school_year=request.args['school_year'])
    return jsonify({'notebooks': [n.to_dict() for n in q.order_by(Notebook.updated_at.desc()).all()]})

@app.route('/notebooks/evaluations')
@roles_required(*STAFF_ROLES)
def marked_evaluations():
    q = NotebookEntry.query.filter_by(teacher_id=current_user.id, is_evaluation=True)
    if request.args.get('notebook_id'):
        q = q.filter_by(notebook_id=request.args['notebook_id'])
    return jsonify({'entries': [e.to_dict() for e in q.order_by(NotebookEntry.day.desc()).all()]})

@app.route('/notebooks/<notebook_id>')
@roles_required(*STAFF_ROLES)
def get_notebook(notebook_id):
    notebook, err = owned_notebook(notebook_id)
    if err:
        return err
    entries = [e.to_dict() for e in notebook.entries.all()]
    return jsonify({'notebook': notebook.to_dict(), 'stats': lessons.notebook_stats(entries)})

@app.route('/notebooks/<notebook_id>', methods=['PUT'])
@roles_required(*STAFF_ROLES)
def update_notebook(notebook_id):
    notebook, err = owned_notebook(notebook_id)
    if err:
        return err
    try:
        apply(notebook, notebook_fields(body(), current=notebook))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    db.session.commit()
    return jsonify({'notebook': notebook.to_dict()})

@app.route('/notebooks/<notebook_id>/archive', methods=['POST'])
@roles_required(*STAFF_ROLES)
def archive_notebook(notebook_id):
    notebook, err = owned_notebook(notebook_id)
    if err:
        return err
    d = body()
    notebook.archived = flag(d['archived']) if 'archived' in d else not notebook.archived
    notebook.updated_at = utcnow()
    db.session.commit()
    return jsonify({'notebook': notebook.to_dict()})

@app.route('/notebooks/<notebook_id>', methods=['DELETE'])
@roles_required(*STAFF_ROLES)
def delete_notebook(notebook_id):
    notebook, err = owned_notebook(notebook_id)
    if err:
        return err
    NotebookEntry.query.filter_by(notebook_id=notebook.id).delete()
    db.session.delete(notebook)
    db.session.commit()
    return jsonify({'message': 'Notebook deleted.'})

@app.route('/notebooks/<notebook_id>/entries', methods=['POST'])
@roles_required(*STAFF_ROLES)
def create_entry(notebook_id):
    notebook, err = owned_notebook(notebook_id)
    if err:
        return err
    try:
        fields = entry_fields(body())
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    fields.setdefault('position', notebook.entries.count())
    entry = NotebookEntry(notebook_id=notebook.id, teacher_id=current_user.id, **fields)
    db.session.add(entry)
    refresh_done_sessions(notebook)
    db.session.commit()
    return jsonify({'entry': entry.to_dict(), 'notebook': notebook.to_dict()}), 201

@app.route('/notebooks/<notebook_id>/entries')
@roles_required(*STAFF_ROLES)
def list_entries(notebook_id):
    notebook, err = owned_notebook(notebook_id)
    if err:
        return err
    q = notebook.entries
    month = request.args.get('month')
    if month:
        try:
            first = datetime.datetime.strptime(month, '%Y-%m').date()
        except ValueError:
            return jsonify({'error': 'month must use the YYYY-MM format.'}), 400
        following = (first + datetime.timedelta(days=32)).replace(day=1)
        q = q.filter(NotebookEntry.day >= first, NotebookEntry.day < following) \
             .order_by(NotebookEntry.day)
    else:
        q = q.order_by(NotebookEntry.day.desc())
    limit = request.args.get('limit', type=int)
    if limit is not None:
        q = q.limit(max(1, limit))
    return jsonify({'entries': [e.to_dict() for e in q.all()]})

@app.route('/entries/<entry_id>', methods=['PUT'])
@roles_required(*STAFF_ROLES)
def update_entry(entry_id):
    entry = db.session.get(NotebookEntry, entry_id)
    if not entry:
        return jsonify({'error': 'Entry not found.'}), 404
    notebook, err = owned_notebook(entry.notebook_id)
    if err:
        return err
    try:
        apply(entry, entry_fields(body(), current=entry))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    refresh_done_sessions(notebook)
    db.session.commit()
    return jsonify({'entry': entry.to_dict(), 'notebook': notebook.to_dict()})

@app.route('/entries/<entry_id>', methods=['DELETE'])
@roles_required(*STAFF_ROLES)
def delete_entry(entry_id):
    entry = db.session.get(NotebookEntry, entry_id)
    if not entry:
        return jsonify({'error': 'Entry not found.'}), 404
    notebook, err = owned_notebook(entry.notebook_id)
    if err:
        return err
    db.session.delete(entry)
    refresh_done_sessions(notebook)
    db.session.commit()
    return jsonify({'message': 'Entry deleted.', 'notebook': notebook.to_dict()})

# ── Notifications ─────────────────────────────────────────────────────────────

def own_notification(notification_id: str):
    note = db.session.get(Notification, notification_id)
    if not note or note.recipient_id != current_user.id:
        return None
    return note

@app.route('/notifications')
@login_required
def list_notifications():
    q = Notification.query.filter_by(recipient_id=current_user.id)
    status = request.args.get('status')
    if status and status != 'toutes':
        if status not in notifications.STATUSES:
            return jsonify({'error': f'status must be one of: {", ".join(notifications.STATUSES)}.'}), 400
        q = q.filter_by(status=status)
    elif not flag(request.args.get('archived', False)):
        q = q.filter(Notification.status != 'archivee')
    if request.args.get('type') and request.args['type'] != 'tous':
        q = q.filter_by(type=request.args['type'])
    limit = min(max(1, request.args.get('limit', notifications.DEFAULT_LIMIT, type=int)), 500)
    items = q.order_by(Notification.created_at.desc()).limit(limit).all()
    return jsonify({'notifications': [n.to_dict() for n in items]})

@app.route('/notifications/count')
@login_required
def count_notifications():
    statuses = [s for (s,) in db.session.query(Notification.status)
                .filter_by(recipient_id=current_user.id).all()]
    return jsonify(notifications.counts(statuses))

@app.route('/notifications', methods=['POST'])
@roles_required(*STAFF_ROLES)
def send_notification():
    """Send to one user (recipient_id), a whole class (group_id) or a role (admins only)."""
    d = body()
    try:
        notifications.compose(d)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    if d.get('recipient_id'):
        user = db.session.get(User, d['recipient_id'])
        if not user:
            return jsonify({'error': 'Recipient not found.'}), 404
        recipients = [user]
    elif d.get('group_id'):
        group, err = owned_group(d['group_id'])
        if err:
            return err
        recipients = active_students(group)
    elif d.get('role'):
        if current_user.role != 'admin':
            return jsonify({'error': 'Only administrators can write to a whole role.'}), 403
        if d['role'] not in notifications.AUDIENCES:
            return jsonify({'error': f'role must be one of: {", ".join(notifications.AUDIENCES)}.'}), 400
        q = User.query.filter_by(active=True)
        if d['role'] != 'tous':
            q = q.filter_by(role=d['role'])
        recipients = q.limit(notifications.BROADCAST_LIMIT).all()
    else:
        return jsonify({'error': 'Choose a recipient_id, a group_id or a role.'}), 400

    fields = {k: d.get(k) for k in ('title', 'message', 'action_url', 'action_label',
                                    'entity_id', 'entity_type')}
    sent = notify(recipients, d.get('type') or 'annonce', sender=current_user, **fields)
    db.session.commit()
    log.info('notification sent by %s to %d user(s)', current_user.id, sent)
    return jsonify({'sent': sent}), 201

@app.route('/notifications/<notification_id>/read', methods=['POST'])
@login_required
def read_notification(notification_id):
    note = own_notification(notification_id)
    if not note:
        return jsonify({'error': 'Notification not found.'}), 404
    if note.status == 'non_lue':
        note.status, note.read_at = 'lue', utcnow()
        db.session.commit()
    return jsonify({'notification': note.to_dict()})

@app.route('/notifications/read-all', methods=['POST'])
@login_required
def read_all_notifications():
    unread = Notification.query.filter_by(recipient_id=current_user.id, status='non_lue').all()
    now = utcnow()
    for note in unread:
        note.status, note.read_at = 'lue', now
    db.session.commit()
    return jsonify({'updated': len(unread)})

@app.route('/notifications/<notification_id>/archive', methods=['POST'])
@login_required
def archive_notification(notification_id):
    note = own_notification(notification_id)
    if not note:
        return jsonify({'error': 'Notification not found.'}), 404
    note.status = 'archivee'
    db.session.commit()
    return jsonify({'notification': note.to_dict()})

@app.route('/notifications/<notification_id>', methods=['DELETE'])
@login_required
def delete_notification(notification_id):
    note = own_notification(notification_id)
    if not note:
        return jsonify({'error': 'Notification not found.'}), 404
    db.session.delete(note)
    db.session.commit()
    return jsonify({'message': 'Notification deleted.'})

# ── Parents ───────────────────────────────────────────────────────────────────

@app.route('/parent/code')
@roles_required('eleve')
def parent_code():
    if not current_user.parent_code:
        current_user.parent_code = unique_code('PEDA', User, 'parent_code')
        db.session.commit()
    return jsonify({'code': current_user.parent_code})

@app.route('/parent/link', methods=['POST'])
@roles_required('parent')
def link_child():
    code = normalise_code(body().get('code'))
    if not code:
        return jsonify({'error': 'A link code is required.'}), 400
    child = User.query.filter_by(parent_code=code, role='eleve').first()
    if not child:
        return jsonify({'error': 'Invalid link code.'}), 404
    if ParentLink.query.filter_by(parent_id=current_user.id, child_id=child.id, status='actif').first():
        return jsonify({'error': 'This child is already linked to your account.'}), 409
    link = ParentLink(parent_id=current_user.id, child_id=child.id, invite_code=code, status='actif')
    db.session.add(link)
    db.session.commit()
    log.info('parent %s linked child %s', current_user.id, child.id)
    return jsonify({'link': link.to_dict()}), 201

@app.route('/parent/children')
@roles_required('parent')
def parent_children():
    links = ParentLink.query.filter_by(parent_id=current_user.id, status='actif') \
        .order_by(ParentLink.created_at).all()
    return jsonify({'children': [l.to_dict() for l in links]})

@app.route('/parent/links/<link_id>', methods=['DELETE'])
@roles_required('parent')
def revoke_link(link_id):
    link = db.session.get(ParentLink, link_id)
    if not link:
        return jsonify({'error': 'Link not found.'}), 404
    if link.parent_id != current_user.id:
        return jsonify({'error': 'This link belongs to another account.'}), 403
    link.status = 'revoque'
    db.session.commit()
    return jsonify({'message': 'Link revoked.'})

@app.route('/parent/children/<child_id>/dashboard')
@roles_required('parent')
def child_dashboard(child_id):
    link = ParentLink.query.filter_by(parent_id=current_user.id, child_id=child_id, status='actif').first()
    if not link:
        return jsonify({'error': 'This child is not linked to your account.'}), 403
    child = link.child
    today = datetime.date.today()
    rows = result_rows(child.id)
    summary = tracking.tracking_summary(child.id, rows, today)
    badges, _ = sync_badges(child, rows)
    link.last_viewed_at = utcnow()
    db.session.commit()
    return jsonify({
        'child':       child.public_dict(),
        'tracking':    summary,
        'alerts':      tracking.student_alerts(child.id, child.display_name, summary['gaps'],
                                               summary['streak'], today),
        'badges':      [b for b in badges if b['unlocked']],
        'progress':    scoring.student_progress(rows),
        'recent':      [{'quiz_title': r['quiz_title'], 'discipline_name': r['discipline_name'],
                         'percentage': r['percentage'], 'note': r['percentage'] / 5,
                         'passed': r['passed'], 'taken_at': iso(r['taken_at'])} for r in rows[:5]],
        'assignments': upcoming_assignments(child.id, today),
        'message':     tracking.parent_message(summary['score']),
    })

# ── Premium ───────────────────────────────────────────────────────────────────

def premium_status(user) -> dict:
    active = user.has_premium()
    plan = user.subscription_plan if active else None
    return {
        'is_premium':        active,
        'plan':              plan,
        'subscription_end':  iso(user.subscription_end) if active else None,
        'chosen_courses':    user.courses(),
        'max_courses':       plans.max_courses(plan) if active else 0,
        'remaining_courses': plans.remaining_courses(plan, user.courses()) if active else 0,
        'unlimited':         plans.has_unlimited_access(plan),
        'usage_count':       user.usage_count or 0,
        'resource_limit':    plans.resource_limit(plan),
    }

@app.route('/premium/plans')
def premium_plans():
    return jsonify({'plans': plans.list_plans(), 'currency': plans.CURRENCY})

@app.route('/premium/status')
@login_required
def premium_status_route():
    return jsonify(premium_status(current_user))

@app.route('/premium/checkout', methods=['POST'])
@login_required
def premium_checkout():
    plan_id = body().get('plan')
    try:
        plan = plans.get_plan(plan_id)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    try:
        payment_id, checkout_url = gateway.initiate_payment(
            plan_id, current_user.email, current_user.display_name, current_user.id,
            f'{APP_BASE_URL}/premium/confirm')
    except ValueError as e:
        log.warning('checkout failed for %s: %s', current_user.id, e)
        return jsonify({'error': str(e)}), 502

    tx = Transaction(user_id=current_user.id, plan=plan_id, amount=plan['price'],
                     currency=plan['currency'], status='pending', provider_payment_id=payment_id)
    db.session.add(tx)
    db.session.commit()
    log.info('payment initiated: tx=%s user=%s plan=%s', tx.id, current_user.id, plan_id)
    return jsonify({'checkout_url': checkout_url, 'transaction': tx.to_dict()}), 201

@app.route('/premium/confirm')
@login_required
def premium_confirm():
    payment_id = request.args.get('paymentId') or request.args.get('payment_id')
    if not payment_id:
        return jsonify({'error': 'paymentId is required.'}), 400
    tx = Transaction.query.filter_by(provider_payment_id=payment_id, user_id=current_user.id).first()
    if not tx:
        return jsonify({'error': 'Payment not found.'}), 404
    if tx.status == 'success':
        return jsonify({'transaction': tx.to_dict(), 'premium': premium_status(current_user)})

    try:
        status = gateway.verify_payment(payment_id)
    except ValueError as e:
        log.warning('payment verification failed for %s: %s', tx.id, e)
        return jsonify({'error': str(e)}), 502

    tx.status = status
    if status == 'success':
        user = current_user
        if user.subscription_plan != tx.plan:
            user.chosen_courses = '[]'
        user.is_premium = True
        user.subscription_plan = tx.plan
        user.subscription_end = plans.subscription_end(tx.plan)
        user.usage_count = 0
        tx.expires_at = user.subscription_end
        notify([user], 'nouveau_abonnement', entity_id=tx.id, entity_type='autre')
        log.info('premium activated: user=%s plan=%s until %s', user.id, tx.plan, tx.expires_at)
    db.session.commit()
    return jsonify({'transaction': tx.to_dict(), 'premium': premium_status(current_user)})

@app.route('/premium/courses', methods=['POST'])
@login_required
def choose_courses():
    user = current_user
    if not user.has_premium():
        return jsonify({'error': 'An active premium subscription is required.'}), 403
    if not plans.is_a_la_carte(user.subscription_plan) or plans.has_unlimited_access(user.subscription_plan):
        return jsonify({'error': 'Your plan already includes every course.'}), 400
    ids = body().get('courses')
    if not isinstance(ids, list):
        return jsonify({'error': 'courses must be a list of discipline ids.'}), 400
    ids = list(dict.fromkeys(str(i) for i in ids))
    cap = plans.max_courses(user.subscription_plan)
    if cap is not None and len(ids) > cap:
        return jsonify({'error': f'Your plan allows {cap} course(s).'}), 400
    known = {d.id for d in Discipline.query.filter(Discipline.id.in_(ids)).all()} if ids else set()
    unknown = [i for i in ids if i not in known]
    if unknown:
        return jsonify({'error': f'Unknown discipline(s): {", ".join(unknown)}.'}), 400
    user.chosen_courses = json.dumps(ids)
    db.session.commit()
    return jsonify(premium_status(user))

# ─── ERROR HANDLERS ───────────────────────────────────────────────────────────

@app.errorhandler(404)
def not_found(e):
    return jsonify({'error': 'Not found.'}), 404

@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify({'error': 'Method not allowed.'}), 405

@app.errorhandler(413)
def too_large(e):
    return jsonify({'error': 'Request too large.'}), 413

@app.errorhandler(500)
def server_error(e):
    log.error('internal error: %s', e)
    return jsonify({'error': 'Internal server error. Please try again.'}), 500

# ─── ENTRY POINT ──────────────────────────────────────────────────────────────

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    print(f"""
{'='*55}
  PedaClic — Plateforme éducative
  http://localhost:{port}
  Mode:     {'PRODUCTION' if IS_PRODUCTION else 'development'}
  DB:       {raw_db_url[:40]}{'...' if len(raw_db_url)>40 else ''}
  Moneroo:  {'✓ configured' if gateway.MONEROO_SECRET_KEY else '✗ MISSING'}
  Google:   {'✓ audience check' if GOOGLE_CLIENT_ID else '- tokeninfo only'}
{'='*55}
""")
    app.run(debug=not IS_PRODUCTION, port=port, host='0.0.0.0')
