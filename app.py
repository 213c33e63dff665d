from flask import Flask, request, jsonify, session, make_response, has_request_context
from flask.logging import default_handler
from flask_socketio import SocketIO
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
from functools import wraps
import os
import csv
import math
import logging
from io import BytesIO, StringIO
from werkzeug.security import check_password_hash, generate_password_hash
from sqlalchemy import or_, text
from sqlalchemy.exc import IntegrityError
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter, landscape
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.lib.enums import TA_CENTER

def build_database_uri():
    database_url = os.getenv('DATABASE_URL')
    if database_url:
        return database_url

    db_user = os.getenv('DB_USER')
    db_pass = os.getenv('DB_PASS')
    db_name = os.getenv('DB_NAME')
    instance = os.getenv('INSTANCE_CONNECTION_NAME')
    if all([db_user, db_pass, db_name, instance]):
        return (
            f"postgresql+psycopg2://{db_user}:{db_pass}@/{db_name}"
            f"?host=/cloudsql/{instance}"
        )

    return 'sqlite:///pageant.db'


app = Flask(__name__)
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'your-secret-key-change-this')
app.config['SQLALCHEMY_DATABASE_URI'] = build_database_uri()
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

socketio = SocketIO(app, async_mode='threading')

# Default admin credentials (override with environment variables)
DEFAULT_ADMIN_USERNAME = os.getenv('ADMIN_USERNAME', 'admin')
DEFAULT_ADMIN_PASSWORD = os.getenv('ADMIN_PASSWORD', 'adminITD2026')

DEFAULT_MAX_SCORE = 10
MIN_SCORE = 1
RESULT_PRECISION = 4

USER_ROLES = ['admin', 'judge']

# Position of each phase status along the pending -> active -> completed lifecycle,
# read from the lowest phase order upwards.
PHASE_STATUS_SEQUENCE = {'completed': 0, 'active': 1, 'pending': 2}

db = SQLAlchemy(app)

logger = logging.getLogger('pageant')
logger.setLevel(os.getenv('LOG_LEVEL', 'INFO').upper())
logger.addHandler(default_handler)


# Errors
class ScoringError(Exception):
    status_code = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(ScoringError):
    """Malformed or out-of-range input."""
    status_code = 400


class NotFoundError(ScoringError):
    status_code = 404


class PreconditionError(ScoringError):
    """The operation is not allowed in the current competition state."""
    status_code = 409


class ConsistencyFailure(ScoringError):
    """Stored data breaks an invariant that transitions are supposed to keep."""
    status_code = 500


def consistency_failure(message):
    logger.error('Consistency failure: %s', message)
    return ConsistencyFailure(message)


# Authentication decorators
def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not session.get('user_id'):
            return jsonify({'success': False, 'message': 'Please login to access this resource.'}), 401
        return f(*args, **kwargs)
    return decorated_function

def admin_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not session.get('user_id'):
            return jsonify({'success': False, 'message': 'Please login to access this resource.'}), 401
        if session.get('role') != 'admin':
            return jsonify({'success': False, 'message': 'Admin access required.'}), 403
        return f(*args, **kwargs)
    return decorated_function

# Models
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    role = db.Column(db.String(20), nullable=False, default='admin')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

class Event(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='upcoming')
    current_phase = db.Column(db.String(100), nullable=True)
    start_date = db.Column(db.DateTime, nullable=True)
    end_date = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    shows = db.relationship('Show', backref='event', lazy=True, cascade='all, delete-orphan', order_by='Show.order')
    phases = db.relationship('Phase', backref='event', lazy=True, cascade='all, delete-orphan', order_by='Phase.order')
    contestants = db.relationship('Contestant', backref='event', lazy=True, cascade='all, delete-orphan')
    judges = db.relationship('Judge', backref='event', lazy=True, cascade='all, delete-orphan')
    scores = db.relationship('Score', backref='event', lazy=True, cascade='all, delete-orphan')

class Show(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('event.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    weight = db.Column(db.Float, nullable=False, default=100)
    order = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    criteria = db.relationship('Criteria', backref='show', lazy=True, cascade='all, delete-orphan', order_by='Criteria.order')
    phase = db.relationship('Phase', backref='show', uselist=False, cascade='all, delete-orphan')

class Criteria(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    show_id = db.Column(db.Integer, db.ForeignKey('show.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    weight = db.Column(db.Float, nullable=False)
    max_score = db.Column(db.Integer, nullable=False, default=DEFAULT_MAX_SCORE)
    order = db.Column(db.Integer)
    scores = db.relationship('Score', backref='criteria', lazy=True, cascade='all, delete-orphan')

class Phase(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('event.id'), nullable=False)
    show_id = db.Column(db.Integer, db.ForeignKey('show.id'), nullable=True)
    name = db.Column(db.String(100), nullable=False)
    order = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending')
    reset_scores = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    participations = db.relationship(
        'ContestantPhase',
        backref='phase',
        lazy=True,
        cascade='all, delete-orphan',
        foreign_keys='ContestantPhase.phase_id'
    )
    scores = db.relationship('Score', backref='phase', lazy=True, cascade='all, delete-orphan')

    __table_args__ = (
        db.UniqueConstraint('event_id', 'order', name='uq_phase_event_order'),
        db.Index(
            'uq_phase_single_active',
            'event_id',
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'")
        ),
    )

class Contestant(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('event.id'), nullable=False)
    number = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    bio = db.Column(db.Text, nullable=True)
    age = db.Column(db.Integer, nullable=True)
    location = db.Column(db.String(100), nullable=True)
    occupation = db.Column(db.String(100), nullable=True)
    photo_url = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), nullable=False, default='registered')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    scores = db.relationship('Score', backref='contestant', lazy=True, cascade='all, delete-orphan')
    participations = db.relationship('ContestantPhase', backref='contestant', lazy=True, cascade='all, delete-orphan')

    __table_args__ = (db.UniqueConstraint('event_id', 'number', name='uq_contestant_event_number'),)

class ContestantPhase(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    contestant_id = db.Column(db.Integer, db.ForeignKey('contestant.id'), nullable=False)
    phase_id = db.Column(db.Integer, db.ForeignKey('phase.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='active')
    rank = db.Column(db.Integer, nullable=True)
    advanced_from_phase_id = db.Column(db.Integer, db.ForeignKey('phase.id', ondelete='SET NULL'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (db.UniqueConstraint('contestant_id', 'phase_id', name='uq_contestant_phase'),)

class Judge(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('event.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    specialization = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    user = db.relationship('User')
    scores = db.relationship('Score', backref='judge', lazy=True, cascade='all, delete-orphan')

    __table_args__ = (db.UniqueConstraint('user_id', 'event_id', name='uq_judge_user_event'),)

class Score(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('event.id'), nullable=False)
    contestant_id = db.Column(db.Integer, db.ForeignKey('contestant.id'), nullable=False)
    judge_id = db.Column(db.Integer, db.ForeignKey('judge.id'), nullable=False)
    show_id = db.Column(db.Integer, db.ForeignKey('show.id'), nullable=False)
    criteria_id = db.Column(db.Integer, db.ForeignKey('criteria.id'), nullable=False)
    phase_id = db.Column(db.Integer, db.ForeignKey('phase.id'), nullable=False)
    score = db.Column(db.Float, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('contestant_id', 'judge_id', 'criteria_id', 'phase_id', name='uq_score_judge_criteria_phase'),
    )

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    username = db.Column(db.String(80), nullable=True)
    action = db.Column(db.String(120), nullable=False)
    details = db.Column(db.Text, nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

# Ensure there is at least one admin user
def ensure_default_admin():
    if User.query.first() is None:
        admin_user = User(username=DEFAULT_ADMIN_USERNAME)
        admin_user.set_password(DEFAULT_ADMIN_PASSWORD)
        admin_user.role = 'admin'
        db.session.add(admin_user)
        db.session.commit()

def get_current_user():
    user_id = session.get('user_id')
    if not user_id:
        return None
    return db.session.get(User, user_id)

def get_current_judge(event_id):
    user_id = session.get('user_id')
    if not user_id:
        return None
    return Judge.query.filter_by(user_id=user_id, event_id=event_id).first()

def log_event(action, details=None, user=None):
    """Write an audit row in its own commit; must only run after the business commit."""
    try:
        username = None
        user_id = None
        ip_address = None
        if user:
            user_id = user.id
            username = user.username
        elif has_request_context():
            user_id = session.get('user_id')
            username = session.get('username')
        if has_request_context():
            ip_address = request.headers.get('X-Forwarded-For', request.remote_addr)
        entry = AuditLog(
            user_id=user_id,
            username=username or 'system',
            action=action,
            details=details,
            ip_address=ip_address
        )
        db.session.add(entry)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception('Failed to write audit log entry %s', action)

def emit_realtime_update(event_name, payload=None):
    try:
        socketio.emit(event_name, payload or {})
    except Exception:
        logger.warning('Realtime update %s could not be emitted', event_name, exc_info=True)

def parse_date(value, end_of_day=False):
    if not value:
        return None
    try:
        parsed = datetime.strptime(value, '%Y-%m-%d')
        if end_of_day:
            return parsed.replace(hour=23, minute=59, second=59)
        return parsed
    except ValueError:
        return None

def build_log_query(params):
    query = AuditLog.query
    username = params.get('username')
    action = params.get('action')
    search = params.get('q')
    start_date = parse_date(params.get('start_date'))
    end_date = parse_date(params.get('end_date'), end_of_day=True)

    if username:
        query = query.filter(AuditLog.username == username)
    if action:
        query = query.filter(AuditLog.action == action)
    if search:
        like_term = f"%{search}%"
        query = query.filter(or_(
            AuditLog.username.ilike(like_term),
            AuditLog.action.ilike(like_term),
            AuditLog.details.ilike(like_term)
        ))
    if start_date:
        query = query.filter(AuditLog.created_at >= start_date)
    if end_date:
        query = query.filter(AuditLog.created_at <= end_date)

    return query

# Input parsing
def get_json_payload():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object.')
    return data

def require_field(data, field):
    value = data.get(field)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f'Missing required field: {field}.')
    return value

def parse_int(value, field):
    if isinstance(value, bool):
        raise ValidationError(f'Invalid {field}.')
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid {field}.')

def parse_number(value, field):
    if isinstance(value, bool) or value is None:
        raise ValidationError(f'Invalid {field}.')
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid {field}.')
    if math.isnan(number) or math.isinf(number):
        raise ValidationError(f'Invalid {field}.')
    return number

def parse_weight(value, field='weight'):
    weight = parse_number(value, field)
    if weight < 0 or weight > 100:
        raise ValidationError(f'{field.capitalize()} must be between 0 and 100.')
    return weight

def parse_event_date(value, field):
    if value in (None, ''):
        return None
    parsed = parse_date(value) if isinstance(value, str) else None
    if parsed is None:
        raise ValidationError(f'{field} must be a date in YYYY-MM-DD format.')
    return parsed

def apply_event_dates(event, data):
    if 'start_date' in data:
        event.start_date = parse_event_date(data['start_date'], 'start_date')
    if 'end_date' in data:
        event.end_date = parse_event_date(data['end_date'], 'end_date')
    if event.start_date and event.end_date and event.end_date < event.start_date:
        raise ValidationError('end_date cannot be before start_date.')

CONTESTANT_PROFILE_FIELDS = ['bio', 'location', 'occupation', 'photo_url']

def apply_contestant_profile(contestant, data):
    for field in CONTESTANT_PROFILE_FIELDS:
        if field in data:
            value = data[field]
            cleaned = str(value).strip() if value is not None else None
            setattr(contestant, field, cleaned or None)
    if 'age' in data:
        if data['age'] is None:
            contestant.age = None
        else:
            age = parse_int(data['age'], 'age')
            if age < 0:
                raise ValidationError('Age cannot be negative.')
            contestant.age = age

def get_or_raise(model, object_id, label=None):
    instance = db.session.get(model, object_id) if object_id is not None else None
    if instance is None:
        raise NotFoundError(f'{label or model.__name__} {object_id} not found.')
    return instance

def lock_event(event_id):
    event = Event.query.filter_by(id=event_id).with_for_update().first()
    if event is None:
        raise NotFoundError(f'Event {event_id} not found.')
    return event

# Payload builders
def build_user_payload(user):
    return {'id': user.id, 'username': user.username, 'role': user.role, 'is_active': user.is_active}

def build_event_payload(event):
    return {
        'id': event.id,
        'name': event.name,
        'description': event.description,
        'status': event.status,
        'current_phase': event.current_phase,
        'start_date': event.start_date.strftime('%Y-%m-%d') if event.start_date else None,
        'end_date': event.end_date.strftime('%Y-%m-%d') if event.end_date else None,
        'created_at': event.created_at.isoformat() if event.created_at else None
    }

def build_show_payload(show):
    return {
        'id': show.id,
        'event_id': show.event_id,
        'name': show.name,
        'description': show.description,
        'weight': show.weight,
        'order': show.order,
        'phase_id': show.phase.id if show.phase else None
    }

def build_criteria_payload(criterion):
    return {
        'id': criterion.id,
        'show_id': criterion.show_id,
        'name': criterion.name,
        'description': criterion.description,
        'weight': criterion.weight,
        'max_score': criterion.max_score,
        'order': criterion.order
    }

def build_phase_payload(phase):
    if phase is None:
        return None
    return {
        'id': phase.id,
        'event_id': phase.event_id,
        'show_id': phase.show_id,
        'name': phase.name,
        'order': phase.order,
        'status': phase.status,
        'reset_scores': bool(phase.reset_scores)
    }

def build_contestant_payload(contestant, participation=None):
    payload = {
        'id': contestant.id,
        'event_id': contestant.event_id,
        'number': contestant.number,
        'name': contestant.name,
        'bio': contestant.bio,
        'age': contestant.age,
        'location': contestant.location,
        'occupation': contestant.occupation,
        'photo_url': contestant.photo_url,
        'status': contestant.status
    }
    if participation is not None:
        payload['phase_status'] = participation.status
        payload['phase_rank'] = participation.rank
        payload['advanced_from_phase_id'] = participation.advanced_from_phase_id
    return payload

def build_judge_payload(judge):
    return {
        'id': judge.id,
        'event_id': judge.event_id,
        'user_id': judge.user_id,
        'username': judge.user.username if judge.user else None,
        'specialization': judge.specialization
    }

def build_score_payload(score):
    return {
        'id': score.id,
        'event_id': score.event_id,
        'contestant_id': score.contestant_id,
        'judge_id': score.judge_id,
        'show_id': score.show_id,
        'criteria_id': score.criteria_id,
        'phase_id': score.phase_id,
        'score': score.score
    }

# Entity store queries
def get_event_phases(event_id):
    return Phase.query.filter_by(event_id=event_id).order_by(Phase.order).all()

def get_active_phase(event_id, phases=None):
    if phases is None:
        phases = get_event_phases(event_id)
    active = [phase for phase in phases if phase.status == 'active']
    if len(active) > 1:
        names = ', '.join(phase.name for phase in active)
        raise consistency_failure(f'Event {event_id} has {len(active)} active phases: {names}.')
    return active[0] if active else None

def get_next_phase(phases, current):
    return next((phase for phase in phases if phase.order > current.order), None)

def get_started_order(phases):
    """Highest order among phases that have left pending, or None before the event starts."""
    started = [phase.order for phase in phases if phase.status != 'pending']
    return max(started) if started else None

def check_single_active_phase(event_id):
    active_count = Phase.query.filter_by(event_id=event_id, status='active').count()
    if active_count > 1:
        raise consistency_failure(f'Event {event_id} has {active_count} active phases after a transition.')

def get_phase_shows(phase):
    # One show per phase; callers treat the result as a list so shows can be weighted together.
    return [phase.show] if phase.show is not None else []

def get_phase_criteria(phase):
    show_ids = [show.id for show in get_phase_shows(phase)]
    if not show_ids:
        return []
    return Criteria.query.filter(Criteria.show_id.in_(show_ids)) \
        .order_by(Criteria.show_id, Criteria.order, Criteria.id).all()

def get_eligible_participations(phase_id):
    return db.session.query(ContestantPhase, Contestant) \
        .join(Contestant, ContestantPhase.contestant_id == Contestant.id) \
        .filter(ContestantPhase.phase_id == phase_id, ContestantPhase.status == 'active') \
        .order_by(Contestant.number) \
        .all()

def get_eligible_contestants(phase_id):
    return [contestant for _, contestant in get_eligible_participations(phase_id)]

def is_contestant_eligible(contestant_id, phase_id):
    return ContestantPhase.query.filter_by(
        contestant_id=contestant_id,
        phase_id=phase_id,
        status='active'
    ).first() is not None

# Scoring engine
def normalize_weights(weights):
    """Turn raw weights into shares of their actual sum; all-zero weights share equally."""
    if not weights:
        return []
    total = sum(weights)
    if total <= 0:
        return [1.0 / len(weights)] * len(weights)
    return [weight / total for weight in weights]

def parse_score_value(value):
    return parse_number(value, 'score value')

def submit_score(contestant_id, judge_id, criteria_id, phase_id, raw_score):
    """Record a judge's score for one contestant, criterion and phase.

    A second submission for the same (contestant, judge, criteria, phase) updates
    the existing row in place. The show id is always taken from the criteria.
    """
    score_value = parse_score_value(raw_score)

    phase = get_or_raise(Phase, phase_id)
    criteria = get_or_raise(Criteria, criteria_id)
    contestant = get_or_raise(Contestant, contestant_id)
    judge = get_or_raise(Judge, judge_id)

    if phase.status != 'active':
        raise PreconditionError(f'Phase "{phase.name}" is not active for scoring.')
    if judge.event_id != phase.event_id:
        raise ValidationError('Judge does not belong to this event.')
    if contestant.event_id != phase.event_id:
        raise ValidationError('Contestant does not belong to this event.')
    if criteria.show_id not in {show.id for show in get_phase_shows(phase)}:
        raise ValidationError(f'Criteria "{criteria.name}" is not scored in phase "{phase.name}".')
    if score_value < MIN_SCORE or score_value > criteria.max_score:
        raise ValidationError(f'Score must be between {MIN_SCORE} and {criteria.max_score}.')
    if not is_contestant_eligible(contestant.id, phase.id):
        raise PreconditionError(f'Contestant #{contestant.number} is not eligible in phase "{phase.name}".')

    def write_score():
        existing = Score.query.filter_by(
            contestant_id=contestant_id,
            judge_id=judge_id,
            criteria_id=criteria_id,
            phase_id=phase_id
        ).first()
        if existing:
            if existing.show_id != criteria.show_id:
                raise consistency_failure(
                    f'Score {existing.id} is stamped with show {existing.show_id} '
                    f'but criteria {criteria.id} belongs to show {criteria.show_id}.'
                )
            existing.score = score_value
            existing.updated_at = datetime.utcnow()
            return existing
        score = Score(
            event_id=phase.event_id,
            contestant_id=contestant_id,
            judge_id=judge_id,
            show_id=criteria.show_id,
            criteria_id=criteria_id,
            phase_id=phase_id,
            score=score_value
        )
        db.session.add(score)
        return score

    try:
        score = write_score()
        db.session.commit()
    except IntegrityError:
        # Another request inserted the same tuple first; last write wins.
        db.session.rollback()
        logger.info(
            'Concurrent score insert for contestant=%s judge=%s criteria=%s phase=%s, applying as update',
            contestant_id, judge_id, criteria_id, phase_id
        )
        try:
            score = write_score()
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
    except Exception:
        db.session.rollback()
        raise

    emit_realtime_update('scores_update', {'phase_id': phase_id, 'contestant_id': contestant_id})
    return score

def compute_results(event_id, phase_id):
    """Rank the contestants eligible in a phase by their weighted phase total.

    Each criterion contributes the mean of its judges' scores, weighted by the
    criterion's share of its show's criteria weights. Show scores are combined
    by each show's share of the phase's show weights. Criteria with no scores
    contribute 0. Equal totals are ordered by contestant number.
    """
    phase = get_or_raise(Phase, phase_id)
    if phase.event_id != event_id:
        raise NotFoundError(f'Phase {phase_id} does not belong to event {event_id}.')

    contestants = get_eligible_contestants(phase.id)
    shows = get_phase_shows(phase)
    show_shares = dict(zip(
        [show.id for show in shows],
        normalize_weights([show.weight or 0 for show in shows])
    ))
    criteria_by_show = {}
    for criterion in get_phase_criteria(phase):
        criteria_by_show.setdefault(criterion.show_id, []).append(criterion)

    # Single read of every score in the phase.
    scores_by_key = {}
    for contestant_id, criteria_id, value in db.session.query(
            Score.contestant_id, Score.criteria_id, Score.score) \
            .filter(Score.event_id == event_id, Score.phase_id == phase.id).all():
        scores_by_key.setdefault((contestant_id, criteria_id), []).append(value)

    results = []
    for contestant in contestants:
        total_score = 0.0
        show_scores = []
        criteria_scores = []

        for show in shows:
            show_criteria = criteria_by_show.get(show.id, [])
            shares = normalize_weights([criterion.weight or 0 for criterion in show_criteria])
            show_total = 0.0

            for criterion, share in zip(show_criteria, shares):
                values = scores_by_key.get((contestant.id, criterion.id), [])
                mean_score = sum(values) / len(values) if values else None
                contribution = mean_score * share if mean_score is not None else 0.0
                show_total += contribution
                criteria_scores.append({
                    'criteria_id': criterion.id,
                    'name': criterion.name,
                    'show_id': show.id,
                    'weight': criterion.weight,
                    'judge_count': len(values),
                    'mean': round(mean_score, RESULT_PRECISION) if mean_score is not None else None,
                    'weighted': round(contribution, RESULT_PRECISION)
                })

            weighted_show = show_total * show_shares[show.id]
            show_scores.append({
                'show_id': show.id,
                'name': show.name,
                'weight': show.weight,
                'raw': round(show_total, RESULT_PRECISION),
                'weighted': round(weighted_show, RESULT_PRECISION)
            })
            total_score += weighted_show

        results.append({
            'contestant_id': contestant.id,
            'contestant_number': contestant.number,
            'contestant_name': contestant.name,
            'show_scores': show_scores,
            'criteria_scores': criteria_scores,
            'total_score': round(total_score, RESULT_PRECISION)
        })

    results.sort(key=lambda x: (-x['total_score'], x['contestant_number']))
    for idx, result in enumerate(results, 1):
        result['rank'] = idx

    return results

def scored_rows_query():
    return db.session.query(Score, Contestant, Criteria) \
        .join(Contestant, Score.contestant_id == Contestant.id) \
        .join(Criteria, Score.criteria_id == Criteria.id)

def get_judge_scores(judge_id, phase_id):
    """One judge's submitted scores in a phase, with their contestants and criteria."""
    return scored_rows_query() \
        .filter(Score.judge_id == judge_id, Score.phase_id == phase_id) \
        .order_by(Contestant.number, Criteria.order, Criteria.id) \
        .all()

def build_score_rows(rows):
    payload = []
    for score, contestant, criterion in rows:
        entry = build_score_payload(score)
        entry['contestant_number'] = contestant.number
        entry['criteria_name'] = criterion.name
        payload.append(entry)
    return payload

def select_top_contestants(event_id, phase_id, count):
    if count < 1:
        raise ValidationError('Count must be at least 1.')
    return [result['contestant_id'] for result in compute_results(event_id, phase_id)[:count]]

def get_scoring_progress(event_id, judge_id):
    phase = get_active_phase(event_id)
    if phase is None:
        return {'phase': None, 'total_required': 0, 'completed': 0, 'progress': 0}

    contestant_ids = [contestant.id for contestant in get_eligible_contestants(phase.id)]
    criteria_ids = [criterion.id for criterion in get_phase_criteria(phase)]
    total_required = len(contestant_ids) * len(criteria_ids)
    completed = 0
    if total_required:
        completed = Score.query.filter_by(judge_id=judge_id, phase_id=phase.id) \
            .filter(Score.contestant_id.in_(contestant_ids)) \
            .filter(Score.criteria_id.in_(criteria_ids)) \
            .count()
    progress = round(completed * 100 / total_required) if total_required else 0
    return {
        'phase': build_phase_payload(phase),
        'total_required': total_required,
        'completed': completed,
        'progress': progress
    }

def build_judge_breakdown(phase):
    breakdown = {}
    judges = Judge.query.filter_by(event_id=phase.event_id).order_by(Judge.id).all()
    judges_payload = {judge.id: judge.user.username if judge.user else f'Judge {judge.id}' for judge in judges}
    contestant_lookup = {contestant.id: contestant for contestant in get_eligible_contestants(phase.id)}

    for criterion in get_phase_criteria(phase):
        judge_scores = {}
        scores = Score.query.filter_by(phase_id=phase.id, criteria_id=criterion.id).all()
        for score in scores:
            judge_key = judges_payload.get(score.judge_id)
            contestant = contestant_lookup.get(score.contestant_id)
            if not judge_key or not contestant:
                continue
            judge_scores.setdefault(judge_key, []).append({
                'contestant_number': contestant.number,
                'contestant_name': contestant.name,
                'score': score.score
            })
        for entries in judge_scores.values():
            entries.sort(key=lambda entry: entry['contestant_number'])
        breakdown[criterion.name] = judge_scores
    return breakdown

# Phase state machine
def _advance_phase(event_id):
    event = lock_event(event_id)
    phases = get_event_phases(event.id)
    if not phases:
        raise PreconditionError('No phases found for this event.')

    current = get_active_phase(event.id, phases)
    if current is None:
        first_pending = next((phase for phase in phases if phase.status == 'pending'), None)
        if first_pending is None:
            raise PreconditionError('This event has no pending phase to start.')
        first_pending.status = 'active'
        event.status = 'active'
        event.current_phase = first_pending.name
        db.session.flush()
        check_single_active_phase(event.id)
        return {
            'message': f'Started {first_pending.name}',
            'previous_phase': None,
            'new_phase': first_pending,
            'scores_cleared': 0
        }

    current.status = 'completed'
    db.session.flush()

    next_phase = get_next_phase(phases, current)
    if next_phase is None:
        event.status = 'completed'
        event.current_phase = 'completed'
        db.session.flush()
        check_single_active_phase(event.id)
        return {
            'message': 'Event completed - no more phases',
            'previous_phase': current,
            'new_phase': None,
            'scores_cleared': 0
        }

    if next_phase.status != 'pending':
        raise PreconditionError(f'Phase "{next_phase.name}" is already {next_phase.status}.')

    next_phase.status = 'active'
    event.status = 'active'
    event.current_phase = next_phase.name

    scores_cleared = 0
    if next_phase.reset_scores:
        scores_cleared = Score.query.filter_by(event_id=event.id, phase_id=next_phase.id).delete()

    db.session.flush()
    check_single_active_phase(event.id)
    return {
        'message': f'Advanced to {next_phase.name}',
        'previous_phase': current,
        'new_phase': next_phase,
        'scores_cleared': scores_cleared
    }

def advance_phase(event_id):
    """Move the event's phase lifecycle one step forward in a single transaction."""
    try:
        outcome = _advance_phase(event_id)
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise consistency_failure(f'Phase transition for event {event_id} violated a constraint: {exc.orig}')
    except Exception:
        db.session.rollback()
        raise

    previous_phase = outcome['previous_phase']
    new_phase = outcome['new_phase']
    logger.info(
        'Event %s phase advance: %s -> %s (scores cleared: %s)',
        event_id,
        previous_phase.name if previous_phase else None,
        new_phase.name if new_phase else 'completed',
        outcome['scores_cleared']
    )
    log_event(
        'phase_advanced',
        f"event_id={event_id} previous={previous_phase.id if previous_phase else None} "
        f"new={new_phase.id if new_phase else None} scores_cleared={outcome['scores_cleared']}"
    )
    emit_realtime_update('phase_update', {
        'event_id': event_id,
        'active_phase_id': new_phase.id if new_phase else None
    })
    return outcome

def reorder_phases(event_id, phase_orders):
    """Apply new phase orders, keeping each show's order in step with its phase."""
    if not isinstance(phase_orders, list) or not phase_orders:
        raise ValidationError('phase_orders must be a non-empty list.')

    try:
        lock_event(event_id)
        phases = get_event_phases(event_id)
        phases_by_id = {phase.id: phase for phase in phases}
        new_orders = {phase.id: phase.order for phase in phases}
        for entry in phase_orders:
            if not isinstance(entry, dict):
                raise ValidationError('Each phase order entry must be an object.')
            phase_id = parse_int(entry.get('id'), 'phase id')
            if phase_id not in phases_by_id:
                raise ValidationError(f'Phase {phase_id} does not belong to this event.')
            new_orders[phase_id] = parse_int(entry.get('order'), 'order')

        if len(set(new_orders.values())) != len(new_orders):
            raise ValidationError('Phase orders must be unique within an event.')

        ordered = sorted(phases, key=lambda phase: new_orders[phase.id])
        sequence = [PHASE_STATUS_SEQUENCE[phase.status] for phase in ordered]
        if sequence != sorted(sequence):
            raise PreconditionError('A pending phase cannot be placed before an active or completed phase.')

        changed = [phase for phase in phases if phase.order != new_orders[phase.id]]
        # Park changed phases on unused negative orders so the unique constraint holds mid-update.
        for phase in changed:
            phase.order = -phase.id
        db.session.flush()
        for phase in changed:
            phase.order = new_orders[phase.id]
            if phase.show is not None:
                phase.show.order = phase.order
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_event('phases_reordered', f'event_id={event_id} orders={sorted(new_orders.items())}')
    emit_realtime_update('phase_update', {'event_id': event_id})
    return get_event_phases(event_id)

def restart_event(event_id, clear_scores=False):
    """Put every phase back to pending and re-seed all contestants into the first phase."""
    try:
        event = lock_event(event_id)
        phases = get_event_phases(event.id)
        if not phases:
            raise PreconditionError('No phases found for this event.')

        for phase in phases:
            phase.status = 'pending'
        phase_ids = [phase.id for phase in phases]
        ContestantPhase.query.filter(ContestantPhase.phase_id.in_(phase_ids)).delete()
        scores_cleared = 0
        if clear_scores:
            scores_cleared = Score.query.filter_by(event_id=event.id).delete()
        for contestant in Contestant.query.filter_by(event_id=event.id).all():
            contestant.status = 'registered'
        event.status = 'upcoming'
        event.current_phase = None
        db.session.flush()

        seeded = _seed_first_phase(event.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_event('event_restarted', f'event_id={event_id} seeded={seeded} scores_cleared={scores_cleared}')
    emit_realtime_update('phase_update', {'event_id': event_id, 'active_phase_id': None})
    return {'seeded_count': seeded, 'scores_cleared': scores_cleared}

# Progression selector
def _enroll(contestant, phase, rank=None, advanced_from_phase_id=None):
    participation = ContestantPhase(
        contestant_id=contestant.id,
        phase_id=phase.id,
        status='active',
        rank=rank,
        advanced_from_phase_id=advanced_from_phase_id
    )
    contestant.status = 'active'
    db.session.add(participation)
    return participation

def enroll_in_first_phase(contestant):
    phases = get_event_phases(contestant.event_id)
    if not phases or phases[0].status == 'completed':
        return None
    existing = ContestantPhase.query.filter_by(contestant_id=contestant.id, phase_id=phases[0].id).first()
    if existing:
        return existing
    return _enroll(contestant, phases[0])

def _seed_first_phase(event_id):
    phases = get_event_phases(event_id)
    if not phases:
        raise PreconditionError('No phases found for this event.')
    first_phase = phases[0]
    if first_phase.status == 'completed':
        raise PreconditionError(f'Phase "{first_phase.name}" has already been completed.')

    enrolled = {row.contestant_id for row in ContestantPhase.query.filter_by(phase_id=first_phase.id).all()}
    seeded = 0
    for contestant in Contestant.query.filter_by(event_id=event_id).order_by(Contestant.number).all():
        if contestant.id in enrolled:
            continue
        _enroll(contestant, first_phase)
        seeded += 1
    return seeded

def seed_first_phase(event_id):
    try:
        lock_event(event_id)
        seeded = _seed_first_phase(event_id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_event('first_phase_seeded', f'event_id={event_id} seeded={seeded}')
    emit_realtime_update('contestants_update', {'event_id': event_id})
    return {'seeded_count': seeded}

def _advance_contestants(event_id, selected_contestant_ids):
    event = lock_event(event_id)
    if not selected_contestant_ids:
        raise PreconditionError('Please select contestants to advance.')
    if len(set(selected_contestant_ids)) != len(selected_contestant_ids):
        raise ValidationError('Each contestant may only be selected once.')

    phases = get_event_phases(event.id)
    current = get_active_phase(event.id, phases)
    if current is None:
        raise PreconditionError('No active phase for this event.')
    next_phase = get_next_phase(phases, current)
    if next_phase is None:
        raise PreconditionError(f'"{current.name}" is the final phase. No advancement possible.')

    current_rows = {
        row.contestant_id: row
        for row in ContestantPhase.query.filter_by(phase_id=current.id, status='active').all()
    }
    missing = [contestant_id for contestant_id in selected_contestant_ids if contestant_id not in current_rows]
    if missing:
        raise PreconditionError(
            f'Contestants {", ".join(str(m) for m in missing)} are not active in phase "{current.name}".'
        )

    selected = set(selected_contestant_ids)
    next_rows = {row.contestant_id: row for row in ContestantPhase.query.filter_by(phase_id=next_phase.id).all()}
    # Drop carry-forwards from an earlier selection that this one no longer includes.
    for contestant_id, row in next_rows.items():
        if contestant_id not in selected and row.advanced_from_phase_id == current.id:
            db.session.delete(row)

    for rank, contestant_id in enumerate(selected_contestant_ids, 1):
        row = next_rows.get(contestant_id)
        if row is None:
            _enroll(current_rows[contestant_id].contestant, next_phase, rank=rank, advanced_from_phase_id=current.id)
        else:
            row.status = 'active'
            row.rank = rank
            row.advanced_from_phase_id = current.id
            row.contestant.status = 'active'

    eliminated = 0
    for contestant_id, row in current_rows.items():
        if contestant_id in selected:
            continue
        row.status = 'eliminated'
        row.contestant.status = 'eliminated'
        eliminated += 1

    db.session.flush()
    return {
        'message': f'Advanced {len(selected_contestant_ids)} contestant(s) to {next_phase.name}',
        'advanced_count': len(selected_contestant_ids),
        'eliminated_count': eliminated,
        'from_phase': current,
        'to_phase': next_phase
    }

def advance_contestants(event_id, selected_contestant_ids):
    """Carry the selected contestants into the next phase and eliminate the rest.

    The selection order becomes the contestants' rank in the next phase.
    """
    try:
        outcome = _advance_contestants(event_id, selected_contestant_ids)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        'Event %s advanced %s contestant(s) from phase %s to phase %s, %s eliminated',
        event_id,
        outcome['advanced_count'],
        outcome['from_phase'].id,
        outcome['to_phase'].id,
        outcome['eliminated_count']
    )
    log_event(
        'contestants_advanced',
        f"event_id={event_id} from={outcome['from_phase'].id} to={outcome['to_phase'].id} "
        f"advanced={outcome['advanced_count']} eliminated={outcome['eliminated_count']}"
    )
    emit_realtime_update('contestants_update', {'event_id': event_id, 'phase_id': outcome['to_phase'].id})
    return outcome

# Error handlers
@app.errorhandler(ScoringError)
def handle_scoring_error(error):
    db.session.rollback()
    if isinstance(error, ConsistencyFailure):
        log_event('consistency_failure', error.message)
        return jsonify({
            'success': False,
            'message': 'Something went wrong. The incident has been logged.'
        }), error.status_code
    logger.warning('%s rejected: %s', request.path, error.message)
    return jsonify({'success': False, 'message': error.message}), error.status_code

# Routes
@app.route('/api/login', methods=['POST'])
def login():
    data = get_json_payload()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    ensure_default_admin()
    user = User.query.filter_by(username=username).first()

    if user and user.is_active and user.check_password(password):
        session.clear()
        session['user_id'] = user.id
        session['username'] = user.username
        session['role'] = user.role or 'admin'
        log_event('login_success', f'username={user.username}', user=user)
        return jsonify({'success': True, 'user': build_user_payload(user)})

    log_event('login_failed', f'username={username}')
    return jsonify({'success': False, 'message': 'Invalid username or password.'}), 401

@app.route('/api/logout', methods=['POST'])
def logout():
    user = get_current_user()
    if user:
        log_event('logout', f'username={user.username}', user=user)
    session.clear()
    return jsonify({'success': True})

@app.route('/api/auth/user')
@login_required
def auth_user():
    user = get_current_user()
    if not user:
        session.clear()
        return jsonify({'success': False, 'message': 'Please login to access this resource.'}), 401
    return jsonify(build_user_payload(user))

@app.route('/api/users', methods=['POST'])
@admin_required
def create_user():
    data = get_json_payload()
    username = str(require_field(data, 'username')).strip()
    password = str(require_field(data, 'password'))
    role = data.get('role', 'judge')
    if role not in USER_ROLES:
        raise ValidationError(f'Role must be one of: {", ".join(USER_ROLES)}.')
    if User.query.filter_by(username=username).first():
        raise ValidationError(f'Username "{username}" is already taken.')

    user = User(username=username, role=role)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    log_event('user_created', f'username={username} role={role}')
    return jsonify(build_user_payload(user)), 201

@app.route('/api/events')
def list_events():
    events = Event.query.order_by(Event.created_at.desc(), Event.id.desc()).all()
    return jsonify([build_event_payload(event) for event in events])

@app.route('/api/events', methods=['POST'])
@admin_required
def create_event():
    data = get_json_payload()
    event = Event(
        name=str(require_field(data, 'name')).strip(),
        description=data.get('description')
    )
    apply_event_dates(event, data)
    db.session.add(event)
    db.session.commit()
    log_event('event_created', f'event_id={event.id} name={event.name}')
    return jsonify(build_event_payload(event)), 201

@app.route('/api/events/<int:event_id>')
def get_event(event_id):
    event = get_or_raise(Event, event_id)
    return jsonify(build_event_payload(event))

@app.route('/api/events/<int:event_id>', methods=['PATCH'])
@admin_required
def update_event(event_id):
    event = get_or_raise(Event, event_id)
    data = get_json_payload()
    if 'status' in data or 'current_phase' in data:
        raise ValidationError('Event status changes only through phase advancement.')
    if 'name' in data:
        event.name = str(require_field(data, 'name')).strip()
    if 'description' in data:
        event.description = data.get('description')
    apply_event_dates(event, data)
    db.session.commit()
    log_event('event_updated', f'event_id={event.id}')
    return jsonify(build_event_payload(event))

@app.route('/api/events/<int:event_id>', methods=['DELETE'])
@admin_required
def delete_event(event_id):
    event = get_or_raise(Event, event_id)
    event_name = event.name
    db.session.delete(event)
    db.session.commit()
    log_event('event_deleted', f'event_id={event_id} name={event_name}')
    return '', 204

@app.route('/api/events/<int:event_id>/shows')
def list_shows(event_id):
    get_or_raise(Event, event_id)
    shows = Show.query.filter_by(event_id=event_id).order_by(Show.order).all()
    return jsonify([build_show_payload(show) for show in shows])

@app.route('/api/events/<int:event_id>/shows', methods=['POST'])
@admin_required
def create_show(event_id):
    event = get_or_raise(Event, event_id)
    data = get_json_payload()
    name = str(require_field(data, 'name')).strip()
    weight = parse_weight(data.get('weight', 100))
    if data.get('order') is not None:
        order = parse_int(data['order'], 'order')
    else:
        max_order = db.session.query(db.func.max(Phase.order)).filter(Phase.event_id == event.id).scalar() or 0
        order = max_order + 1
    if Phase.query.filter_by(event_id=event.id, order=order).first():
        raise ValidationError(f'A phase with order {order} already exists for this event.')
    if event.status == 'completed':
        raise PreconditionError('Cannot add a show to a completed event.')
    started_order = get_started_order(get_event_phases(event.id))
    if started_order is not None and order < started_order:
        raise PreconditionError(
            f'Order {order} would place a pending phase before a phase that has already started.'
        )

    # Every show is judged in exactly one phase with the same name and order.
    show = Show(event_id=event.id, name=name, description=data.get('description'), weight=weight, order=order)
    show.phase = Phase(
        event_id=event.id,
        name=name,
        order=order,
        reset_scores=bool(data.get('reset_scores', False))
    )
    db.session.add(show)
    db.session.commit()
    log_event('show_created', f'event_id={event.id} show_id={show.id} phase_id={show.phase.id}')
    emit_realtime_update('phase_update', {'event_id': event.id})
    return jsonify({'show': build_show_payload(show), 'phase': build_phase_payload(show.phase)}), 201

@app.route('/api/shows/<int:show_id>', methods=['PATCH'])
@admin_required
def update_show(show_id):
    show = get_or_raise(Show, show_id)
    data = get_json_payload()
    if 'name' in data:
        show.name = str(require_field(data, 'name')).strip()
        if show.phase is not None:
            show.phase.name = show.name
    if 'weight' in data:
        show.weight = parse_weight(data['weight'])
    if 'description' in data:
        show.description = data.get('description')
    db.session.commit()
    log_event('show_updated', f'show_id={show.id}')
    return jsonify(build_show_payload(show))

@app.route('/api/shows/<int:show_id>', methods=['DELETE'])
@admin_required
def delete_show(show_id):
    show = get_or_raise(Show, show_id)
    if show.phase is not None and show.phase.status == 'active':
        raise PreconditionError('Cannot delete a show while its phase is active.')
    score_count = Score.query.filter_by(show_id=show.id).count()
    show_name = show.name
    if show.phase is not None:
        ContestantPhase.query.filter_by(advanced_from_phase_id=show.phase.id) \
            .update({'advanced_from_phase_id': None})
    db.session.delete(show)
    db.session.commit()
    log_event('show_deleted', f'show_id={show_id} name={show_name} scores_removed={score_count}')
    emit_realtime_update('phase_update', {'show_id': show_id})
    return '', 204

@app.route('/api/shows/<int:show_id>/criteria')
def list_criteria(show_id):
    show = get_or_raise(Show, show_id)
    return jsonify([build_criteria_payload(criterion) for criterion in show.criteria])

@app.route('/api/shows/<int:show_id>/criteria', methods=['POST'])
@admin_required
def create_criteria(show_id):
    show = get_or_raise(Show, show_id)
    data = get_json_payload()
    max_score = parse_int(data.get('max_score', DEFAULT_MAX_SCORE), 'max_score')
    if max_score < MIN_SCORE:
        raise ValidationError(f'max_score must be at least {MIN_SCORE}.')
    if data.get('order') is not None:
        order = parse_int(data['order'], 'order')
    else:
        order = len(show.criteria) + 1
    criterion = Criteria(
        show_id=show.id,
        name=str(require_field(data, 'name')).strip(),
        description=data.get('description'),
        weight=parse_weight(require_field(data, 'weight')),
        max_score=max_score,
        order=order
    )
    db.session.add(criterion)
    db.session.commit()
    log_event('criteria_created', f'show_id={show.id} criteria_id={criterion.id}')
    return jsonify(build_criteria_payload(criterion)), 201

@app.route('/api/criteria/<int:criteria_id>', methods=['PATCH'])
@admin_required
def update_criteria(criteria_id):
    criterion = get_or_raise(Criteria, criteria_id)
    data = get_json_payload()
    if 'name' in data:
        criterion.name = str(require_field(data, 'name')).strip()
    if 'weight' in data:
        criterion.weight = parse_weight(data['weight'])
    if 'max_score' in data:
        max_score = parse_int(data['max_score'], 'max_score')
        if max_score < MIN_SCORE:
            raise ValidationError(f'max_score must be at least {MIN_SCORE}.')
        criterion.max_score = max_score
    if 'description' in data:
        criterion.description = data.get('description')
    if 'order' in data:
        criterion.order = parse_int(data['order'], 'order')
    db.session.commit()
    log_event('criteria_updated', f'criteria_id={criterion.id}')
    return jsonify(build_criteria_payload(criterion))

@app.route('/api/criteria/<int:criteria_id>', methods=['DELETE'])
@admin_required
def delete_criteria(criteria_id):
    criterion = get_or_raise(Criteria, criteria_id)
    db.session.delete(criterion)
    db.session.commit()
    log_event('criteria_deleted', f'criteria_id={criteria_id}')
    return '', 204

@app.route('/api/events/<int:event_id>/contestants')
def list_contestants(event_id):
    get_or_raise(Event, event_id)
    contestants = Contestant.query.filter_by(event_id=event_id).order_by(Contestant.number).all()
    return jsonify([build_contestant_payload(contestant) for contestant in contestants])

@app.route('/api/events/<int:event_id>/contestants', methods=['POST'])
@admin_required
def create_contestant(event_id):
    event = get_or_raise(Event, event_id)
    data = get_json_payload()
    number = parse_int(require_field(data, 'number'), 'number')
    if Contestant.query.filter_by(event_id=event.id, number=number).first():
        raise ValidationError(f'Contestant number {number} already exists for this event.')

    contestant = Contestant(event_id=event.id, number=number, name=str(require_field(data, 'name')).strip())
    apply_contestant_profile(contestant, data)
    db.session.add(contestant)
    try:
        db.session.flush()
        enroll_in_first_phase(contestant)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    log_event('contestant_created', f'event_id={event.id} contestant_id={contestant.id} number={number}')
    emit_realtime_update('contestants_update', {'event_id': event.id})
    return jsonify(build_contestant_payload(contestant)), 201

@app.route('/api/contestants/<int:contestant_id>', methods=['PATCH'])
@admin_required
def update_contestant(contestant_id):
    contestant = get_or_raise(Contestant, contestant_id)
    data = get_json_payload()
    if 'status' in data:
        raise ValidationError('Contestant status changes only through phase progression.')
    if 'number' in data:
        new_number = parse_int(data['number'], 'number')
        if new_number != contestant.number:
            existing = Contestant.query.filter_by(event_id=contestant.event_id, number=new_number).first()
            if existing and existing.id != contestant.id:
                raise ValidationError(f'Contestant number {new_number} already exists for this event.')
            contestant.number = new_number
    if 'name' in data:
        contestant.name = str(require_field(data, 'name')).strip()
    apply_contestant_profile(contestant, data)
    db.session.commit()
    log_event('contestant_updated', f'contestant_id={contestant.id} number={contestant.number}')
    emit_realtime_update('contestants_update', {'event_id': contestant.event_id})
    return jsonify(build_contestant_payload(contestant))

@app.route('/api/contestants/<int:contestant_id>', methods=['DELETE'])
@admin_required
def delete_contestant(contestant_id):
    contestant = get_or_raise(Contestant, contestant_id)
    score_count = Score.query.filter_by(contestant_id=contestant_id).count()
    contestant_info = f"#{contestant.number} - {contestant.name}"
    db.session.delete(contestant)
    db.session.commit()
    log_event('contestant_deleted', f'contestant={contestant_info} scores_removed={score_count}')
    return '', 204

@app.route('/api/events/<int:event_id>/judges')
def list_judges(event_id):
    get_or_raise(Event, event_id)
    judges = Judge.query.filter_by(event_id=event_id).order_by(Judge.id).all()
    return jsonify([build_judge_payload(judge) for judge in judges])

@app.route('/api/events/<int:event_id>/judges', methods=['POST'])
@admin_required
def create_judge(event_id):
    event = get_or_raise(Event, event_id)
    data = get_json_payload()
    user_id = parse_int(require_field(data, 'user_id'), 'user_id')
    user = db.session.get(User, user_id)
    if user is None:
        raise ValidationError(f'User {user_id} does not exist.')
    if Judge.query.filter_by(user_id=user.id, event_id=event.id).first():
        raise ValidationError(f'User "{user.username}" is already a judge for this event.')

    judge = Judge(event_id=event.id, user_id=user.id, specialization=data.get('specialization'))
    db.session.add(judge)
    db.session.commit()
    log_event('judge_created', f'event_id={event.id} judge_id={judge.id} username={user.username}')
    return jsonify(build_judge_payload(judge)), 201

@app.route('/api/events/<int:event_id>/phases')
def list_phases(event_id):
    get_or_raise(Event, event_id)
    return jsonify([build_phase_payload(phase) for phase in get_event_phases(event_id)])

@app.route('/api/phases/<int:phase_id>', methods=['PATCH'])
@admin_required
def update_phase(phase_id):
    phase = get_or_raise(Phase, phase_id)
    data = get_json_payload()
    if 'status' in data or 'order' in data:
        raise ValidationError('Phase status and order change only through advancement and reordering.')
    if 'name' in data:
        phase.name = str(require_field(data, 'name')).strip()
    if 'reset_scores' in data:
        phase.reset_scores = bool(data['reset_scores'])
    db.session.commit()
    log_event('phase_updated', f'phase_id={phase.id} reset_scores={phase.reset_scores}')
    return jsonify(build_phase_payload(phase))

@app.route('/api/events/<int:event_id>/phases/reorder', methods=['POST'])
@admin_required
def reorder_event_phases(event_id):
    get_or_raise(Event, event_id)
    data = get_json_payload()
    phases = reorder_phases(event_id, data.get('phase_orders'))
    return jsonify([build_phase_payload(phase) for phase in phases])

@app.route('/api/phases/<int:phase_id>/contestants')
def list_phase_contestants(phase_id):
    get_or_raise(Phase, phase_id)
    return jsonify([
        build_contestant_payload(contestant, participation)
        for participation, contestant in get_eligible_participations(phase_id)
    ])

@app.route('/api/events/<int:event_id>/scores')
@admin_required
def list_scores(event_id):
    get_or_raise(Event, event_id)
    query = scored_rows_query().filter(Score.event_id == event_id)
    phase_id = request.args.get('phase_id')
    if phase_id:
        query = query.filter(Score.phase_id == parse_int(phase_id, 'phase_id'))
    rows = query.order_by(Score.phase_id, Contestant.number, Criteria.order, Score.judge_id).all()
    return jsonify(build_score_rows(rows))

@app.route('/api/events/<int:event_id>/my-scores')
@login_required
def my_scores(event_id):
    get_or_raise(Event, event_id)
    judge = get_current_judge(event_id)
    if judge is None:
        return jsonify({'success': False, 'message': 'You are not a judge for this event.'}), 403

    phase_id = request.args.get('phase_id')
    if phase_id:
        phase = get_or_raise(Phase, parse_int(phase_id, 'phase_id'))
        if phase.event_id != event_id:
            raise NotFoundError(f'Phase {phase.id} does not belong to event {event_id}.')
    else:
        phase = get_active_phase(event_id)
        if phase is None:
            return jsonify([])
    return jsonify(build_score_rows(get_judge_scores(judge.id, phase.id)))

@app.route('/api/events/<int:event_id>/scores', methods=['POST'])
@login_required
def judge_score(event_id):
    get_or_raise(Event, event_id)
    judge = get_current_judge(event_id)
    if judge is None:
        return jsonify({'success': False, 'message': 'You are not a judge for this event.'}), 403

    data = get_json_payload()
    contestant_id = parse_int(require_field(data, 'contestant_id'), 'contestant_id')
    criteria_id = parse_int(require_field(data, 'criteria_id'), 'criteria_id')
    if 'score' not in data:
        raise ValidationError('Missing required field: score.')
    if data.get('phase_id') is not None:
        phase_id = parse_int(data['phase_id'], 'phase_id')
    else:
        active_phase = get_active_phase(event_id)
        if active_phase is None:
            raise PreconditionError('No active phase for scoring.')
        phase_id = active_phase.id

    score = submit_score(contestant_id, judge.id, criteria_id, phase_id, data['score'])
    return jsonify({'success': True, 'score': build_score_payload(score)})

@app.route('/api/events/<int:event_id>/scoring-progress')
@login_required
def scoring_progress(event_id):
    get_or_raise(Event, event_id)
    judge = get_current_judge(event_id)
    if judge is None:
        return jsonify({'success': False, 'message': 'You are not a judge for this event.'}), 403
    return jsonify(get_scoring_progress(event_id, judge.id))

def get_requested_phase(event_id):
    phase_id = request.args.get('phase_id')
    if not phase_id:
        raise ValidationError('Phase ID is required.')
    return parse_int(phase_id, 'phase_id')

@app.route('/api/events/<int:event_id>/results')
def results(event_id):
    get_or_raise(Event, event_id)
    return jsonify(compute_results(event_id, get_requested_phase(event_id)))

@app.route('/api/results')
def current_results():
    event = Event.query.filter_by(status='active').order_by(Event.id).first()
    if not event:
        return jsonify([])
    phase = get_active_phase(event.id)
    if not phase:
        return jsonify([])
    return jsonify(compute_results(event.id, phase.id))

@app.route('/api/events/<int:event_id>/top-contestants')
@admin_required
def top_contestants(event_id):
    get_or_raise(Event, event_id)
    count = parse_int(request.args.get('count', 1), 'count')
    return jsonify({'contestant_ids': select_top_contestants(event_id, get_requested_phase(event_id), count)})

@app.route('/api/events/<int:event_id>/judge-breakdown')
@admin_required
def judge_breakdown(event_id):
    get_or_raise(Event, event_id)
    phase = get_or_raise(Phase, get_requested_phase(event_id))
    if phase.event_id != event_id:
        raise NotFoundError(f'Phase {phase.id} does not belong to event {event_id}.')
    return jsonify(build_judge_breakdown(phase))

@app.route('/api/events/<int:event_id>/results.csv')
@admin_required
def results_csv(event_id):
    get_or_raise(Event, event_id)
    phase = get_or_raise(Phase, get_requested_phase(event_id))
    results_data = compute_results(event_id, phase.id)
    shows = get_phase_shows(phase)

    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(['Rank', 'Contestant No.', 'Name'] + [show.name for show in shows] + ['Total Score'])
    for result in results_data:
        show_values = {entry['show_id']: entry['weighted'] for entry in result['show_scores']}
        writer.writerow(
            [result['rank'], result['contestant_number'], result['contestant_name']]
            + [f"{show_values.get(show.id, 0):.2f}" for show in shows]
            + [f"{result['total_score']:.2f}"]
        )

    response = make_response(output.getvalue())
    response.headers['Content-Type'] = 'text/csv'
    response.headers['Content-Disposition'] = f'attachment; filename=results_phase_{phase.id}.csv'
    return response

@app.route('/api/events/<int:event_id>/results.pdf')
@admin_required
def results_pdf(event_id):
    event = get_or_raise(Event, event_id)
    phase = get_or_raise(Phase, get_requested_phase(event_id))
    results_data = compute_results(event_id, phase.id)
    return build_results_pdf_response(event, phase, get_phase_shows(phase), results_data)

def build_results_pdf_response(event, phase, shows, results_data):
    """Build a PDF response for one phase's ranked results."""
    total_columns = 4 + len(shows)
    row_count = len(results_data)
    use_landscape = total_columns > 9
    dense_layout = total_columns > 9 or row_count > 10

    buffer = BytesIO()
    page_size = landscape(letter) if use_landscape else letter
    margin = 18 if dense_layout else 30
    doc = SimpleDocTemplate(buffer, pagesize=page_size, rightMargin=margin, leftMargin=margin, topMargin=margin, bottomMargin=margin)

    elements = []
    styles = getSampleStyleSheet()

    title_style = ParagraphStyle(
        'CustomTitle',
        parent=styles['Heading1'],
        fontSize=14 if dense_layout else 18,
        textColor=colors.HexColor('#880015'),
        spaceAfter=3 if dense_layout else 5,
        alignment=TA_CENTER,
        fontName='Helvetica-Bold'
    )
    elements.append(Paragraph(f"<b>{event.name.upper()} RESULTS</b>", title_style))
    elements.append(Spacer(1, 8 if dense_layout else 20))

    phase_style = ParagraphStyle(
        'PhaseHeader',
        parent=styles['Heading2'],
        fontSize=12 if dense_layout else 14,
        textColor=colors.black,
        spaceAfter=8 if dense_layout else 15,
        alignment=TA_CENTER,
        fontName='Helvetica-Bold'
    )
    elements.append(Paragraph(f"<b>{phase.name} ({phase.status.upper()})</b>", phase_style))

    header_row = ['Rank', 'Contestant No.', 'Name']
    for show in shows:
        header_row.append(f"{show.name}\n({show.weight:g}%)")
    header_row.append('Total Score')
    table_data = [header_row]

    for result in results_data:
        show_values = {entry['show_id']: entry['weighted'] for entry in result['show_scores']}
        row = [str(result['rank']), str(result['contestant_number']), result['contestant_name']]
        row.extend(f"{show_values.get(show.id, 0):.2f}" for show in shows)
        row.append(f"{result['total_score']:.2f}")
        table_data.append(row)

    header_font_size = 8 if total_columns > 10 else 9
    body_font_size = 7 if total_columns > 10 else 8
    if row_count > 15:
        body_font_size -= 1

    name_width = 2.2 * inch
    other_width = 0.9 * inch
    col_widths = [0.6 * inch, 1.0 * inch, name_width] + [other_width] * len(shows) + [other_width]

    table = Table(table_data, colWidths=col_widths, repeatRows=1)
    table.setStyle(TableStyle([
        ('GRID', (0, 0), (-1, -1), 0.5, colors.black),
        ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#f2f2f2')),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, 0), header_font_size),
        ('FONTSIZE', (0, 1), (-1, -1), body_font_size),
        ('ALIGN', (0, 0), (-1, -1), 'CENTER'),
        ('ALIGN', (2, 1), (2, -1), 'LEFT'),
        ('VALIGN', (0, 0), (-1, -1), 'MIDDLE')
    ]))
    elements.append(table)

    generated_style = ParagraphStyle('Generated', parent=styles['Normal'], fontSize=7, alignment=TA_CENTER)
    elements.append(Spacer(1, 12))
    elements.append(Paragraph(f"Generated {datetime.utcnow().strftime('%Y-%m-%d %H:%M')} UTC", generated_style))

    doc.build(elements)
    pdf = buffer.getvalue()
    buffer.close()

    response = make_response(pdf)
    response.headers['Content-Type'] = 'application/pdf'
    response.headers['Content-Disposition'] = f'attachment; filename=results_phase_{phase.id}.pdf'
    return response

@app.route('/api/events/<int:event_id>/advance-phase', methods=['POST'])
@admin_required
def advance_event_phase(event_id):
    outcome = advance_phase(event_id)
    return jsonify({
        'message': outcome['message'],
        'previous_phase': build_phase_payload(outcome['previous_phase']),
        'new_phase': build_phase_payload(outcome['new_phase']),
        'scores_cleared': outcome['scores_cleared']
    })

@app.route('/api/events/<int:event_id>/advance-contestants', methods=['POST'])
@admin_required
def advance_event_contestants(event_id):
    data = get_json_payload()
    selected = data.get('selected_contestant_ids')
    if selected is None:
        raise ValidationError('Missing required field: selected_contestant_ids.')
    if not isinstance(selected, list):
        raise ValidationError('selected_contestant_ids must be a list.')
    selected = [parse_int(value, 'contestant id') for value in selected]

    outcome = advance_contestants(event_id, selected)
    return jsonify({
        'message': outcome['message'],
        'advanced_count': outcome['advanced_count'],
        'eliminated_count': outcome['eliminated_count'],
        'next_phase': build_phase_payload(outcome['to_phase'])
    })

@app.route('/api/events/<int:event_id>/seed-first-phase', methods=['POST'])
@admin_required
def seed_event_first_phase(event_id):
    return jsonify(seed_first_phase(event_id))

@app.route('/api/events/<int:event_id>/restart', methods=['POST'])
@admin_required
def restart_event_phases(event_id):
    data = get_json_payload()
    return jsonify(restart_event(event_id, clear_scores=bool(data.get('clear_scores', False))))

@app.route('/api/admin/logs')
@admin_required
def admin_logs():
    params = request.args.to_dict()
    logs = build_log_query(params).order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(200).all()
    return jsonify([
        {
            'time': log.created_at.strftime('%Y-%m-%d %H:%M:%S'),
            'username': log.username,
            'action': log.action,
            'details': log.details,
            'ip_address': log.ip_address
        }
        for log in logs
    ])

@app.route('/api/admin/logs.csv')
@admin_required
def admin_logs_csv():
    params = request.args.to_dict()
    logs = build_log_query(params).order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).all()

    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(['Time', 'User', 'Action', 'Details', 'IP'])
    for log in logs:
        writer.writerow([
            log.created_at.strftime('%Y-%m-%d %H:%M:%S'),
            log.username,
            log.action,
            log.details or '',
            log.ip_address or ''
        ])

    response = make_response(output.getvalue())
    response.headers['Content-Type'] = 'text/csv'
    response.headers['Content-Disposition'] = 'attachment; filename=audit_logs.csv'
    return response

@app.cli.command('init-db')
def init_db_command():
    """Create tables and the default admin account."""
    db.create_all()
    ensure_default_admin()
    print('Database initialized.')

if __name__ == '__main__':
    with app.app_context():
        db.create_all()
        ensure_default_admin()
    socketio.run(app, debug=True)
