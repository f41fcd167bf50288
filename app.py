from flask import Flask, request, jsonify, send_file, send_from_directory, session, g, abort
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from datetime import datetime
from functools import wraps
from io import BytesIO
import logging
import math
import os
import secrets
import time
import pandas as pd
from dotenv import load_dotenv
from sqlalchemy import event, or_
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

import auth
import billing
import messaging

logger = logging.getLogger(__name__)

app = Flask(__name__)
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
load_dotenv(os.path.join(BASE_DIR, '.env'))

db_path = os.path.join(BASE_DIR, "gym.db")
# DATABASE_URL points at the hosted Postgres in production; local runs fall back to SQLite.
db_url = os.getenv('DATABASE_URL')
if db_url and db_url.startswith('postgres://'):
    db_url = db_url.replace('postgres://', 'postgresql://', 1)
app.config['SQLALCHEMY_DATABASE_URI'] = db_url or f"sqlite:///{db_path}"
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-change-me')
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
if os.getenv('FLASK_SECURE_COOKIES', '1') not in ('0', 'false', 'False'):
    app.config['SESSION_COOKIE_SECURE'] = True
app.config['UPLOAD_FOLDER'] = os.getenv('UPLOAD_FOLDER') or os.path.join(BASE_DIR, 'static', 'uploads')
db = SQLAlchemy(app)
Migrate(app, db)

ALLOWED_IMAGE_EXTS = {'.jpg', '.jpeg', '.png', '.webp'}
PHOTO_KINDS = ('profile', 'before', 'after')

GYM_ACTIVE = 'ACTIVE'
GYM_PAUSED = 'PAUSED'
PAYMENT_METHODS = ('ONLINE', 'OFFLINE')
DEFAULT_TERMS = 'Standard Gym Terms Applied.'
DEFAULT_PRICING = {
    'one_month': 1500,
    'two_months': 2800,
    'three_months': 4000,
    'six_months': 8000,
    'twelve_months': 15000,
}
MEMBER_STATUS_FILTERS = ('ALL', billing.ACTIVE, billing.EXPIRED, billing.EXPIRING_SOON)
WELCOME_WINDOW_DAYS = 7


@app.after_request
def set_security_headers(resp):
    resp.headers['X-Content-Type-Options'] = 'nosniff'
    resp.headers['X-Frame-Options'] = 'DENY'
    resp.headers['Referrer-Policy'] = 'no-referrer'
    return resp


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class Gym(db.Model):
    __tablename__ = 'gyms'
    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(120), nullable=False, index=True)
    address = db.Column(db.String(255), nullable=False, default='')
    city = db.Column(db.String(120), nullable=False, default='')
    id_proof = db.Column(db.String(120), nullable=False, default='')
    password_hash = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(10), nullable=False, default=GYM_ACTIVE)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.now)
    subscription_plan_days = db.Column(db.Integer, nullable=False, default=365)
    subscription_expiry = db.Column(db.DateTime, nullable=False)
    terms_and_conditions = db.Column(db.Text, nullable=False, default=DEFAULT_TERMS)
    pricing = db.Column(db.JSON, nullable=False, default=dict)
    subscription_due = db.Column(db.Float, nullable=False, default=100.0)
    last_payment_date = db.Column(db.DateTime, nullable=True)

    def set_subscription(self, start: datetime, plan_days: int) -> None:
        # start, duration and expiry always move together
        self.created_at = start
        self.subscription_plan_days = plan_days
        self.subscription_expiry = billing.calculate_expiry(start, plan_days)

    def price_table(self) -> billing.Pricing:
        return billing.Pricing.from_dict(self.pricing)

    def is_platform_expired(self, now: datetime | None = None) -> bool:
        return self.subscription_expiry < (now or datetime.now())

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'address': self.address,
            'city': self.city,
            'id_proof': self.id_proof,
            'status': self.status,
            'created_at': _iso(self.created_at),
            'subscription_plan_days': self.subscription_plan_days,
            'subscription_expiry': _iso(self.subscription_expiry),
            'platform_expired': self.is_platform_expired(),
            'terms_and_conditions': self.terms_and_conditions,
            'pricing': self.price_table().to_dict(),
            'subscription_due': self.subscription_due,
            'last_payment_date': _iso(self.last_payment_date),
        }


class Member(db.Model):
    __tablename__ = 'members'
    id = db.Column(db.String(64), primary_key=True)
    password_hash = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(120), nullable=False, index=True)
    phone = db.Column(db.String(50), index=True)
    join_date = db.Column(db.DateTime, nullable=False)
    plan_duration_days = db.Column(db.Integer, nullable=False, default=30)
    expiry_date = db.Column(db.DateTime, nullable=False, index=True)
    age = db.Column(db.Integer, nullable=True)
    weight = db.Column(db.Float, nullable=True)
    height = db.Column(db.Float, nullable=True)
    address = db.Column(db.String(255), nullable=True)
    amount_paid = db.Column(db.Float, nullable=True)
    profile_photo = db.Column(db.String(255), nullable=True)
    # No FK: removing a gym leaves its members in place.
    gym_id = db.Column(db.String(64), nullable=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    notes = db.Column(db.Text, nullable=True)
    transformation_photos = db.Column(db.JSON, nullable=False, default=dict)
    supplement_bills = db.Column(db.JSON, nullable=False, default=list)
    payment_history = db.Column(db.JSON, nullable=False, default=list)

    def status(self, now: datetime | None = None) -> str:
        return billing.member_status(self.expiry_date, now)

    def to_dict(self, now: datetime | None = None):
        now = now or datetime.now()
        return {
            'id': self.id,
            'name': self.name,
            'phone': self.phone,
            'age': self.age,
            'weight': self.weight,
            'height': self.height,
            'address': self.address,
            'join_date': _iso(self.join_date),
            'plan_duration_days': self.plan_duration_days,
            'expiry_date': _iso(self.expiry_date),
            'status': self.status(now),
            'days_left': billing.days_left(self.expiry_date, now),
            'amount_paid': self.amount_paid,
            'profile_photo': self.profile_photo,
            'gym_id': self.gym_id,
            'is_active': bool(self.is_active),
            'notes': self.notes,
            'transformation_photos': dict(self.transformation_photos or {}),
            'supplement_bills': list(self.supplement_bills or []),
            'payment_history': list(self.payment_history or []),
        }


class Transaction(db.Model):
    __tablename__ = 'transactions'
    id = db.Column(db.String(40), primary_key=True)
    gym_id = db.Column(db.String(64), nullable=False, index=True)
    member_id = db.Column(db.String(64), nullable=True, index=True)
    date = db.Column(db.DateTime, nullable=False, default=datetime.now, index=True)
    amount = db.Column(db.Float, nullable=False, default=0.0)
    method = db.Column(db.String(10), nullable=False, default='OFFLINE')
    recorded_by = db.Column(db.String(60), nullable=False, default='Manager')
    category = db.Column(db.String(20), nullable=False, index=True)
    details = db.Column(db.String(255), nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'gym_id': self.gym_id,
            'member_id': self.member_id,
            'date': _iso(self.date),
            'amount': self.amount,
            'method': self.method,
            'recorded_by': self.recorded_by,
            'category': self.category,
            'details': self.details,
        }


@event.listens_for(Transaction, 'before_update')
def _refuse_transaction_update(mapper, connection, target):
    raise ValueError('Transactions are append-only')


@event.listens_for(Transaction, 'before_delete')
def _refuse_transaction_delete(mapper, connection, target):
    raise ValueError('Transactions are append-only')


def _ensure_schema():
    db.create_all()


def _generate_record_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(2).upper()}"


def _generate_gym_id() -> str:
    candidate = f"GYM{int(time.time() * 1000) % 10000:04d}"
    while db.session.get(Gym, candidate) is not None:
        candidate = f"GYM{secrets.randbelow(10000):04d}"
    return candidate


def _persist(*records) -> None:
    """Add and commit records as one unit; nothing lands if the commit fails."""
    try:
        for rec in records:
            db.session.add(rec)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise


def _error(message: str, status: int):
    return jsonify({'ok': False, 'error': message}), status


def _parse_datetime(value, field: str, default: datetime | None = None) -> datetime | None:
    if value in (None, ''):
        return default
    try:
        parsed = datetime.fromisoformat(str(value).strip())
    except ValueError:
        raise ValueError(f'{field} must be an ISO date (YYYY-MM-DD)')
    return billing.to_local_naive(parsed)


def _parse_int(value, field: str, default: int | None = None) -> int | None:
    if value in (None, ''):
        return default
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f'{field} must be a whole number')
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        raise ValueError(f'{field} must be a whole number')


def _parse_float(value, field: str, default: float | None = None) -> float | None:
    if value in (None, ''):
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise ValueError(f'{field} must be numeric')
    if not math.isfinite(parsed):
        raise ValueError(f'{field} must be numeric')
    return parsed


def _parse_method(value) -> str:
    method = (value or 'OFFLINE').strip().upper()
    if method not in PAYMENT_METHODS:
        raise ValueError('method must be ONLINE or OFFLINE')
    return method


def _today() -> datetime:
    return datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)


@app.errorhandler(ValueError)
def handle_validation_error(exc):
    return _error(str(exc), 400)


@app.errorhandler(SQLAlchemyError)
def handle_storage_error(exc):
    db.session.rollback()
    logger.exception("Storage failure on %s %s", request.method, request.path)
    return _error('Storage is unavailable, nothing was saved. Please retry.', 503)


@app.errorhandler(HTTPException)
def handle_http_error(exc):
    if exc.code and exc.code < 400:
        return exc
    return _error(exc.description or exc.name, exc.code or 500)


@app.before_request
def bootstrap_once():
    if app.config.get('SCHEMA_READY'):
        return
    _ensure_schema()
    start_scheduler_once()
    app.config['SCHEMA_READY'] = True


def role_required(*roles):
    """Gate a view on the session principal's role.

    Loads the principal's gym into ``g.gym`` and, for members, the member
    record into ``g.member``. A session naming a record that no longer exists
    is cleared.
    """
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(*args, **kwargs):
            principal = auth.principal_from_session(session.get('auth'))
            if principal is None:
                session.clear()
                return _error('Login required', 401)
            if principal.role not in roles:
                return _error('Not allowed for this role', 403)
            g.principal = principal
            g.gym = None
            g.member = None
            if isinstance(principal, (auth.ManagerPrincipal, auth.MemberPrincipal)):
                g.gym = db.session.get(Gym, principal.gym_id)
                if g.gym is None:
                    session.clear()
                    return _error('Session expired, please log in again', 401)
            if isinstance(principal, auth.MemberPrincipal):
                g.member = db.session.get(Member, principal.member_id)
                if g.member is None or g.member.gym_id != g.gym.id:
                    session.clear()
                    return _error('Session expired, please log in again', 401)
            return view_func(*args, **kwargs)
        return wrapper
    return decorator


# ---------- Auth ----------

@app.route('/api/auth/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}
    role = (data.get('role') or auth.MANAGER).strip().upper()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''
    if role not in auth.ROLES:
        return _error('Unknown role', 400)

    if role == auth.SUPER_ADMIN:
        if not auth.check_super_admin(username, password):
            logger.warning("Rejected super admin login for %r", username)
            return _error('Invalid Super Admin credentials', 401)
        principal = auth.SuperAdminPrincipal()
        session.clear()
        session['auth'] = auth.principal_to_session(principal)
        logger.info("Super admin logged in")
        return jsonify({'ok': True, 'role': role, 'user': {'name': principal.name}})

    gym_id = (data.get('gym_id') or '').strip()
    if not gym_id:
        return _error('Gym ID is required', 400)
    gym = db.session.get(Gym, gym_id)
    if not gym:
        return _error('Gym ID not found', 404)
    if gym.status == GYM_PAUSED:
        return _error('This gym account is currently paused. Please contact support.', 403)
    if gym.is_platform_expired():
        return _error('Platform subscription expired. Please contact Super Admin.', 403)

    if role == auth.MANAGER:
        if not auth.verify_secret(password, gym.password_hash):
            logger.warning("Rejected manager login for gym %s", gym.id)
            return _error('Invalid Manager password', 401)
        principal = auth.ManagerPrincipal(gym_id=gym.id)
        user = gym.to_dict()
    else:
        member = None
        if username:
            member = Member.query.filter(
                Member.gym_id == gym.id,
                or_(Member.id == username, Member.phone == username),
            ).first()
        if not member or not auth.verify_secret(password, member.password_hash):
            logger.warning("Rejected member login %r for gym %s", username, gym.id)
            return _error('Invalid Member credentials', 401)
        principal = auth.MemberPrincipal(gym_id=gym.id, member_id=member.id)
        user = member.to_dict()

    session.clear()
    session['auth'] = auth.principal_to_session(principal)
    logger.info("%s logged in to gym %s", role, gym.id)
    return jsonify({'ok': True, 'role': role, 'user': user})


@app.route('/api/auth/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'ok': True})


@app.route('/api/auth/me')
@role_required(*auth.ROLES)
def whoami():
    p = g.principal
    if isinstance(p, auth.SuperAdminPrincipal):
        user = {'name': p.name}
    elif isinstance(p, auth.ManagerPrincipal):
        user = g.gym.to_dict()
    else:
        user = g.member.to_dict()
    return jsonify({'ok': True, 'role': p.role, 'user': user})


# ---------- Super Admin: gyms ----------

def _apply_gym_payload(gym: Gym, data: dict, creating: bool) -> None:
    name = (data.get('name') or '').strip()
    if name:
        gym.name = name
    elif creating:
        raise ValueError('name is required')
    for attr in ('address', 'city', 'id_proof'):
        if attr in data or creating:
            setattr(gym, attr, (data.get(attr) or '').strip())
    password = data.get('password') or ''
    if password:
        gym.password_hash = auth.hash_secret(password)
    elif creating:
        raise ValueError('password is required')
    if 'pricing' in data or creating:
        gym.pricing = billing.Pricing.from_dict(data.get('pricing') or DEFAULT_PRICING).to_dict()
    if 'subscription_due' in data:
        gym.subscription_due = _parse_float(data.get('subscription_due'), 'subscription_due', 0.0)
    start = _parse_datetime(data.get('join_date'), 'join_date', None if not creating else _today())
    plan_days = _parse_int(data.get('plan_days'), 'plan_days', None if not creating else 365)
    if plan_days is not None and plan_days < 0:
        raise ValueError('plan_days must be zero or positive')
    if creating or start is not None or plan_days is not None:
        gym.set_subscription(start or gym.created_at, plan_days if plan_days is not None else gym.subscription_plan_days)


@app.route('/api/admin/gyms', methods=['GET'])
@role_required(auth.SUPER_ADMIN)
def list_gyms():
    gyms = Gym.query.order_by(Gym.created_at.desc()).all()
    stats = {
        'total': len(gyms),
        'active': sum(1 for gy in gyms if gy.status == GYM_ACTIVE),
        'paused': sum(1 for gy in gyms if gy.status == GYM_PAUSED),
        'due': sum(gy.subscription_due or 0 for gy in gyms),
    }
    q = (request.args.get('search') or '').strip().lower()
    if q:
        gyms = [gy for gy in gyms if q in gy.name.lower() or q in gy.id.lower() or q in (gy.city or '').lower()]
    return jsonify({'ok': True, 'stats': stats, 'gyms': [gy.to_dict() for gy in gyms]})


@app.route('/api/admin/gyms', methods=['POST'])
@role_required(auth.SUPER_ADMIN)
def create_gym():
    data = request.get_json(silent=True) or {}
    gym_id = (data.get('id') or '').strip() or _generate_gym_id()
    if db.session.get(Gym, gym_id) is not None:
        return _error(f'Gym ID {gym_id} already exists', 409)
    gym = Gym(id=gym_id, status=GYM_ACTIVE, terms_and_conditions=DEFAULT_TERMS,
              subscription_due=100.0, last_payment_date=datetime.now())
    _apply_gym_payload(gym, data, creating=True)
    _persist(gym)
    logger.info("Created gym %s (%s)", gym.id, gym.name)
    return jsonify({'ok': True, 'gym': gym.to_dict()}), 201


@app.route('/api/admin/gyms/<gym_id>', methods=['PUT'])
@role_required(auth.SUPER_ADMIN)
def update_gym(gym_id):
    gym = db.get_or_404(Gym, gym_id, description='Gym not found')
    _apply_gym_payload(gym, request.get_json(silent=True) or {}, creating=False)
    _persist(gym)
    return jsonify({'ok': True, 'gym': gym.to_dict()})


@app.route('/api/admin/gyms/<gym_id>/toggle-status', methods=['POST'])
@role_required(auth.SUPER_ADMIN)
def toggle_gym_status(gym_id):
    gym = db.get_or_404(Gym, gym_id, description='Gym not found')
    gym.status = GYM_PAUSED if gym.status == GYM_ACTIVE else GYM_ACTIVE
    _persist(gym)
    logger.info("Gym %s is now %s", gym.id, gym.status)
    return jsonify({'ok': True, 'gym': gym.to_dict()})


@app.route('/api/admin/gyms/<gym_id>', methods=['DELETE'])
@role_required(auth.SUPER_ADMIN)
def delete_gym(gym_id):
    gym = db.get_or_404(Gym, gym_id, description='Gym not found')
    # no cascade: members and transactions of the gym stay in place
    db.session.delete(gym)
    db.session.commit()
    logger.info("Deleted gym %s", gym_id)
    return jsonify({'ok': True})


@app.route('/api/admin/reminders/run-now', methods=['POST'])
@role_required(auth.SUPER_ADMIN)
def reminders_run_now():
    return jsonify({'ok': True, **send_expiry_reminders_job()})


# ---------- Manager: gym and members ----------

def _gym_member_or_404(member_id: str) -> Member:
    m = db.session.get(Member, member_id)
    if m is None or m.gym_id != g.gym.id:
        abort(404, description='Member not found')
    return m


def _filter_members(members, search: str = '', status: str = 'ALL', duration: int | None = None,
                    now: datetime | None = None) -> list:
    now = now or datetime.now()
    search = (search or '').strip().lower()
    result = []
    for m in members:
        current = m.status(now)
        if search and search not in (m.name or '').lower() and search not in m.id.lower():
            continue
        if status == billing.ACTIVE and current not in (billing.ACTIVE, billing.EXPIRING_SOON):
            continue
        if status in (billing.EXPIRED, billing.EXPIRING_SOON) and current != status:
            continue
        if duration is not None and m.plan_duration_days != duration:
            continue
        result.append(m)
    return result


@app.route('/api/gym', methods=['GET'])
@role_required(auth.MANAGER)
def get_gym():
    return jsonify({'ok': True, 'gym': g.gym.to_dict()})


@app.route('/api/gym/terms', methods=['PUT'])
@role_required(auth.MANAGER)
def update_gym_terms():
    data = request.get_json(silent=True) or {}
    terms = data.get('terms')
    if not isinstance(terms, str):
        return _error('terms must be text', 400)
    g.gym.terms_and_conditions = terms
    _persist(g.gym)
    return jsonify({'ok': True, 'gym': g.gym.to_dict()})


@app.route('/api/gym/members', methods=['GET'])
@role_required(auth.MANAGER)
def list_members():
    status = (request.args.get('status') or 'ALL').strip().upper()
    if status not in MEMBER_STATUS_FILTERS:
        return _error(f"status must be one of {', '.join(MEMBER_STATUS_FILTERS)}", 400)
    duration = request.args.get('duration')
    duration = None if (duration or 'ALL').upper() == 'ALL' else _parse_int(duration, 'duration')
    members = Member.query.filter_by(gym_id=g.gym.id).order_by(Member.join_date.desc()).all()
    now = datetime.now()
    members = _filter_members(members, request.args.get('search', ''), status, duration, now)
    return jsonify({'ok': True, 'members': [m.to_dict(now) for m in members]})


@app.route('/api/gym/members', methods=['POST'])
@role_required(auth.MANAGER)
def add_member():
    data = request.get_json(silent=True) or {}
    name = (data.get('name') or '').strip()
    phone = (data.get('phone') or '').strip()
    if not (name and phone):
        return _error('name and phone required', 400)
    member_id = (data.get('id') or '').strip() or phone
    if db.session.get(Member, member_id) is not None:
        return _error(f'Member ID {member_id} already exists', 409)
    join_date = _parse_datetime(data.get('join_date'), 'join_date', _today())
    plan_days = _parse_int(data.get('plan_duration_days'), 'plan_duration_days', 30)
    if plan_days <= 0:
        return _error('plan_duration_days must be positive', 400)
    amount = _parse_float(data.get('amount_paid'), 'amount_paid')
    if amount is not None and amount < 0:
        return _error('amount_paid cannot be negative', 400)
    if amount is None:
        amount = billing.resolve_price(g.gym.price_table(), plan_days)
    member = Member(
        id=member_id,
        password_hash=auth.hash_secret(data.get('password') or auth.DEFAULT_MEMBER_SECRET),
        name=name,
        phone=phone,
        join_date=join_date,
        plan_duration_days=plan_days,
        expiry_date=billing.calculate_expiry(join_date, plan_days),
        age=_parse_int(data.get('age'), 'age'),
        weight=_parse_float(data.get('weight'), 'weight'),
        height=_parse_float(data.get('height'), 'height'),
        address=(data.get('address') or '').strip() or None,
        amount_paid=amount,
        gym_id=g.gym.id,
        is_active=True,
        notes=(data.get('notes') or '').strip() or None,
        transformation_photos={},
        supplement_bills=[],
        payment_history=[],
    )
    tx = Transaction(
        id=_generate_record_id('TX'),
        gym_id=g.gym.id,
        member_id=member.id,
        date=join_date,
        amount=amount,
        method=_parse_method(data.get('method')),
        recorded_by='Manager',
        category=billing.MEMBERSHIP,
        details=f"Initial joining for {name}",
    )
    _persist(member, tx)
    logger.info("Registered member %s in gym %s, initial payment %s", member.id, g.gym.id, amount)
    return jsonify({'ok': True, 'member': member.to_dict(), 'transaction': tx.to_dict()}), 201


@app.route('/api/gym/members/<member_id>', methods=['GET'])
@role_required(auth.MANAGER)
def get_member(member_id):
    m = _gym_member_or_404(member_id)
    txs = (Transaction.query.filter_by(gym_id=g.gym.id, member_id=m.id)
           .order_by(Transaction.date.desc()).all())
    return jsonify({'ok': True, 'member': m.to_dict(), 'transactions': [t.to_dict() for t in txs]})


@app.route('/api/gym/members/<member_id>', methods=['PUT'])
@role_required(auth.MANAGER)
def update_member(member_id):
    m = _gym_member_or_404(member_id)
    data = request.get_json(silent=True) or {}
    changed = []
    name = (data.get('name') or '').strip()
    if name:
        m.name = name
        changed.append('name')
    for attr, parse in (('age', _parse_int), ('weight', _parse_float), ('height', _parse_float)):
        if attr in data:
            setattr(m, attr, parse(data.get(attr), attr))
            changed.append(attr)
    for attr in ('address', 'notes', 'profile_photo'):
        if attr in data:
            setattr(m, attr, (data.get(attr) or '').strip() or None)
            changed.append(attr)
    if 'is_active' in data:
        m.is_active = bool(data.get('is_active'))
        changed.append('is_active')
    if data.get('password'):
        m.password_hash = auth.hash_secret(data['password'])
        changed.append('password')
    if changed:
        _persist(m)
    return jsonify({'ok': True, 'member': m.to_dict(), 'changed': changed})


def _member_photo_paths(member_id: str):
    stem = f"member_{secure_filename(member_id)}"
    folder = app.config['UPLOAD_FOLDER']
    for kind in PHOTO_KINDS:
        for ext in ALLOWED_IMAGE_EXTS:
            yield os.path.join(folder, f"{stem}_{kind}{ext}")


@app.route('/api/gym/members/<member_id>', methods=['DELETE'])
@role_required(auth.MANAGER)
def delete_member(member_id):
    m = _gym_member_or_404(member_id)
    db.session.delete(m)
    db.session.commit()
    for pth in _member_photo_paths(member_id):
        if os.path.exists(pth):
            os.remove(pth)
    logger.info("Deleted member %s from gym %s", member_id, g.gym.id)
    return jsonify({'ok': True})


def _apply_extension(member: Member, gym: Gym, days: int, override_amount=None,
                     method: str = 'OFFLINE', recorded_by: str = 'Manager') -> Transaction:
    now = datetime.now()
    ext = billing.plan_extension(member.expiry_date, days, gym.price_table(), override_amount, now=now)
    tx = Transaction(
        id=_generate_record_id('TX'),
        gym_id=gym.id,
        member_id=member.id,
        date=now,
        amount=ext.amount,
        method=method,
        recorded_by=recorded_by,
        category=billing.MEMBERSHIP,
        details=f"Extension: {ext.days} days for {member.name}",
    )
    member.expiry_date = ext.new_expiry
    member.plan_duration_days = ext.days
    _persist(tx, member)
    logger.info("Extended member %s by %s days to %s, charged %s", member.id, ext.days, ext.new_expiry, ext.amount)
    return tx


@app.route('/api/gym/members/<member_id>/extend', methods=['POST'])
@role_required(auth.MANAGER)
def extend_member(member_id):
    m = _gym_member_or_404(member_id)
    data = request.get_json(silent=True) or {}
    days = _parse_int(data.get('days'), 'days')
    if days is None:
        return _error('days required', 400)
    amount = _parse_float(data.get('amount'), 'amount')
    tx = _apply_extension(m, g.gym, days, amount, method=_parse_method(data.get('method')))
    return jsonify({'ok': True, 'member': m.to_dict(), 'transaction': tx.to_dict()})


def _apply_supplement_bill(member: Member, gym: Gym, item_name: str, qty: int, days: int, amount: float,
                           method: str = 'OFFLINE', recorded_by: str = 'Manager') -> tuple[dict, Transaction]:
    now = datetime.now()
    bill = {
        'id': _generate_record_id('SUP'),
        'item_name': item_name,
        'qty': qty,
        'days': days,
        'amount': amount,
        'date': now.isoformat(),
    }
    tx = Transaction(
        id=_generate_record_id('TX'),
        gym_id=gym.id,
        member_id=member.id,
        date=now,
        amount=amount,
        method=method,
        recorded_by=recorded_by,
        category=billing.SUPPLEMENT,
        details=f"Supplement: {item_name} x {qty} for {member.name}",
    )
    # reassign so the JSON column is flagged dirty
    member.supplement_bills = list(member.supplement_bills or []) + [bill]
    _persist(tx, member)
    logger.info("Billed supplement %r x %s to member %s for %s", item_name, qty, member.id, amount)
    return bill, tx


@app.route('/api/gym/members/<member_id>/supplements', methods=['POST'])
@role_required(auth.MANAGER)
def add_supplement_bill(member_id):
    m = _gym_member_or_404(member_id)
    data = request.get_json(silent=True) or {}
    item_name = (data.get('item_name') or '').strip()
    if not item_name:
        return _error('item_name required', 400)
    qty = _parse_int(data.get('qty'), 'qty', 1)
    if qty < 1:
        return _error('qty must be at least 1', 400)
    amount = _parse_float(data.get('amount'), 'amount')
    if amount is None or amount < 0:
        return _error('amount required', 400)
    days = _parse_int(data.get('days'), 'days', 0)
    bill, tx = _apply_supplement_bill(m, g.gym, item_name, qty, days, amount,
                                      method=_parse_method(data.get('method')))
    return jsonify({'ok': True, 'bill': bill, 'member': m.to_dict(), 'transaction': tx.to_dict()}), 201


def _save_member_image(member_id: str, kind: str, storage) -> tuple[bool, str]:
    filename = storage.filename or ''
    ext = os.path.splitext(filename)[1].lower()
    if ext not in ALLOWED_IMAGE_EXTS:
        return False, 'Only JPG, JPEG, PNG, WEBP images are allowed'
    folder = app.config['UPLOAD_FOLDER']
    os.makedirs(folder, exist_ok=True)
    stem = f"member_{secure_filename(member_id)}_{kind}"
    for e in ALLOWED_IMAGE_EXTS:
        existing = os.path.join(folder, f"{stem}{e}")
        if os.path.exists(existing):
            os.remove(existing)
    storage.save(os.path.join(folder, f"{stem}{ext}"))
    return True, f"/uploads/{stem}{ext}"


@app.route('/api/gym/members/<member_id>/photos/<kind>', methods=['POST'])
@role_required(auth.MANAGER)
def upload_member_photo(member_id, kind):
    m = _gym_member_or_404(member_id)
    if kind not in PHOTO_KINDS:
        return _error(f"photo kind must be one of {', '.join(PHOTO_KINDS)}", 400)
    if 'photo' not in request.files:
        return _error("No photo file provided (field name 'photo')", 400)
    ok, url = _save_member_image(m.id, kind, request.files['photo'])
    if not ok:
        return _error(url, 400)
    if kind == 'profile':
        m.profile_photo = url
    else:
        m.transformation_photos = {**(m.transformation_photos or {}), kind: url}
    _persist(m)
    return jsonify({'ok': True, 'url': url, 'member': m.to_dict()})


@app.route('/uploads/<path:filename>')
def uploaded_file(filename):
    return send_from_directory(app.config['UPLOAD_FOLDER'], filename)


def _outreach_kind(member: Member, now: datetime) -> str:
    if member.status(now) in (billing.EXPIRED, billing.EXPIRING_SOON):
        return messaging.RENEWAL_REMINDER
    if (now - member.join_date).total_seconds() < WELCOME_WINDOW_DAYS * billing.SECONDS_PER_DAY:
        return messaging.WELCOME
    return messaging.RETENTION_OFFER


@app.route('/api/gym/members/<member_id>/message', methods=['POST'])
@role_required(auth.MANAGER)
def message_member(member_id):
    m = _gym_member_or_404(member_id)
    data = request.get_json(silent=True) or {}
    kind = _outreach_kind(m, datetime.now())
    text = messaging.draft_message(kind, m.name, m.expiry_date)
    result = {
        'ok': True,
        'kind': kind,
        'message': text,
        'whatsapp_url': messaging.whatsapp_link(m.phone or '', text),
    }
    if data.get('send'):
        phone = messaging.normalize_phone(m.phone or '')
        if not phone:
            return _error('member has no phone', 400)
        sent, res = messaging.send_whatsapp_text(phone, text)
        result['sent'] = sent
        result['send_result'] = res
    return jsonify(result)


# ---------- Manager: revenue ----------

def transactions_dataframe(transactions) -> pd.DataFrame:
    rows = [{
        'Date': t.date,
        'Amount': t.amount,
        'Category': t.category,
        'Method': t.method,
        'Recorded By': t.recorded_by,
        'Member': t.member_id or '',
        'Details': t.details or '',
    } for t in transactions]
    return pd.DataFrame(rows, columns=['Date', 'Amount', 'Category', 'Method', 'Recorded By', 'Member', 'Details'])


def gym_revenue(gym_id: str, window: billing.RevenueWindow, now: datetime | None = None) -> billing.RevenueSummary:
    txs = Transaction.query.filter_by(gym_id=gym_id).all()
    summary = billing.aggregate_revenue(txs, window, now)
    summary.transactions.sort(key=lambda t: t.date, reverse=True)
    return summary


@app.route('/api/gym/revenue', methods=['GET'])
@role_required(auth.MANAGER)
def revenue_summary():
    window = billing.RevenueWindow.from_args(request.args)
    summary = gym_revenue(g.gym.id, window)
    return jsonify({
        'ok': True,
        'window': window.kind,
        'total': summary.total,
        'membership': summary.membership,
        'supplement': summary.supplement,
        'transactions': [t.to_dict() for t in summary.transactions],
    })


@app.route('/api/gym/revenue/export', methods=['GET'])
@role_required(auth.MANAGER)
def export_revenue():
    window = billing.RevenueWindow.from_args(request.args)
    summary = gym_revenue(g.gym.id, window)
    buf = BytesIO()
    transactions_dataframe(summary.transactions).to_excel(buf, index=False)
    buf.seek(0)
    return send_file(
        buf,
        as_attachment=True,
        download_name=f"{g.gym.id}_revenue_{window.kind.lower()}.xlsx",
        mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    )


# ---------- Member self-service ----------

@app.route('/api/me/dashboard', methods=['GET'])
@role_required(auth.MEMBER)
def member_dashboard():
    m = g.member
    now = datetime.now()
    txs = (Transaction.query.filter_by(gym_id=g.gym.id, member_id=m.id)
           .order_by(Transaction.date.desc()).all())
    bills = sorted(m.supplement_bills or [], key=lambda b: b.get('date') or '', reverse=True)
    days_active = billing.days_since(m.join_date, now)
    return jsonify({
        'ok': True,
        'member': m.to_dict(now),
        'gym': {'id': g.gym.id, 'name': g.gym.name, 'terms_and_conditions': g.gym.terms_and_conditions},
        'transactions': [t.to_dict() for t in txs],
        'supplement_bills': bills,
        'tip': messaging.draft_tip(days_active),
    })


# ---------- Scheduled reminders ----------

def send_expiry_reminders_job() -> dict:
    """Send a renewal reminder to every expiring-soon member of active gyms."""
    sent, failed = 0, 0
    with app.app_context():
        now = datetime.now()
        for gym in Gym.query.filter_by(status=GYM_ACTIVE).all():
            for m in Member.query.filter_by(gym_id=gym.id).all():
                if m.status(now) != billing.EXPIRING_SOON:
                    continue
                phone = messaging.normalize_phone(m.phone or '')
                if not phone:
                    failed += 1
                    continue
                text = messaging.draft_message(messaging.RENEWAL_REMINDER, m.name, m.expiry_date)
                ok, res = messaging.send_whatsapp_text(phone, text)
                if ok:
                    sent += 1
                else:
                    failed += 1
                    logger.warning("Reminder to member %s failed: %s", m.id, res)
    logger.info("Expiry reminders: %s sent, %s failed", sent, failed)
    return {'sent': sent, 'failed': failed}


def _scheduled_reminders():
    try:
        send_expiry_reminders_job()
    except Exception:
        logger.exception("Scheduled expiry reminders failed")


def start_scheduler_once():
    if app.config.get('SCHEDULER_STARTED'):
        return
    enabled = os.getenv('SCHEDULE_REMINDERS_ENABLED', '0') not in ('0', 'false', 'False', '')
    if not enabled:
        app.config['SCHEDULER_STARTED'] = True
        return
    hour = int(os.getenv('SCHEDULE_TIME_HH', '9'))
    minute = int(os.getenv('SCHEDULE_TIME_MM', '0'))
    # Avoid duplicate on Flask reloader
    if os.environ.get('WERKZEUG_RUN_MAIN') == 'true' or not app.debug:
        scheduler = BackgroundScheduler()
        scheduler.add_job(_scheduled_reminders, CronTrigger(hour=hour, minute=minute))
        scheduler.start()
    app.config['SCHEDULER_STARTED'] = True


if __name__ == '__main__':
    logging.basicConfig(level=os.getenv('LOG_LEVEL', 'INFO'))
    with app.app_context():
        _ensure_schema()
    debug_mode = os.getenv('FLASK_DEBUG', '0') == '1'
    app.run(debug=debug_mode, host='0.0.0.0', port=5000)
