import os
from datetime import datetime, timedelta

os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['FLASK_SECURE_COOKIES'] = '0'
os.environ['SECRET_KEY'] = 'test-secret'

import pytest

import auth
from app import app, db, Gym, Member, DEFAULT_PRICING, DEFAULT_TERMS


@pytest.fixture(autouse=True)
def no_external_services(monkeypatch):
    for var in ('GEMINI_API_KEY', 'WHATSAPP_TOKEN', 'WHATSAPP_PHONE_NUMBER_ID', 'SCHEDULE_REMINDERS_ENABLED'):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv('SUPER_ADMIN_USERNAME', 'super')
    monkeypatch.setenv('SUPER_ADMIN_PASSWORD', 'admin')


@pytest.fixture()
def client(tmp_path):
    app.config['TESTING'] = True
    app.config['UPLOAD_FOLDER'] = str(tmp_path / 'uploads')
    app.config['SCHEMA_READY'] = True
    app.config['SCHEDULER_STARTED'] = True
    with app.app_context():
        db.drop_all()
        db.create_all()
    yield app.test_client()
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def make_gym(client):
    def _make(gym_id='GYM0001', status='ACTIVE', password='gympass', start=None, plan_days=365,
              name='Iron Temple', city='Pune', due=100.0):
        with app.app_context():
            gy = Gym(id=gym_id, name=name, address='12 MG Road', city=city, id_proof='GST-1',
                     password_hash=auth.hash_secret(password), status=status,
                     terms_and_conditions=DEFAULT_TERMS, pricing=dict(DEFAULT_PRICING),
                     subscription_due=due)
            gy.set_subscription(start or datetime.now() - timedelta(days=10), plan_days)
            db.session.add(gy)
            db.session.commit()
        return gym_id
    return _make


@pytest.fixture()
def make_member(client):
    def _make(gym_id, member_id, name='Asha', joined_days_ago=0, plan_days=30,
              phone='9876500000', password=auth.DEFAULT_MEMBER_SECRET):
        join = datetime.now() - timedelta(days=joined_days_ago)
        with app.app_context():
            m = Member(id=member_id, password_hash=auth.hash_secret(password), name=name, phone=phone,
                       join_date=join, plan_duration_days=plan_days,
                       expiry_date=join + timedelta(days=plan_days), gym_id=gym_id,
                       transformation_photos={}, supplement_bills=[], payment_history=[])
            db.session.add(m)
            db.session.commit()
        return member_id
    return _make


@pytest.fixture()
def login_as(client):
    def _login(role, gym_id=None, member_id=None):
        payload = {'role': role, 'gym_id': gym_id, 'member_id': member_id}
        with client.session_transaction() as sess:
            sess['auth'] = {k: v for k, v in payload.items() if v}
    return _login


@pytest.fixture()
def manager(client, make_gym, login_as):
    gym_id = make_gym()
    login_as(auth.MANAGER, gym_id=gym_id)
    return client


@pytest.fixture()
def admin(client, login_as):
    login_as(auth.SUPER_ADMIN)
    return client
