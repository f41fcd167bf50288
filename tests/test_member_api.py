from app import app, db, Member
import auth
import messaging


def test_member_dashboard(client, make_gym, make_member, login_as):
    make_gym()
    make_member('GYM0001', 'M-1', joined_days_ago=3, plan_days=30)
    login_as(auth.MANAGER, gym_id='GYM0001')
    client.post('/api/gym/members/M-1/supplements', json={'item_name': 'Whey', 'amount': 2400})
    client.post('/api/gym/members/M-1/extend', json={'days': 30})
    client.post('/api/gym/members/M-1/supplements', json={'item_name': 'Bar', 'amount': 50})
    login_as(auth.MEMBER, gym_id='GYM0001', member_id='M-1')

    res = client.get('/api/me/dashboard')
    assert res.status_code == 200
    body = res.get_json()
    assert body['member']['id'] == 'M-1'
    assert body['member']['status'] == 'ACTIVE'
    assert body['member']['days_left'] == 57
    assert body['gym'] == {'id': 'GYM0001', 'name': 'Iron Temple',
                           'terms_and_conditions': 'Standard Gym Terms Applied.'}
    assert [t['category'] for t in body['transactions']] == ['SUPPLEMENT', 'MEMBERSHIP', 'SUPPLEMENT']
    assert [b['item_name'] for b in body['supplement_bills']] == ['Bar', 'Whey']
    assert body['tip'] == messaging.FALLBACK_TIP


def test_dashboard_tip_uses_days_since_joining(client, make_gym, make_member, login_as, monkeypatch):
    make_gym()
    make_member('GYM0001', 'M-1', joined_days_ago=3)
    login_as(auth.MEMBER, gym_id='GYM0001', member_id='M-1')
    seen = []
    monkeypatch.setattr(messaging, 'draft_tip', lambda days: seen.append(days) or 'Sleep more.')
    assert client.get('/api/me/dashboard').get_json()['tip'] == 'Sleep more.'
    # partial days count as a whole day
    assert seen == [4]


def test_member_cannot_use_manager_routes(client, make_gym, make_member, login_as):
    make_gym()
    make_member('GYM0001', 'M-1')
    login_as(auth.MEMBER, gym_id='GYM0001', member_id='M-1')
    assert client.get('/api/gym/members').status_code == 403
    assert client.post('/api/gym/members/M-1/extend', json={'days': 30}).status_code == 403


def test_removed_member_session_is_dropped(client, make_gym, make_member, login_as):
    make_gym()
    make_member('GYM0001', 'M-1')
    login_as(auth.MEMBER, gym_id='GYM0001', member_id='M-1')
    with app.app_context():
        db.session.delete(db.session.get(Member, 'M-1'))
        db.session.commit()
    assert client.get('/api/me/dashboard').status_code == 401


def test_member_session_bound_to_own_gym(client, make_gym, make_member, login_as):
    make_gym('GYM0001')
    make_gym('GYM0002')
    make_member('GYM0002', 'M-1')
    login_as(auth.MEMBER, gym_id='GYM0001', member_id='M-1')
    assert client.get('/api/me/dashboard').status_code == 401
