import sys
from datetime import timedelta
from pathlib import Path

import jwt
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config import JWT_SECRET
from services import auth_service, user_store
from time_utils import utc_now


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    monkeypatch.setattr(auth_service, 'BCRYPT_ROUNDS', 4)


def test_register_login_verify():
    reg = auth_service.register('Ada@Example.com', 'secret1', 'Ada')
    user = reg['user']
    assert user['email'] == 'ada@example.com'
    assert user['tier'] == 'free'
    assert 'password' not in user

    login = auth_service.login('ada@example.com', 'secret1')
    assert login['user']['id'] == user['id']
    me = auth_service.verify_token(login['token'])
    assert me['email'] == 'ada@example.com'
    assert 'password' not in me

    stored = user_store.get_user_record('ada@example.com')
    assert stored['password'].startswith('$2')
    assert stored['password'] != 'secret1'


@pytest.mark.parametrize('email,password,name,msg', [
    ('', 'secret1', 'A', 'required'),
    ('a@b.co', '123', 'A', 'at least 6'),
    ('not-an-email', 'secret1', 'A', 'Invalid email'),
])
def test_register_validation(email, password, name, msg):
    with pytest.raises(auth_service.AuthError, match=msg):
        auth_service.register(email, password, name)


def test_duplicate_registration():
    auth_service.register('a@b.co', 'secret1', 'A')
    with pytest.raises(auth_service.UserExistsError):
        auth_service.register('A@B.co', 'secret2', 'B')


def test_bad_credentials():
    auth_service.register('a@b.co', 'secret1', 'A')
    with pytest.raises(auth_service.AuthError, match='Invalid credentials'):
        auth_service.login('a@b.co', 'wrong-pass')
    with pytest.raises(auth_service.AuthError, match='Invalid credentials'):
        auth_service.login('nobody@b.co', 'secret1')


def test_token_failures():
    auth_service.register('a@b.co', 'secret1', 'A')
    with pytest.raises(auth_service.AuthError, match='No token'):
        auth_service.verify_token('')
    with pytest.raises(auth_service.AuthError, match='Invalid token'):
        auth_service.verify_token('garbage')
    expired = jwt.encode({'userId': 'x', 'email': 'a@b.co', 'exp': utc_now() - timedelta(seconds=5)},
                         JWT_SECRET, algorithm='HS256')
    with pytest.raises(auth_service.AuthError, match='expired'):
        auth_service.verify_token(expired)
    forged = jwt.encode({'userId': 'x', 'email': 'a@b.co'}, 'another-secret-another-secret-xx', algorithm='HS256')
    with pytest.raises(auth_service.AuthError, match='Invalid token'):
        auth_service.verify_token(forged)


def test_payment_token_carries_plan():
    user = auth_service.register('a@b.co', 'secret1', 'A')['user']
    token = auth_service.create_payment_token(user, 'pro')
    payload = jwt.decode(token, JWT_SECRET, algorithms=['HS256'])
    assert payload['plan'] == 'pro'
    assert payload['userId'] == user['id']


def test_user_store_updates():
    user = user_store.create_user('a@b.co', 'hash', 'A')
    assert user_store.get_user_by_id(user['id'])['email'] == 'a@b.co'
    assert user_store.get_user_by_stripe_customer('cus_1') is None

    user_store.set_stripe_customer('a@b.co', 'cus_1')
    assert user_store.get_user_by_stripe_customer('cus_1')['id'] == user['id']

    upgraded = user_store.update_user_tier('a@b.co', 'pro', 'active')
    assert (upgraded['tier'], upgraded['subscription_status']) == ('pro', 'active')
    assert user_store.update_user_tier('a@b.co', 'gold')['tier'] == 'free'

    # id, email and password cannot be overwritten through update_user
    user_store.update_user('a@b.co', {'id': 'evil', 'password': 'x', 'name': 'Ada'})
    rec = user_store.get_user_record('a@b.co')
    assert rec['id'] == user['id'] and rec['password'] == 'hash' and rec['name'] == 'Ada'

    user_store.increment_usage('a@b.co')
    bumped = user_store.increment_usage('a@b.co')
    assert bumped['usage']['daily'] == 2 and bumped['usage']['total'] == 2

    with pytest.raises(user_store.UserNotFound):
        user_store.update_user('ghost@b.co', {'name': 'x'})


def test_ids_are_unique_for_fast_signups(monkeypatch):
    monkeypatch.setattr(user_store.time, 'time', lambda: 1700000000.0)
    a = user_store.create_user('a@b.co', 'h', 'A')
    b = user_store.create_user('b@b.co', 'h', 'B')
    assert a['id'] != b['id']
