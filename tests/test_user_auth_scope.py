from datetime import timedelta

import pytest

from taskboard import config
from taskboard.auth import authenticate_user, create_access_token, create_user

pytestmark = pytest.mark.asyncio


async def test_register_then_login(anon_client):
    r = await anon_client.post('/auth/register', json={'username': 'carol', 'password': 'secret'})
    assert r.status_code == 200
    assert r.json()['username'] == 'carol'
    assert r.json()['is_admin'] is False

    r = await anon_client.post('/auth/token', json={'username': 'carol', 'password': 'secret'})
    assert r.status_code == 200
    token = r.json()['access_token']
    assert r.json()['token_type'] == 'bearer'

    r = await anon_client.get('/tasks', headers={'Authorization': f'Bearer {token}'})
    assert r.status_code == 200
    assert r.json() == {'tasks': []}


async def test_register_duplicate_username(anon_client, user):
    r = await anon_client.post('/auth/register', json={'username': 'testuser', 'password': 'x'})
    assert r.status_code == 400


async def test_register_requires_username_and_password(anon_client):
    r = await anon_client.post('/auth/register', json={'username': '   ', 'password': 'x'})
    assert r.status_code == 400
    r = await anon_client.post('/auth/register', json={'username': 'dave', 'password': ''})
    assert r.status_code == 400


async def test_register_disabled(anon_client, monkeypatch):
    monkeypatch.setattr(config, 'ALLOW_REGISTRATION', False)
    r = await anon_client.post('/auth/register', json={'username': 'erin', 'password': 'x'})
    assert r.status_code == 403


async def test_login_with_wrong_password(anon_client, user):
    r = await anon_client.post('/auth/token', json={'username': 'testuser', 'password': 'nope'})
    assert r.status_code == 401
    assert await authenticate_user('testuser', 'nope') is None
    assert await authenticate_user('ghost', 'testpass') is None
    assert (await authenticate_user('testuser', 'testpass')).id == user.id


async def test_create_user_rejects_duplicates(make_user):
    await make_user('frank')
    with pytest.raises(ValueError):
        await create_user('frank', 'pw')


async def test_expired_token_is_rejected(anon_client, user):
    token = create_access_token(data={'sub': user.username}, expires_delta=timedelta(minutes=-5))
    r = await anon_client.get('/tasks', headers={'Authorization': f'Bearer {token}'})
    assert r.status_code == 401


async def test_token_for_unknown_user_is_rejected(anon_client):
    token = create_access_token(data={'sub': 'nobody'})
    r = await anon_client.get('/tasks', headers={'Authorization': f'Bearer {token}'})
    assert r.status_code == 401


async def test_token_without_subject_is_rejected(anon_client):
    token = create_access_token(data={'role': 'admin'})
    r = await anon_client.get('/stats/daily', headers={'Authorization': f'Bearer {token}'})
    assert r.status_code == 401


async def test_admin_sees_every_template_and_can_update_any(admin_client, user, add_task, frozen_now):
    t = await add_task(user.id, 'Shared', is_recurring=True, recurrence_rule='DAILY')

    r = await admin_client.get('/recurring')
    assert [row['title'] for row in r.json()['recurring_tasks']] == ['Shared']

    r = await admin_client.post('/recurring/update-rule', json={'taskId': t.id, 'recurrenceRule': 'WEEKLY'})
    assert r.status_code == 200
    assert r.json()['task']['recurrence_rule'] == 'WEEKLY'


async def test_me_returns_the_caller(client, user):
    r = await client.get('/auth/me')
    assert r.status_code == 200
    me = r.json()['user']
    assert me['id'] == user.id
    assert me['username'] == 'testuser'
    assert me['role'] == 'user'
    assert me['is_disabled'] is False


async def test_me_for_admin_and_anonymous(admin_client, anon_client):
    r = await admin_client.get('/auth/me')
    assert r.json()['user']['role'] == 'admin'
    r = await anon_client.get('/auth/me')
    assert r.status_code == 401
