from datetime import timedelta

import pytest

pytestmark = pytest.mark.asyncio


async def test_generate_requires_admin(client, admin_client, frozen_now):
    r = await client.post('/recurring/generate')
    assert r.status_code == 403

    r = await admin_client.post('/recurring/generate')
    assert r.status_code == 200
    assert r.json() == {'success': True, 'generated_count': 0, 'tasks': []}


async def test_generate_requires_authentication(anon_client):
    r = await anon_client.post('/recurring/generate')
    assert r.status_code == 401


async def test_system_wide_generation_end_to_end(client, admin_client, user, add_task, frozen_now):
    yesterday = frozen_now - timedelta(days=1)
    await add_task(user.id, 'Daily Standup', deadline=yesterday, is_recurring=True, recurrence_rule='DAILY')

    r = await admin_client.post('/recurring/generate')
    assert r.status_code == 200
    j = r.json()
    assert j['success'] is True
    assert j['generated_count'] == 1
    inst = j['tasks'][0]
    assert inst['title'] == 'Daily Standup'
    assert inst['deadline'] == frozen_now.isoformat()
    assert inst['is_recurring'] is False
    assert inst['is_completed'] is False
    assert inst['user_id'] == user.id

    # running the trigger again the same day creates nothing new
    r = await admin_client.post('/recurring/generate')
    assert r.json()['generated_count'] == 0

    r = await client.get('/tasks')
    assert len(r.json()['tasks']) == 2


async def test_process_user_requires_user_id(client, frozen_now):
    r = await client.post('/recurring/process-user', json={})
    assert r.status_code == 400
    assert r.json()['detail'] == 'User ID required'


async def test_process_user_for_self(client, user, add_task, frozen_now):
    await add_task(user.id, 'Stretch', deadline=frozen_now - timedelta(days=2), is_recurring=True, recurrence_rule='FREQ=DAILY;INTERVAL=2')
    r = await client.post('/recurring/process-user', json={'userId': user.id})
    assert r.status_code == 200
    j = r.json()
    assert j['generated_count'] == 1
    assert j['tasks'][0]['deadline'] == frozen_now.isoformat()


async def test_process_user_for_someone_else_needs_admin(client, admin_client, make_user, add_task, frozen_now):
    other = await make_user('other')
    await add_task(other.id, 'Theirs', deadline=frozen_now - timedelta(days=1), is_recurring=True, recurrence_rule='DAILY')

    r = await client.post('/recurring/process-user', json={'userId': other.id})
    assert r.status_code == 403

    r = await admin_client.post('/recurring/process-user', json={'userId': other.id})
    assert r.status_code == 200
    assert r.json()['generated_count'] == 1


async def test_update_rule_endpoint(client, frozen_now):
    r = await client.post('/tasks', json={'title': 'Pay rent'})
    task_id = r.json()['task']['id']

    r = await client.post('/recurring/update-rule', json={'taskId': task_id})
    assert r.status_code == 400

    r = await client.post('/recurring/update-rule', json={'taskId': task_id, 'recurrenceRule': 'FREQ=MONTHLY;INTERVAL=1'})
    assert r.status_code == 200
    j = r.json()
    assert j['success'] is True
    assert j['task']['is_recurring'] is True
    assert j['task']['recurrence_rule'] == 'FREQ=MONTHLY;INTERVAL=1'


async def test_update_rule_unknown_task_is_404(client, frozen_now):
    r = await client.post('/recurring/update-rule', json={'taskId': 'nope', 'recurrenceRule': 'DAILY'})
    assert r.status_code == 404


async def test_update_rule_on_another_users_task_is_404(client, make_user, add_task, frozen_now):
    other = await make_user('other')
    t = await add_task(other.id, 'Not yours')
    r = await client.post('/recurring/update-rule', json={'taskId': t.id, 'recurrenceRule': 'DAILY'})
    assert r.status_code == 404


async def test_pause_and_resume_endpoint(client, frozen_now):
    r = await client.post('/tasks', json={'title': 'Gym', 'is_recurring': True, 'recurrence_rule': 'WEEKLY'})
    task_id = r.json()['task']['id']

    r = await client.post('/recurring/pause', json={'taskId': task_id})
    assert r.status_code == 200
    j = r.json()
    assert j['paused'] is True
    assert j['task']['recurrence_rule'] == 'WEEKLY;PAUSED=true'

    # pausing twice does not stack markers
    r = await client.post('/recurring/pause', json={'taskId': task_id, 'paused': True})
    assert r.json()['task']['recurrence_rule'] == 'WEEKLY;PAUSED=true'

    r = await client.post('/recurring/pause', json={'taskId': task_id, 'paused': False})
    assert r.status_code == 200
    assert r.json()['paused'] is False
    assert r.json()['task']['recurrence_rule'] == 'WEEKLY'


@pytest.mark.parametrize('flag', ['false', 'true', 0, 1, None])
async def test_pause_flag_must_be_boolean(client, frozen_now, flag):
    r = await client.post('/tasks', json={'title': 'Gym', 'is_recurring': True, 'recurrence_rule': 'WEEKLY'})
    task_id = r.json()['task']['id']

    r = await client.post('/recurring/pause', json={'taskId': task_id, 'paused': flag})
    assert r.status_code == 400

    r = await client.get(f'/tasks/{task_id}')
    assert r.json()['task']['recurrence_rule'] == 'WEEKLY'


async def test_pause_requires_task_id(client, frozen_now):
    r = await client.post('/recurring/pause', json={'paused': True})
    assert r.status_code == 400


async def test_list_recurring_scoped_to_caller(client, anon_client, user, make_user, add_task):
    other = await make_user('other')
    await add_task(user.id, 'Mine', is_recurring=True, recurrence_rule='FREQ=WEEKLY;INTERVAL=2')
    await add_task(user.id, 'Plain')
    await add_task(other.id, 'Theirs', is_recurring=True, recurrence_rule='DAILY')

    r = await client.get('/recurring')
    assert r.status_code == 200
    rows = r.json()['recurring_tasks']
    assert [t['title'] for t in rows] == ['Mine']
    assert rows[0]['rule'] == {'frequency': 'WEEKLY', 'interval': 2, 'paused': False, 'form': 'structured'}

    # no identity: every template
    r = await anon_client.get('/recurring')
    assert r.status_code == 200
    assert sorted(t['title'] for t in r.json()['recurring_tasks']) == ['Mine', 'Theirs']


async def test_list_recurring_with_bad_token_is_401(anon_client):
    r = await anon_client.get('/recurring', headers={'Authorization': 'Bearer not-a-token'})
    assert r.status_code == 401
