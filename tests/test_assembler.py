import pathlib
import sys
import unittest

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from database import get_db_connection, init_db
from services.assembler import Assembler, get_app_data, group_by
from services.errors import StorageError


class GroupByTests(unittest.TestCase):
    def test_every_row_lands_once_under_its_parent(self):
        rows = [
            {'indicator_id': 'a', 'year': 2022},
            {'indicator_id': 'b', 'year': 2022},
            {'indicator_id': 'a', 'year': 2023},
        ]
        grouped = group_by(rows, 'indicator_id')
        self.assertEqual(set(grouped), {'a', 'b'})
        self.assertEqual(sum(len(children) for children in grouped.values()), len(rows))
        self.assertCountEqual(grouped['a'], [{'year': 2022}, {'year': 2023}])

    def test_key_column_is_removed_from_copies(self):
        row = {'meeting_id': 'm1', 'id': 'd1', 'text': 'Approve budget'}
        grouped = group_by([row], 'meeting_id')
        self.assertEqual(grouped, {'m1': [{'id': 'd1', 'text': 'Approve budget'}]})
        self.assertIn('meeting_id', row)

    def test_rows_without_a_key_are_skipped(self):
        grouped = group_by([{'thread_id': None, 'id': 'r1'}, {'id': 'r2'}], 'thread_id')
        self.assertEqual(grouped, {})

    def test_empty_input(self):
        self.assertEqual(group_by([], 'indicator_id'), {})


@pytest.fixture
def db_file(tmp_path):
    path = tmp_path / 'social_balance.db'
    init_db(path)
    return path


@pytest.fixture
def connect(db_file):
    return lambda: get_db_connection(db_file)


def _execute(connect, statements):
    conn = connect()
    try:
        for sql, params in statements:
            conn.execute(sql, params)
        conn.commit()
    finally:
        conn.close()


def test_empty_database_yields_empty_collections(connect):
    assert get_app_data(connect) == {
        'users': [],
        'strategicGoals': [],
        'indicators': [],
        'meetings': [],
        'discussionThreads': [],
        'notifications': [],
    }


def test_indicator_children_are_nested_without_foreign_keys(connect):
    _execute(connect, [
        ("INSERT INTO indicators (id, name, responsibleArea) VALUES (?, ?, ?)", ('ind-1', 'Participation', 'Finance')),
        ("INSERT INTO indicators (id, name, responsibleArea) VALUES (?, ?, ?)", ('ind-2', 'Training', 'HR')),
        ("INSERT INTO historical_data (indicator_id, year, value, formattedValue) VALUES (?, ?, ?, ?)",
         ('ind-1', 2023, 0.5, '50%')),
        ("INSERT INTO historical_data (indicator_id, year, value, formattedValue) VALUES (?, ?, ?, ?)",
         ('ind-1', 2022, 0.4, '40%')),
        ("INSERT INTO goals (indicator_id, year, target) VALUES (?, ?, ?)", ('ind-2', 2025, 10)),
        ("INSERT INTO attachments (indicator_id, id, fileName, uploadDate) VALUES (?, ?, ?, ?)",
         ('ind-1', 'att-1', 'minutes.pdf', '2024-03-01 10:00:00')),
        ("INSERT INTO action_plans (id, indicator_id, title, status) VALUES (?, ?, ?, ?)",
         ('plan-1', 'ind-1', 'Raise turnout', 'In Progress')),
        ("INSERT INTO action_plan_updates (id, action_plan_id, date, text, attachmentId) VALUES (?, ?, ?, ?, ?)",
         ('u-2', 'plan-1', '2024-04-01 00:00:00', 'Second', None)),
        ("INSERT INTO action_plan_updates (id, action_plan_id, date, text, attachmentId) VALUES (?, ?, ?, ?, ?)",
         ('u-1', 'plan-1', '2024-03-01 00:00:00', 'First', 'att-1')),
        ("INSERT INTO audit_logs (id, indicator_id, timestamp, action) VALUES (?, ?, ?, ?)",
         ('2024-03-01T10:00:00.000Z', 'ind-1', '2024-03-01 10:00:00', 'create')),
    ])

    indicators = {item['id']: item for item in get_app_data(connect)['indicators']}

    first = indicators['ind-1']
    assert [point['year'] for point in first['historicalData']] == [2022, 2023]
    assert all('indicator_id' not in point for point in first['historicalData'])
    assert first['goals'] == []
    assert first['auditLog'][0]['action'] == 'create'
    assert 'indicator_id' not in first['auditLog'][0]

    [plan] = first['actionPlans']
    assert 'indicator_id' not in plan
    assert [update['id'] for update in plan['updates']] == ['u-1', 'u-2']
    first_update, second_update = plan['updates']
    assert 'action_plan_id' not in first_update
    assert first_update['attachment']['fileName'] == 'minutes.pdf'
    assert second_update['attachment'] is None

    second = indicators['ind-2']
    assert second['goals'] == [{'year': 2025, 'target': 10}]
    assert second['historicalData'] == []
    assert second['actionPlans'] == []
    assert second['attachments'] == []


def test_users_never_expose_passwords(connect):
    _execute(connect, [
        ("INSERT INTO users (id, name, role, area, password, readThreadIds) VALUES (?, ?, ?, ?, ?, ?)",
         ('A', 'Ana', 'Administrator', 'General', '$2b$04$abcdefghijklmnopqrstuv', '["t1", "t2"]')),
        ("INSERT INTO users (id, name, role, area, password, readThreadIds) VALUES (?, ?, ?, ?, ?, ?)",
         ('B', 'Beto', 'Member', 'General', 'plain', 'not json')),
    ])

    users = {user['id']: user for user in get_app_data(connect)['users']}

    assert all('password' not in user for user in users.values())
    assert users['A']['readThreadIds'] == ['t1', 't2']
    assert users['B']['readThreadIds'] == []


def test_meetings_threads_and_notifications_are_decoded(connect):
    _execute(connect, [
        ("INSERT INTO meetings (id, date, attendees, agenda) VALUES (?, ?, ?, ?)",
         ('m1', '2024-05-02 00:00:00', '["A", "B"]', 'Budget')),
        ("INSERT INTO decisions (id, meeting_id, text, status) VALUES (?, ?, ?, ?)",
         ('d1', 'm1', 'Approve', 'Pending')),
        ("INSERT INTO discussion_threads (id, title, authorId) VALUES (?, ?, ?)", ('t1', 'Hello', 'A')),
        ("INSERT INTO thread_replies (id, thread_id, authorId, timestamp, content) VALUES (?, ?, ?, ?, ?)",
         ('r1', 't1', 'B', '2024-05-02 10:00:00', 'Hi')),
        ("INSERT INTO notifications (id, userId, message, isRead) VALUES (?, ?, ?, ?)", ('n1', 'A', 'Read me', 1)),
        ("INSERT INTO notifications (id, userId, message, isRead) VALUES (?, ?, ?, ?)", ('n2', 'A', 'Unread', 0)),
    ])

    data = get_app_data(connect)

    [meeting] = data['meetings']
    assert meeting['attendees'] == ['A', 'B']
    assert meeting['decisions'] == [{'id': 'd1', 'text': 'Approve', 'responsibleUserId': None,
                                     'dueDate': None, 'status': 'Pending'}]
    [thread] = data['discussionThreads']
    assert [reply['id'] for reply in thread['replies']] == ['r1']
    assert 'thread_id' not in thread['replies'][0]
    flags = {item['id']: item['isRead'] for item in data['notifications']}
    assert flags == {'n1': True, 'n2': False}


def test_missing_table_is_reported_as_storage_error(connect):
    _execute(connect, [("DROP TABLE thread_replies", ())])

    with pytest.raises(StorageError) as excinfo:
        Assembler(connect, max_workers=2).get_app_data()
    assert excinfo.value.status == 500
    assert 'thread_replies' not in excinfo.value.message
