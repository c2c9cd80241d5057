"""
Tests for the queue state machine: transitions, timestamps, undo,
duplicate detection and the end-of-day reset
"""

import threading
from datetime import date, timedelta

import pytest

from models import db, TokenStatus
from errors import IllegalTransition, InvalidRequest, NotFound, NothingToUndo
from notifications import ASSIGNMENTS, TABLES, TOKENS
from queue_engine import QueueStateMachine, TRANSITIONS, UNDO_DEPTH
from conftest import ORG

YESTERDAY = date.today() - timedelta(days=1)


def move_to(queue, token, status):
    """Drive a fresh waiting token to the given status"""
    path = {
        TokenStatus.WAITING: [],
        TokenStatus.CALLED: ['call'],
        TokenStatus.SEATED: ['call', 'seat'],
        TokenStatus.DONE: ['call', 'seat', 'done'],
        TokenStatus.CANCELLED: ['cancel'],
        TokenStatus.NO_SHOW: ['call', 'no_show'],
        TokenStatus.ON_HOLD: ['hold'],
    }[status]
    for action in path:
        queue.transition(token.id, action)
    return queue.get_token(token.id)


# Intake

def test_token_numbers_increase_per_org_and_day(queue, make_token):
    numbers = [make_token().token_number for _ in range(3)]
    other_org = make_token(org_id='cafe')
    yesterday = make_token(service_date=YESTERDAY)

    assert numbers == [1, 2, 3]
    assert other_org.token_number == 1
    assert yesterday.token_number == 1
    assert make_token().token_number == 4


def test_new_token_starts_waiting(queue, make_token, changes):
    token = make_token(people_count=4, name='  Ana ', phone=' 0612345678 ', notes='')

    assert token.status == TokenStatus.WAITING
    assert token.name == 'Ana'
    assert token.phone == '0612345678'
    assert token.notes is None
    assert token.called_at is None and token.seated_at is None and token.done_at is None
    assert changes == [TOKENS]


@pytest.mark.parametrize('name, people_count', [
    ('', 2),
    ('   ', 2),
    (None, 2),
    ('Bo', 0),
    ('Bo', -1),
    ('Bo', '2'),
])
def test_create_token_validation(queue, name, people_count):
    with pytest.raises(InvalidRequest):
        queue.create_token(ORG, name, people_count)


# Transitions

LEGAL = [
    (TokenStatus.WAITING, 'call', TokenStatus.CALLED),
    (TokenStatus.WAITING, 'hold', TokenStatus.ON_HOLD),
    (TokenStatus.ON_HOLD, 'unhold', TokenStatus.WAITING),
    (TokenStatus.CALLED, 'seat', TokenStatus.SEATED),
    (TokenStatus.CALLED, 'call', TokenStatus.CALLED),
    (TokenStatus.CALLED, 'no_show', TokenStatus.NO_SHOW),
    (TokenStatus.SEATED, 'done', TokenStatus.DONE),
    (TokenStatus.WAITING, 'cancel', TokenStatus.CANCELLED),
    (TokenStatus.CALLED, 'cancel', TokenStatus.CANCELLED),
]


@pytest.mark.parametrize('start, action, expected', LEGAL)
def test_legal_transitions(queue, make_token, start, action, expected):
    token = move_to(queue, make_token(), start)

    assert queue.transition(token.id, action).status == expected


ILLEGAL = [
    (status, action)
    for status in TokenStatus.ALL
    for action in TRANSITIONS
    if status not in TRANSITIONS[action]
]


@pytest.mark.parametrize('start, action', ILLEGAL)
def test_illegal_transitions_change_nothing(queue, make_token, start, action):
    token = move_to(queue, make_token(), start)
    undo_before = queue.pending_undo(ORG)

    with pytest.raises(IllegalTransition) as excinfo:
        queue.transition(token.id, action)

    assert excinfo.value.status == start
    assert queue.get_token(token.id).status == start
    assert queue.pending_undo(ORG) == undo_before


def test_seat_requires_called(queue, make_token):
    token = make_token()

    with pytest.raises(IllegalTransition):
        queue.transition(token.id, 'seat')
    assert queue.get_token(token.id).seated_at is None

    queue.transition(token.id, 'call')
    seated = queue.transition(token.id, 'seat')
    assert seated.status == TokenStatus.SEATED
    assert seated.seated_at is not None


def test_actions_stamp_their_timestamps(queue, make_token):
    token = make_token()

    called = queue.transition(token.id, 'call')
    first_call = called.called_at
    assert first_call is not None

    recalled = queue.transition(token.id, 'call')
    assert recalled.called_at >= first_call

    queue.transition(token.id, 'seat')
    done = queue.transition(token.id, 'done')
    assert done.done_at is not None and done.seated_at is not None


def test_terminal_tokens_leave_the_active_queue(queue, make_token):
    tokens = [make_token() for _ in range(5)]
    move_to(queue, tokens[1], TokenStatus.DONE)
    move_to(queue, tokens[2], TokenStatus.CANCELLED)
    move_to(queue, tokens[3], TokenStatus.NO_SHOW)
    move_to(queue, tokens[4], TokenStatus.ON_HOLD)

    active = queue.active_tokens(ORG)

    assert [t.token_number for t in active] == [1, 5]
    assert len(queue.day_tokens(ORG)) == 5


def test_held_token_needs_unhold_before_cancel(queue, make_token):
    token = move_to(queue, make_token(), TokenStatus.ON_HOLD)

    with pytest.raises(IllegalTransition) as excinfo:
        queue.transition(token.id, 'cancel')
    assert 'unhold' in excinfo.value.message

    queue.transition(token.id, 'unhold')
    assert queue.transition(token.id, 'cancel').status == TokenStatus.CANCELLED


def test_cancel_on_hold_policy(ledger, make_token):
    lenient = QueueStateMachine(ledger, allow_cancel_on_hold=True)
    token = make_token()
    lenient.transition(token.id, 'hold')

    assert lenient.transition(token.id, 'cancel').status == TokenStatus.CANCELLED


def test_unknown_action_and_token(queue, make_token):
    token = make_token()

    with pytest.raises(InvalidRequest):
        queue.transition(token.id, 'teleport')
    with pytest.raises(NotFound):
        queue.transition('no-such-token', 'call')


def test_done_keeps_seats_until_released(queue, ledger, make_table, make_token):
    table = make_table(capacity=4)
    token = make_token(people_count=4)
    ledger.assign(table.id, token.id, 4)
    move_to(queue, token, TokenStatus.DONE)

    assert ledger.available_seats(table.id) == 0
    assert ledger.release_token(token.id) == 4
    assert ledger.available_seats(table.id) == 4


def test_complete_and_release(queue, ledger, make_table, make_token, changes, assert_ledger_consistent):
    t1 = make_table(capacity=4)
    t2 = make_table(capacity=4)
    token = make_token(people_count=6)
    ledger.assign(t1.id, token.id, 4)
    ledger.assign(t2.id, token.id, 2)
    move_to(queue, token, TokenStatus.SEATED)
    changes.clear()

    done, freed = queue.complete_and_release(token.id)

    assert done.status == TokenStatus.DONE and done.done_at is not None
    assert freed == 6
    assert ledger.available_seats(t1.id) == 4 and ledger.available_seats(t2.id) == 4
    assert set(changes) == {TOKENS, ASSIGNMENTS, TABLES}
    assert_ledger_consistent()


def test_complete_and_release_is_all_or_nothing(queue, ledger, make_table, make_token):
    table = make_table(capacity=4)
    token = make_token(people_count=2)
    ledger.assign(table.id, token.id, 2)

    with pytest.raises(IllegalTransition):
        queue.complete_and_release(token.id)

    assert queue.get_token(token.id).status == TokenStatus.WAITING
    assert ledger.available_seats(table.id) == 2


def test_racing_seat_calls_apply_once(engine_app, queue, make_token):
    token_id = move_to(queue, make_token(), TokenStatus.CALLED).id
    outcomes = []
    start = threading.Barrier(2)

    def seat():
        with engine_app.app_context():
            start.wait()
            try:
                queue.transition(token_id, 'seat')
                outcomes.append('ok')
            except IllegalTransition as e:
                outcomes.append(e.status)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=seat) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    # The loser sees the status the winner wrote.
    assert sorted(outcomes) == ['ok', TokenStatus.SEATED]
    assert queue.get_token(token_id).status == TokenStatus.SEATED


# Undo

def test_undo_call_returns_to_waiting(queue, make_token):
    token = make_token()
    queue.transition(token.id, 'call')

    record = queue.pending_undo(ORG)
    assert (record.token_id, record.previous_status, record.new_status) == \
        (token.id, TokenStatus.WAITING, TokenStatus.CALLED)

    restored = queue.undo(ORG)

    assert restored.status == TokenStatus.WAITING
    assert queue.pending_undo(ORG) is None
    with pytest.raises(NothingToUndo):
        queue.undo(ORG)


def test_undo_remembers_only_the_last_action(queue, make_token):
    assert UNDO_DEPTH == 1
    first = make_token()
    second = make_token()
    queue.transition(first.id, 'call')
    queue.transition(second.id, 'call')

    queue.undo(ORG)

    assert queue.get_token(second.id).status == TokenStatus.WAITING
    assert queue.get_token(first.id).status == TokenStatus.CALLED
    with pytest.raises(NothingToUndo):
        queue.undo(ORG)


@pytest.mark.parametrize('start, action', [
    (TokenStatus.WAITING, 'call'),
    (TokenStatus.WAITING, 'hold'),
    (TokenStatus.WAITING, 'cancel'),
    (TokenStatus.CALLED, 'seat'),
    (TokenStatus.CALLED, 'no_show'),
    (TokenStatus.SEATED, 'done'),
])
def test_every_undoable_action_can_be_undone(queue, make_token, start, action):
    token = move_to(queue, make_token(), start)
    queue.transition(token.id, action)

    assert queue.undo(ORG).status == start


def test_undo_clears_only_the_undone_timestamp(queue, make_token):
    token = move_to(queue, make_token(), TokenStatus.SEATED)
    called_at, seated_at = token.called_at, token.seated_at
    queue.transition(token.id, 'done')

    restored = queue.undo(ORG)

    assert restored.status == TokenStatus.SEATED
    assert restored.done_at is None
    assert (restored.called_at, restored.seated_at) == (called_at, seated_at)


def test_undo_call_clears_called_at(queue, make_token):
    token = make_token()
    queue.transition(token.id, 'call')

    restored = queue.undo(ORG)

    assert restored.status == TokenStatus.WAITING
    assert restored.called_at is None


def test_undo_of_a_recall_keeps_called_at(queue, make_token):
    """Calling an already called token again is undone without losing the first call"""
    token = move_to(queue, make_token(), TokenStatus.CALLED)
    queue.transition(token.id, 'call')

    restored = queue.undo(ORG)

    assert restored.status == TokenStatus.CALLED
    assert restored.called_at is not None


def test_unhold_is_not_recorded(queue, make_token):
    token = make_token()
    queue.transition(token.id, 'hold')
    queue.transition(token.id, 'unhold')

    # The slot still describes the hold, which no longer matches the token.
    with pytest.raises(IllegalTransition):
        queue.undo(ORG)
    assert queue.get_token(token.id).status == TokenStatus.WAITING
    with pytest.raises(NothingToUndo):
        queue.undo(ORG)


def test_undo_is_per_organization(queue, make_token):
    here = make_token()
    there = make_token(org_id='cafe')
    queue.transition(here.id, 'call')
    queue.transition(there.id, 'call')

    queue.undo('cafe')

    assert queue.get_token(there.id).status == TokenStatus.WAITING
    assert queue.get_token(here.id).status == TokenStatus.CALLED
    assert queue.pending_undo(ORG) is not None


def test_undo_done_does_not_restore_seats(queue, ledger, make_table, make_token):
    table = make_table(capacity=4)
    token = make_token(people_count=3)
    ledger.assign(table.id, token.id, 3)
    move_to(queue, token, TokenStatus.SEATED)
    queue.complete_and_release(token.id)

    restored = queue.undo(ORG)

    assert restored.status == TokenStatus.SEATED
    assert ledger.total_assigned_seats(token.id) == 0
    assert ledger.available_seats(table.id) == 4


# Duplicate detection

def test_check_duplicate(queue, make_token):
    token = make_token(phone='0612345678')
    make_token(phone='1234')

    assert queue.check_duplicate(ORG, ' 0612345678 ').id == token.id
    assert queue.check_duplicate(ORG, '1234') is None
    assert queue.check_duplicate(ORG, None) is None
    assert queue.check_duplicate('cafe', '0612345678') is None
    assert queue.check_duplicate(ORG, '0612345678', service_date=YESTERDAY) is None


def test_check_duplicate_ignores_finished_tokens(queue, make_token):
    held = make_token(phone='0611111111')
    queue.transition(held.id, 'hold')
    gone = make_token(phone='0622222222')
    queue.transition(gone.id, 'cancel')

    assert queue.check_duplicate(ORG, '0611111111').id == held.id
    assert queue.check_duplicate(ORG, '0622222222') is None


# Edits

def test_update_fields(queue, ledger, make_table, make_token):
    table = make_table(capacity=4)
    token = make_token(people_count=4)
    ledger.assign(table.id, token.id, 3)

    updated = queue.update_fields(token.id, {'name': 'Kim', 'notes': 'high chair', 'phone': '0699999999'})
    assert (updated.name, updated.notes, updated.phone) == ('Kim', 'high chair', '0699999999')

    assert queue.update_fields(token.id, {'people_count': 3}).people_count == 3
    with pytest.raises(InvalidRequest):
        queue.update_fields(token.id, {'people_count': 2})
    with pytest.raises(InvalidRequest):
        queue.update_fields(token.id, {'status': 'seated'})
    with pytest.raises(InvalidRequest):
        queue.update_fields(token.id, {'name': ' '})
    with pytest.raises(NotFound):
        queue.update_fields('no-such-token', {'name': 'Kim'})

    assert queue.get_token(token.id).people_count == 3


# Reset

def test_reset_day(queue, ledger, make_table, make_token, assert_ledger_consistent):
    table = make_table(capacity=6)
    seated = make_token(people_count=4)
    ledger.assign(table.id, seated.id, 4)
    queue.transition(seated.id, 'call')
    make_token()
    other_org = make_token(org_id='cafe')
    old = make_token(service_date=YESTERDAY)
    other_org_id, old_id = other_org.id, old.id

    deleted = queue.reset_day(ORG)

    assert deleted == 2
    assert queue.day_tokens(ORG) == []
    assert ledger.available_seats(table.id) == 6
    assert queue.pending_undo(ORG) is None
    assert queue.get_token(other_org_id).org_id == 'cafe'
    assert queue.get_token(old_id).service_date == YESTERDAY
    assert make_token().token_number == 1
    assert_ledger_consistent()

    with pytest.raises(NothingToUndo):
        queue.undo(ORG)


def test_reset_of_empty_day(queue):
    assert queue.reset_day(ORG) == 0
