"""
Queue State Machine

Lifecycle of walk-in tokens: which actions are legal from which status,
the timestamps each action stamps, duplicate-arrival detection, the
one-step undo slot and the end-of-day reset.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from models import QueueToken, TokenStatus
from errors import IllegalTransition, InvalidRequest, NotFound, NothingToUndo, StoreFailure
from notifications import ASSIGNMENTS, TABLES, TOKENS
from ledger import positive_int, table_key, token_key
from store import atomic, reading

logger = logging.getLogger(__name__)

UNDO_DEPTH = 1
DUPLICATE_PHONE_MIN_LENGTH = 5
TOKEN_NUMBER_ATTEMPTS = 3

# action -> {from status: to status}
TRANSITIONS = {
    'call': {TokenStatus.WAITING: TokenStatus.CALLED, TokenStatus.CALLED: TokenStatus.CALLED},
    'hold': {TokenStatus.WAITING: TokenStatus.ON_HOLD},
    'unhold': {TokenStatus.ON_HOLD: TokenStatus.WAITING},
    'seat': {TokenStatus.CALLED: TokenStatus.SEATED},
    'no_show': {TokenStatus.CALLED: TokenStatus.NO_SHOW},
    'done': {TokenStatus.SEATED: TokenStatus.DONE},
    'cancel': {TokenStatus.WAITING: TokenStatus.CANCELLED, TokenStatus.CALLED: TokenStatus.CANCELLED},
}

ACTIONS = tuple(TRANSITIONS)
UNDOABLE_ACTIONS = ('call', 'seat', 'done', 'no_show', 'hold', 'cancel')

TIMESTAMP_FIELDS = {
    'call': 'called_at',
    'seat': 'seated_at',
    'done': 'done_at',
}

# Timestamp an undo clears when it takes a token out of this status
UNDO_CLEARS = {
    TokenStatus.CALLED: 'called_at',
    TokenStatus.SEATED: 'seated_at',
    TokenStatus.DONE: 'done_at',
}

EDITABLE_FIELDS = ('name', 'people_count', 'notes', 'phone')


def build_transitions(allow_cancel_on_hold=False):
    table = {action: dict(moves) for action, moves in TRANSITIONS.items()}
    if allow_cancel_on_hold:
        table['cancel'][TokenStatus.ON_HOLD] = TokenStatus.CANCELLED
    return table


def scope_key(org_id, service_date):
    return f'scope:{org_id}:{service_date.isoformat()}'


def undo_key(org_id):
    return f'undo:{org_id}'


@dataclass(frozen=True)
class UndoRecord:
    token_id: str
    previous_status: str
    new_status: str
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self):
        return {
            'token_id': self.token_id,
            'previous_status': self.previous_status,
            'new_status': self.new_status,
            'timestamp': self.timestamp.isoformat()
        }


class UndoLog:
    """Last undoable actions per organization, newest last."""

    def __init__(self, depth=UNDO_DEPTH):
        self.depth = depth
        self._stacks = {}
        self._lock = threading.Lock()

    def push(self, org_id, record):
        with self._lock:
            stack = self._stacks.setdefault(org_id, deque(maxlen=self.depth))
            stack.append(record)

    def peek(self, org_id):
        with self._lock:
            stack = self._stacks.get(org_id)
            return stack[-1] if stack else None

    def pop(self, org_id):
        with self._lock:
            stack = self._stacks.get(org_id)
            return stack.pop() if stack else None

    def clear(self, org_id=None):
        with self._lock:
            if org_id is None:
                self._stacks.clear()
            else:
                self._stacks.pop(org_id, None)


def _clean_name(value):
    name = value.strip() if isinstance(value, str) else ''
    if not name:
        raise InvalidRequest('Name is required')
    return name


def _clean_optional(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class QueueStateMachine:
    def __init__(self, ledger, notifier=None, allow_cancel_on_hold=False,
                 duplicate_phone_min_length=DUPLICATE_PHONE_MIN_LENGTH, undo_depth=UNDO_DEPTH):
        self.ledger = ledger
        self.notifier = notifier
        self.locks = ledger.locks
        self.transitions = build_transitions(allow_cancel_on_hold)
        self.duplicate_phone_min_length = duplicate_phone_min_length
        self.undo_log = UndoLog(undo_depth)

    def _notify(self, *record_types):
        if self.notifier is not None:
            self.notifier.publish(*record_types)

    # Intake

    def create_token(self, org_id, name, people_count, phone=None, notes=None, service_date=None):
        """Add a party to the queue with the next token number of the day."""
        name = _clean_name(name)
        positive_int(people_count, 'People count')
        service_date = service_date or date.today()

        for attempt in range(1, TOKEN_NUMBER_ATTEMPTS + 1):
            try:
                with self.locks.hold(scope_key(org_id, service_date)):
                    with atomic() as session:
                        last = session.scalar(
                            select(func.max(QueueToken.token_number))
                            .where(QueueToken.org_id == org_id, QueueToken.service_date == service_date)
                        )
                        token = QueueToken(
                            org_id=org_id,
                            service_date=service_date,
                            token_number=(last or 0) + 1,
                            name=name,
                            phone=_clean_optional(phone),
                            people_count=people_count,
                            status=TokenStatus.WAITING,
                            notes=_clean_optional(notes)
                        )
                        session.add(token)
                break
            except StoreFailure as e:
                # Another process took the same number first.
                if isinstance(e.__cause__, IntegrityError) and attempt < TOKEN_NUMBER_ATTEMPTS:
                    logger.warning('Token number collision for %s, retrying', org_id)
                    continue
                raise

        logger.info('Created token #%s for %s (%s people)', token.token_number, org_id, people_count)
        self._notify(TOKENS)
        return token

    def check_duplicate(self, org_id, phone, service_date=None):
        """Return an active token of the same day with this phone, if any.

        Advisory only: intake may still go ahead and create the token.
        """
        phone = _clean_optional(phone) or ''
        if len(phone) < self.duplicate_phone_min_length:
            return None
        service_date = service_date or date.today()
        with reading() as session:
            return session.scalars(
                select(QueueToken)
                .where(
                    QueueToken.org_id == org_id,
                    QueueToken.service_date == service_date,
                    QueueToken.phone == phone,
                    QueueToken.status.in_(TokenStatus.ACTIVE)
                )
                .order_by(QueueToken.created_at)
                .limit(1)
            ).first()

    # Reads

    def get_token(self, token_id):
        with reading() as session:
            token = session.get(QueueToken, token_id, populate_existing=True)
        if token is None:
            raise NotFound('Token', token_id)
        return token

    def day_tokens(self, org_id, service_date=None, statuses=None):
        service_date = service_date or date.today()
        query = select(QueueToken).where(
            QueueToken.org_id == org_id,
            QueueToken.service_date == service_date
        )
        if statuses is not None:
            query = query.where(QueueToken.status.in_(statuses))
        with reading() as session:
            return session.scalars(
                query.order_by(QueueToken.created_at, QueueToken.token_number)
            ).all()

    def active_tokens(self, org_id, service_date=None):
        return self.day_tokens(org_id, service_date, statuses=TokenStatus.ACTIVE)

    # Transitions

    def _apply(self, session, token, action):
        previous = token.status
        new_status = self.transitions[action].get(previous)
        if new_status is None:
            if previous == TokenStatus.ON_HOLD:
                raise IllegalTransition(
                    action, previous,
                    f'Token #{token.token_number} is on hold; unhold it before you {action} it'
                )
            raise IllegalTransition(action, previous)

        values = {'status': new_status}
        stamp = TIMESTAMP_FIELDS.get(action)
        if stamp:
            values[stamp] = datetime.utcnow()

        # Compare-and-set on the status we validated against.
        result = session.execute(
            update(QueueToken)
            .where(QueueToken.id == token.id, QueueToken.status == previous)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = session.scalar(select(QueueToken.status).where(QueueToken.id == token.id))
            if current is None:
                raise NotFound('Token', token.id)
            raise IllegalTransition(action, current)
        return previous, new_status

    def _load(self, session, token_id):
        token = session.get(QueueToken, token_id, populate_existing=True)
        if token is None:
            raise NotFound('Token', token_id)
        return token

    def _record(self, org_id, token_id, action, previous, new_status):
        if action in UNDOABLE_ACTIONS:
            self.undo_log.push(org_id, UndoRecord(token_id, previous, new_status))

    def transition(self, token_id, action):
        """Apply one queue action to a token.

        'done' does not free the token's seats; follow it with
        SeatLedger.release_token, or use complete_and_release.
        """
        if action not in self.transitions:
            raise InvalidRequest(f'Unknown action: {action}')
        org_id = self.get_token(token_id).org_id

        with self.locks.hold(token_key(token_id), undo_key(org_id)):
            with atomic() as session:
                token = self._load(session, token_id)
                previous, new_status = self._apply(session, token, action)
            self._record(org_id, token_id, action, previous, new_status)

        logger.info('Token %s: %s (%s -> %s)', token_id, action, previous, new_status)
        self._notify(TOKENS)
        return self.get_token(token_id)

    def complete_and_release(self, token_id):
        """Mark a seated token done and free its seats in one transaction."""
        org_id = self.get_token(token_id).org_id
        table_ids = self.ledger.table_ids_for_tokens([token_id])
        keys = [table_key(t) for t in table_ids] + [token_key(token_id), undo_key(org_id)]

        with self.locks.hold(*keys):
            with atomic() as session:
                token = self._load(session, token_id)
                previous, new_status = self._apply(session, token, 'done')
                freed = self.ledger.release_rows(session, [token_id])
            self._record(org_id, token_id, 'done', previous, new_status)

        logger.info('Token %s done, %s seats released', token_id, freed)
        self._notify(TOKENS, ASSIGNMENTS, TABLES)
        return self.get_token(token_id), freed

    # Undo

    def pending_undo(self, org_id):
        return self.undo_log.peek(org_id)

    def undo(self, org_id):
        """Put the token touched by the last undoable action back into its
        previous status and clear the timestamp that action stamped. Seat
        assignments are not restored.
        """
        with self.locks.hold(undo_key(org_id)):
            record = self.undo_log.pop(org_id)
            if record is None:
                raise NothingToUndo()
            values = {'status': record.previous_status}
            stamp = UNDO_CLEARS.get(record.new_status)
            if stamp and record.previous_status != record.new_status:
                values[stamp] = None
            try:
                with atomic() as session:
                    result = session.execute(
                        update(QueueToken)
                        .where(QueueToken.id == record.token_id, QueueToken.status == record.new_status)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        current = session.scalar(
                            select(QueueToken.status).where(QueueToken.id == record.token_id)
                        )
                        if current is None:
                            raise NotFound('Token', record.token_id)
                        raise IllegalTransition(
                            'undo', current,
                            f'Token has moved on to {current} since the last action; nothing undone'
                        )
            except StoreFailure:
                self.undo_log.push(org_id, record)
                raise

        logger.info('Undo on token %s: %s -> %s', record.token_id, record.new_status, record.previous_status)
        self._notify(TOKENS)
        return self.get_token(record.token_id)

    # Edits

    def update_fields(self, token_id, changes):
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidRequest(f"Cannot update {', '.join(sorted(unknown))}")

        with self.locks.hold(token_key(token_id)):
            with atomic() as session:
                token = self._load(session, token_id)
                if 'name' in changes:
                    token.name = _clean_name(changes['name'])
                if 'people_count' in changes:
                    people_count = positive_int(changes['people_count'], 'People count')
                    assigned = self.ledger.assigned_total(session, token_id)
                    if people_count < assigned:
                        raise InvalidRequest(
                            f'{assigned} seats are already assigned; release some before '
                            f'lowering the party to {people_count}'
                        )
                    token.people_count = people_count
                if 'notes' in changes:
                    token.notes = _clean_optional(changes['notes'])
                if 'phone' in changes:
                    token.phone = _clean_optional(changes['phone'])

        logger.info('Updated token %s: %s', token_id, sorted(changes))
        self._notify(TOKENS)
        return token

    # Reset

    def reset_day(self, org_id, service_date=None):
        """Delete every token of the service day, freeing their seats.

        Not undoable; the pending undo record is dropped as well.
        """
        service_date = service_date or date.today()
        in_scope = (QueueToken.org_id == org_id, QueueToken.service_date == service_date)
        known_ids = [t.id for t in self.day_tokens(org_id, service_date)]
        table_ids = self.ledger.table_ids_for_tokens(known_ids)
        keys = [table_key(t) for t in table_ids] + [scope_key(org_id, service_date), undo_key(org_id)]

        with self.locks.hold(*keys):
            with atomic() as session:
                token_ids = list(session.scalars(select(QueueToken.id).where(*in_scope)))
                freed = self.ledger.release_rows(session, token_ids)
                deleted = 0
                if token_ids:
                    result = session.execute(
                        delete(QueueToken)
                        .where(QueueToken.id.in_(token_ids))
                        .execution_options(synchronize_session=False)
                    )
                    deleted = result.rowcount
            self.undo_log.clear(org_id)

        logger.info('Reset %s for %s: %s tokens deleted, %s seats released',
                    service_date, org_id, deleted, freed)
        self._notify(TOKENS, ASSIGNMENTS, TABLES)
        return deleted
