"""
Seat Allocation Ledger

Owns table capacity accounting and the assignment rows that place parts of
a party at tables. current_occupancy on every table always equals the sum
of party_size over that table's assignment rows; every write below keeps
the two in step inside a single transaction.
"""

import logging
from datetime import datetime

from sqlalchemy import case, delete, func, select, update

from models import QueueToken, RestaurantTable, TableAssignment, TableStatus, TokenStatus
from errors import CapacityExceeded, IllegalTransition, InvalidRequest, NotFound
from notifications import ASSIGNMENTS, TABLES
from store import LockRegistry, atomic, reading, DEFAULT_LOCK_TIMEOUT

logger = logging.getLogger(__name__)

MAX_TABLE_CAPACITY = 20

# A party can only be given seats while it is still in the queue.
ASSIGNABLE_STATUSES = (TokenStatus.WAITING, TokenStatus.CALLED)

TABLE_FIELDS = ('table_number', 'capacity', 'status')


def table_key(table_id):
    return f'table:{table_id}'


def token_key(token_id):
    return f'token:{token_id}'


def positive_int(value, field):
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidRequest(f'{field} must be a positive whole number')
    return value


def _table_label(value):
    label = str(value).strip() if value is not None else ''
    if not label:
        raise InvalidRequest('Table number is required')
    return label


class SeatLedger:
    def __init__(self, notifier=None, lock_timeout=DEFAULT_LOCK_TIMEOUT):
        self.notifier = notifier
        self.locks = LockRegistry(timeout=lock_timeout)

    def _notify(self, *record_types):
        if self.notifier is not None:
            self.notifier.publish(*record_types)

    # Assignment commands

    def assign(self, table_id, token_id, party_size):
        """Seat party_size people of a token at a table.

        Fewer seats than the party's size is allowed (a squeeze); more than
        the table has free is not, and fails with CapacityExceeded carrying
        the free-seat count so the caller can retry with a smaller number.
        """
        if not table_id or not token_id:
            raise InvalidRequest('Both a table and a token are required')
        positive_int(party_size, 'Party size')

        with self.locks.hold(table_key(table_id), token_key(token_id)):
            with atomic() as session:
                token = session.get(QueueToken, token_id, populate_existing=True)
                if token is None:
                    raise NotFound('Token', token_id)
                if token.status not in ASSIGNABLE_STATUSES:
                    raise IllegalTransition('assign', token.status)

                table_org = session.scalar(
                    select(RestaurantTable.org_id).where(RestaurantTable.id == table_id)
                )
                if table_org is None:
                    raise NotFound('Table', table_id)
                if table_org != token.org_id:
                    raise InvalidRequest(
                        f'Token #{token.token_number} and table {table_id} belong to different organizations'
                    )

                unseated = token.people_count - self.assigned_total(session, token_id)
                if party_size > unseated:
                    raise InvalidRequest(
                        f'Token #{token.token_number} has only {unseated} of '
                        f'{token.people_count} people still without a seat'
                    )

                # Conditional increment: the capacity check and the write are
                # one statement, so concurrent writers cannot overcommit.
                result = session.execute(
                    update(RestaurantTable)
                    .where(
                        RestaurantTable.id == table_id,
                        RestaurantTable.current_occupancy + party_size <= RestaurantTable.capacity
                    )
                    .values(
                        current_occupancy=RestaurantTable.current_occupancy + party_size,
                        updated_at=datetime.utcnow()
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    row = session.execute(
                        select(RestaurantTable.capacity, RestaurantTable.current_occupancy)
                        .where(RestaurantTable.id == table_id)
                    ).first()
                    if row is None:
                        raise NotFound('Table', table_id)
                    available = max(0, row.capacity - row.current_occupancy)
                    logger.warning(
                        'Assign of %s seats to table %s refused: %s available',
                        party_size, table_id, available
                    )
                    raise CapacityExceeded(available, party_size)

                assignment = TableAssignment(
                    table_id=table_id,
                    token_id=token_id,
                    party_size=party_size
                )
                session.add(assignment)

        logger.info('Assigned %s seats at table %s to token %s', party_size, table_id, token_id)
        self._notify(ASSIGNMENTS, TABLES)
        return assignment

    def release_token(self, token_id):
        """Free every seat held by a token, across all its tables.

        Returns the number of seats freed. Releasing a token that holds no
        seats is a no-op.
        """
        with reading() as session:
            if session.get(QueueToken, token_id) is None:
                raise NotFound('Token', token_id)
        table_ids = self.table_ids_for_tokens([token_id])
        if not table_ids:
            return 0

        keys = [table_key(t) for t in table_ids] + [token_key(token_id)]
        with self.locks.hold(*keys):
            with atomic() as session:
                freed = self.release_rows(session, [token_id])

        logger.info('Released %s seats held by token %s', freed, token_id)
        if freed:
            self._notify(ASSIGNMENTS, TABLES)
        return freed

    def release_table(self, table_id):
        """Free a whole table, whoever is sitting at it. Returns seats freed."""
        with self.locks.hold(table_key(table_id)):
            with atomic() as session:
                # Reset the counter first so the table row is locked before
                # the assignment rows are read and deleted.
                result = session.execute(
                    update(RestaurantTable)
                    .where(RestaurantTable.id == table_id)
                    .values(current_occupancy=0, updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise NotFound('Table', table_id)
                freed = session.scalar(
                    select(func.coalesce(func.sum(TableAssignment.party_size), 0))
                    .where(TableAssignment.table_id == table_id)
                )
                session.execute(
                    delete(TableAssignment)
                    .where(TableAssignment.table_id == table_id)
                    .execution_options(synchronize_session=False)
                )

        logger.info('Released table %s (%s seats)', table_id, freed)
        self._notify(ASSIGNMENTS, TABLES)
        return freed

    def release_rows(self, session, token_ids):
        """Delete the assignment rows of the given tokens inside the caller's
        transaction, decrementing each table by what it loses.

        The caller holds the locks of every table involved.
        """
        if not token_ids:
            return 0
        rows = session.scalars(
            select(TableAssignment)
            .where(TableAssignment.token_id.in_(token_ids))
            .with_for_update()
        ).all()
        if not rows:
            return 0

        per_table = {}
        for row in rows:
            per_table[row.table_id] = per_table.get(row.table_id, 0) + row.party_size

        now = datetime.utcnow()
        for table_id, seats in sorted(per_table.items()):
            remaining = RestaurantTable.current_occupancy - seats
            session.execute(
                update(RestaurantTable)
                .where(RestaurantTable.id == table_id)
                .values(
                    current_occupancy=case((remaining < 0, 0), else_=remaining),
                    updated_at=now
                )
                .execution_options(synchronize_session=False)
            )
        session.execute(
            delete(TableAssignment)
            .where(TableAssignment.id.in_([row.id for row in rows]))
            .execution_options(synchronize_session=False)
        )
        return sum(per_table.values())

    # Queries

    def assigned_total(self, session, token_id):
        return session.scalar(
            select(func.coalesce(func.sum(TableAssignment.party_size), 0))
            .where(TableAssignment.token_id == token_id)
        )

    def assignments_for_token(self, token_id):
        with reading() as session:
            return session.scalars(
                select(TableAssignment)
                .where(TableAssignment.token_id == token_id)
                .order_by(TableAssignment.assigned_at)
            ).all()

    def assignments_for_table(self, table_id):
        with reading() as session:
            return session.scalars(
                select(TableAssignment)
                .where(TableAssignment.table_id == table_id)
                .order_by(TableAssignment.assigned_at)
            ).all()

    def assignments_for_tables(self, table_ids):
        if not table_ids:
            return []
        with reading() as session:
            return session.scalars(
                select(TableAssignment)
                .where(TableAssignment.table_id.in_(table_ids))
                .order_by(TableAssignment.assigned_at)
            ).all()

    def table_ids_for_tokens(self, token_ids):
        if not token_ids:
            return []
        with reading() as session:
            return list(session.scalars(
                select(TableAssignment.table_id)
                .where(TableAssignment.token_id.in_(token_ids))
                .distinct()
            ))

    def total_assigned_seats(self, token_id):
        with reading() as session:
            return self.assigned_total(session, token_id)

    def available_seats(self, table_id):
        table = self.get_table(table_id)
        return table.capacity - table.current_occupancy

    # Table management

    def get_table(self, table_id):
        with reading() as session:
            table = session.get(RestaurantTable, table_id, populate_existing=True)
        if table is None:
            raise NotFound('Table', table_id)
        return table

    def list_tables(self, org_id):
        with reading() as session:
            return session.scalars(
                select(RestaurantTable)
                .where(RestaurantTable.org_id == org_id)
                .order_by(RestaurantTable.table_number)
            ).all()

    def add_table(self, org_id, table_number, capacity, status=TableStatus.AVAILABLE):
        label = _table_label(table_number)
        self._check_capacity(capacity)
        self._check_status(status)

        with atomic() as session:
            self._check_label_free(session, org_id, label)
            table = RestaurantTable(
                org_id=org_id,
                table_number=label,
                capacity=capacity,
                current_occupancy=0,
                status=status
            )
            session.add(table)

        logger.info('Added table %s (%s seats) for %s', label, capacity, org_id)
        self._notify(TABLES)
        return table

    def update_table(self, table_id, changes):
        unknown = set(changes) - set(TABLE_FIELDS)
        if unknown:
            raise InvalidRequest(f"Cannot update {', '.join(sorted(unknown))}")

        with self.locks.hold(table_key(table_id)):
            with atomic() as session:
                table = session.get(RestaurantTable, table_id, populate_existing=True, with_for_update=True)
                if table is None:
                    raise NotFound('Table', table_id)

                if 'table_number' in changes:
                    label = _table_label(changes['table_number'])
                    if label != table.table_number:
                        self._check_label_free(session, table.org_id, label)
                    table.table_number = label
                if 'capacity' in changes:
                    capacity = self._check_capacity(changes['capacity'])
                    if capacity < table.current_occupancy:
                        raise InvalidRequest(
                            f'Table {table.table_number} has {table.current_occupancy} '
                            f'seats in use; capacity cannot drop to {capacity}'
                        )
                    table.capacity = capacity
                if 'status' in changes:
                    table.status = self._check_status(changes['status'])
                table.updated_at = datetime.utcnow()

        logger.info('Updated table %s: %s', table_id, sorted(changes))
        self._notify(TABLES)
        return table

    def delete_table(self, table_id):
        with self.locks.hold(table_key(table_id)):
            with atomic() as session:
                table = session.get(RestaurantTable, table_id, populate_existing=True, with_for_update=True)
                if table is None:
                    raise NotFound('Table', table_id)
                in_use = session.scalar(
                    select(func.count(TableAssignment.id))
                    .where(TableAssignment.table_id == table_id)
                )
                if in_use or table.current_occupancy:
                    raise InvalidRequest(f'Release Table {table.table_number} before deleting it')
                session.delete(table)

        logger.info('Deleted table %s', table_id)
        self._notify(TABLES)

    def _check_label_free(self, session, org_id, label):
        existing = session.scalar(
            select(RestaurantTable.id)
            .where(RestaurantTable.org_id == org_id, RestaurantTable.table_number == label)
        )
        if existing:
            raise InvalidRequest(f'Table {label} already exists')

    @staticmethod
    def _check_capacity(capacity):
        positive_int(capacity, 'Capacity')
        if capacity > MAX_TABLE_CAPACITY:
            raise InvalidRequest(f'Capacity cannot exceed {MAX_TABLE_CAPACITY} seats')
        return capacity

    @staticmethod
    def _check_status(status):
        if status not in TableStatus.ALL:
            raise InvalidRequest(f'Unknown table status: {status}')
        return status
