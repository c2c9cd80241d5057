"""Shared fixtures for the seating tests"""

import itertools
import os

# The app module reads its settings at import time
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ.setdefault('LOG_LEVEL', 'WARNING')

import pytest
from flask import Flask
from sqlalchemy import func, select

from models import db, RestaurantTable, TableAssignment
from notifications import ChangeNotifier, RECORD_TYPES
from ledger import SeatLedger
from queue_engine import QueueStateMachine

ORG = 'bistro'


@pytest.fixture
def engine_app(tmp_path):
    """A bare Flask app on a SQLite file, so worker threads get their own connections"""
    flask_app = Flask(__name__)
    flask_app.config['SQLALCHEMY_DATABASE_URI'] = f"sqlite:///{tmp_path / 'seating.db'}"
    flask_app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        'connect_args': {'timeout': 10, 'check_same_thread': False}
    }
    db.init_app(flask_app)
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def notifier():
    return ChangeNotifier()


@pytest.fixture
def changes(notifier):
    seen = []
    for record_type in RECORD_TYPES:
        notifier.subscribe(record_type, seen.append)
    return seen


@pytest.fixture
def ledger(engine_app, notifier):
    return SeatLedger(notifier=notifier, lock_timeout=5)


@pytest.fixture
def queue(ledger, notifier):
    return QueueStateMachine(ledger, notifier=notifier)


@pytest.fixture
def make_table(ledger):
    numbers = itertools.count(1)

    def _make(capacity=4, org_id=ORG, table_number=None):
        return ledger.add_table(org_id, table_number or f'T{next(numbers)}', capacity)
    return _make


@pytest.fixture
def make_token(queue):
    def _make(people_count=2, name='Guest', org_id=ORG, **kwargs):
        return queue.create_token(org_id, name, people_count, **kwargs)
    return _make


@pytest.fixture
def assert_ledger_consistent():
    """Check occupancy == sum of assignment rows, for every table"""
    def _check():
        db.session.expire_all()
        for table in db.session.scalars(select(RestaurantTable)):
            assigned = db.session.scalar(
                select(func.coalesce(func.sum(TableAssignment.party_size), 0))
                .where(TableAssignment.table_id == table.id)
            )
            assert table.current_occupancy == assigned, table.table_number
            assert 0 <= table.current_occupancy <= table.capacity
    return _check


@pytest.fixture
def client():
    """Test client for the real application module on an in-memory database"""
    from app import app, queue as app_queue

    app.config['TESTING'] = True
    with app.app_context():
        db.drop_all()
        db.create_all()
    app_queue.undo_log.clear()

    with app.test_client() as test_client:
        yield test_client

    with app.app_context():
        db.session.remove()
