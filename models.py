from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, date
import uuid

db = SQLAlchemy()


def new_id():
    return str(uuid.uuid4())


class TokenStatus:
    WAITING = 'waiting'
    CALLED = 'called'
    SEATED = 'seated'
    DONE = 'done'
    CANCELLED = 'cancelled'
    NO_SHOW = 'no_show'
    ON_HOLD = 'on_hold'

    ALL = (WAITING, CALLED, SEATED, DONE, CANCELLED, NO_SHOW, ON_HOLD)
    ACTIVE = (WAITING, CALLED, SEATED, ON_HOLD)
    TERMINAL = (DONE, CANCELLED, NO_SHOW)


class TableStatus:
    AVAILABLE = 'available'
    OCCUPIED = 'occupied'
    RESERVED = 'reserved'

    ALL = (AVAILABLE, OCCUPIED, RESERVED)


def _iso(value):
    return value.isoformat() if value else None


class QueueToken(db.Model):
    __tablename__ = 'queue_tokens'
    __table_args__ = (
        db.UniqueConstraint('org_id', 'service_date', 'token_number', name='uq_token_number_per_day'),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    org_id = db.Column(db.String(100), nullable=False, index=True)
    service_date = db.Column(db.Date, nullable=False, default=date.today, index=True)
    token_number = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    phone = db.Column(db.String(50), index=True)
    people_count = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(20), nullable=False, default=TokenStatus.WAITING)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    called_at = db.Column(db.DateTime)
    seated_at = db.Column(db.DateTime)
    done_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'org_id': self.org_id,
            'service_date': _iso(self.service_date),
            'token_number': self.token_number,
            'name': self.name,
            'phone': self.phone,
            'people_count': self.people_count,
            'status': self.status,
            'notes': self.notes,
            'created_at': _iso(self.created_at),
            'called_at': _iso(self.called_at),
            'seated_at': _iso(self.seated_at),
            'done_at': _iso(self.done_at)
        }


class RestaurantTable(db.Model):
    __tablename__ = 'restaurant_tables'
    __table_args__ = (
        db.UniqueConstraint('org_id', 'table_number', name='uq_table_number_per_org'),
        db.CheckConstraint(
            'current_occupancy >= 0 AND current_occupancy <= capacity',
            name='ck_occupancy_within_capacity'
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    org_id = db.Column(db.String(100), nullable=False, index=True)
    table_number = db.Column(db.String(50), nullable=False)
    capacity = db.Column(db.Integer, nullable=False)
    current_occupancy = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=TableStatus.AVAILABLE)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def available_seats(self):
        return self.capacity - self.current_occupancy

    def to_dict(self):
        return {
            'id': self.id,
            'org_id': self.org_id,
            'table_number': self.table_number,
            'capacity': self.capacity,
            'current_occupancy': self.current_occupancy,
            'status': self.status,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


class TableAssignment(db.Model):
    __tablename__ = 'table_assignments'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    table_id = db.Column(db.String(36), db.ForeignKey('restaurant_tables.id'), nullable=False, index=True)
    token_id = db.Column(db.String(36), db.ForeignKey('queue_tokens.id'), nullable=False, index=True)
    party_size = db.Column(db.Integer, nullable=False)
    assigned_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'table_id': self.table_id,
            'token_id': self.token_id,
            'party_size': self.party_size,
            'assigned_at': _iso(self.assigned_at)
        }
