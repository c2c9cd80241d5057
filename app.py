"""
Walk-in Queue & Seating - Main Application
Queue state machine and seat ledger over HTTP, with real-time change
broadcasts over WebSocket
"""

import logging

from flask import Flask, request, jsonify
from flask_socketio import SocketIO
from flask_cors import CORS

from config import Config, setup_logging
from models import db
from errors import SeatingError, InvalidRequest
from notifications import ChangeNotifier, TOKENS, TABLES, ASSIGNMENTS
from ledger import SeatLedger
from queue_engine import QueueStateMachine
from projection import build_board, token_view, table_view, assignable_tables

setup_logging(Config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config.from_object(Config)

# Initialize extensions
db.init_app(app)
socketio = SocketIO(app, cors_allowed_origins=app.config['CORS_ORIGINS'], async_mode='threading')
CORS(app, origins=app.config['CORS_ORIGINS'])

# Create tables
with app.app_context():
    db.create_all()

# Engine
notifier = ChangeNotifier()
ledger = SeatLedger(notifier=notifier, lock_timeout=app.config['LOCK_TIMEOUT_SECONDS'])
queue = QueueStateMachine(
    ledger,
    notifier=notifier,
    allow_cancel_on_hold=app.config['ALLOW_CANCEL_ON_HOLD'],
    duplicate_phone_min_length=app.config['DUPLICATE_PHONE_MIN_LENGTH']
)


# Broadcasts carry no data; clients re-read /api/board
def broadcast_queue_change(record_type):
    socketio.emit('queue_update', {'changed': record_type}, namespace='/')


def broadcast_table_change(record_type):
    socketio.emit('table_update', {'changed': record_type}, namespace='/')


notifier.subscribe(TOKENS, broadcast_queue_change)
notifier.subscribe(TABLES, broadcast_table_change)
notifier.subscribe(ASSIGNMENTS, broadcast_table_change)


# Helper functions
def json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidRequest('A JSON object body is required')
    return data


def org_param(data=None):
    org_id = request.args.get('org') or (data or {}).get('org')
    return org_id or app.config['DEFAULT_ORG_ID']


def error_response(e):
    """Map an exception raised by a route to the JSON error reply"""
    if isinstance(e, SeatingError):
        logger.warning('%s %s rejected: %s', request.method, request.path, e.message)
        return jsonify(e.to_dict()), e.status_code
    db.session.rollback()
    logger.exception('Unhandled error on %s %s', request.method, request.path)
    return jsonify({'success': False, 'error': str(e)}), 500


def get_board(org_id):
    tokens = queue.day_tokens(org_id)
    tables = ledger.list_tables(org_id)
    assignments = ledger.assignments_for_tables([t.id for t in tables])
    return build_board(tokens, tables, assignments)


def get_token_view(token_id):
    token = queue.get_token(token_id)
    tables = ledger.list_tables(token.org_id)
    assignments = ledger.assignments_for_token(token_id)
    return token_view(token, assignments, {t.id: t for t in tables}), tables


# Routes
@app.route('/')
def index():
    return jsonify({
        'success': True,
        'message': 'Queue & seating service is running. Change events on the Socket.IO namespace /.'
    })


@app.route('/api/board')
def board_api():
    """Active queue, tables and counters for one organization"""
    try:
        org_id = org_param()
        return jsonify({'success': True, 'org_id': org_id, **get_board(org_id)})
    except Exception as e:
        return error_response(e)


# Queue routes
@app.route('/api/tokens', methods=['POST'])
def create_token_api():
    """Add a walk-in party to today's queue"""
    try:
        data = json_body()
        org_id = org_param(data)

        # Advisory only; the party is queued either way
        duplicate = queue.check_duplicate(org_id, data.get('phone'))

        token = queue.create_token(
            org_id,
            data.get('name'),
            data.get('people_count'),
            phone=data.get('phone'),
            notes=data.get('notes')
        )
        return jsonify({
            'success': True,
            'token': token.to_dict(),
            'duplicate': duplicate.to_dict() if duplicate else None
        }), 201
    except Exception as e:
        return error_response(e)


@app.route('/api/tokens/check-duplicate')
def check_duplicate_api():
    """Warn before queueing a phone number that is already waiting"""
    try:
        org_id = org_param()
        existing = queue.check_duplicate(org_id, request.args.get('phone'))
        return jsonify({
            'success': True,
            'found': existing is not None,
            'token': existing.to_dict() if existing else None
        })
    except Exception as e:
        return error_response(e)


@app.route('/api/tokens/<token_id>')
def get_token_api(token_id):
    try:
        view, _ = get_token_view(token_id)
        return jsonify({'success': True, 'token': view})
    except Exception as e:
        return error_response(e)


@app.route('/api/tokens/<token_id>', methods=['PATCH'])
def update_token_api(token_id):
    """Edit name, party size, phone or notes"""
    try:
        token = queue.update_fields(token_id, json_body())
        return jsonify({'success': True, 'token': token.to_dict()})
    except Exception as e:
        return error_response(e)


@app.route('/api/tokens/<token_id>/assignable-tables')
def assignable_tables_api(token_id):
    """Tables with free seats for this party, with the squeeze each implies"""
    try:
        view, tables = get_token_view(token_id)
        return jsonify({'success': True, 'tables': assignable_tables(view, tables)})
    except Exception as e:
        return error_response(e)


@app.route('/api/tokens/<token_id>/complete', methods=['POST'])
def complete_token_api(token_id):
    """Mark a seated party done and free its seats"""
    try:
        token, freed = queue.complete_and_release(token_id)
        return jsonify({'success': True, 'token': token.to_dict(), 'seats_released': freed})
    except Exception as e:
        return error_response(e)


@app.route('/api/tokens/<token_id>/release', methods=['POST'])
def release_token_api(token_id):
    """Free every seat a party holds"""
    try:
        freed = ledger.release_token(token_id)
        return jsonify({'success': True, 'seats_released': freed})
    except Exception as e:
        return error_response(e)


@app.route('/api/tokens/<token_id>/<action>', methods=['POST'])
def transition_api(token_id, action):
    """call, seat, done, cancel, no_show, hold or unhold"""
    try:
        token = queue.transition(token_id, action)
        undo = queue.pending_undo(token.org_id)
        return jsonify({
            'success': True,
            'token': token.to_dict(),
            'undo': undo.to_dict() if undo else None
        })
    except Exception as e:
        return error_response(e)


@app.route('/api/undo')
def pending_undo_api():
    try:
        record = queue.pending_undo(org_param())
        return jsonify({'success': True, 'undo': record.to_dict() if record else None})
    except Exception as e:
        return error_response(e)


@app.route('/api/undo', methods=['POST'])
def undo_api():
    """Roll back the status change of the last queue action"""
    try:
        token = queue.undo(org_param(request.get_json(silent=True)))
        return jsonify({'success': True, 'token': token.to_dict()})
    except Exception as e:
        return error_response(e)


@app.route('/api/reset', methods=['POST'])
def reset_api():
    """Delete today's queue - cannot be undone"""
    try:
        org_id = org_param(request.get_json(silent=True))
        deleted = queue.reset_day(org_id)
        return jsonify({
            'success': True,
            'deleted': deleted,
            'message': f'Queue reset for {org_id}. {deleted} tokens removed.'
        })
    except Exception as e:
        return error_response(e)


# Table routes
@app.route('/api/tables')
def list_tables_api():
    try:
        tables = ledger.list_tables(org_param())
        assignments = ledger.assignments_for_tables([t.id for t in tables])
        return jsonify({'success': True, 'tables': [table_view(t, assignments) for t in tables]})
    except Exception as e:
        return error_response(e)


@app.route('/api/tables', methods=['POST'])
def add_table_api():
    try:
        data = json_body()
        table = ledger.add_table(
            org_param(data),
            data.get('table_number'),
            data.get('capacity'),
            status=data.get('status', 'available')
        )
        return jsonify({'success': True, 'table': table.to_dict()}), 201
    except Exception as e:
        return error_response(e)


@app.route('/api/tables/<table_id>', methods=['PATCH'])
def update_table_api(table_id):
    try:
        table = ledger.update_table(table_id, json_body())
        return jsonify({'success': True, 'table': table.to_dict()})
    except Exception as e:
        return error_response(e)


@app.route('/api/tables/<table_id>', methods=['DELETE'])
def delete_table_api(table_id):
    try:
        ledger.delete_table(table_id)
        return jsonify({'success': True})
    except Exception as e:
        return error_response(e)


@app.route('/api/tables/<table_id>/release', methods=['POST'])
def release_table_api(table_id):
    """Free the whole table, whoever is sitting there"""
    try:
        freed = ledger.release_table(table_id)
        return jsonify({'success': True, 'seats_released': freed})
    except Exception as e:
        return error_response(e)


@app.route('/api/assignments', methods=['POST'])
def assign_api():
    """Seat some or all of a party at a table"""
    try:
        data = json_body()
        assignment = ledger.assign(data.get('table_id'), data.get('token_id'), data.get('party_size'))
        return jsonify({
            'success': True,
            'assignment': assignment.to_dict(),
            'available_seats': ledger.available_seats(assignment.table_id)
        }), 201
    except Exception as e:
        return error_response(e)


if __name__ == '__main__':
    socketio.run(app, debug=True, host='0.0.0.0', port=5000)
