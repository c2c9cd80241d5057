"""
Seating errors

Every command either completes or raises one of these. Domain errors are
expected, user-driven outcomes; StoreFailure wraps the database layer.
"""


class SeatingError(Exception):
    status_code = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {
            'success': False,
            'error': self.message,
            'code': type(self).__name__
        }


class InvalidRequest(SeatingError):
    status_code = 400


class NotFound(SeatingError):
    status_code = 404

    def __init__(self, kind, record_id):
        super().__init__(f'{kind} {record_id} not found')
        self.kind = kind
        self.record_id = record_id


class IllegalTransition(SeatingError):
    status_code = 409

    def __init__(self, action, status, message=None):
        super().__init__(message or f"Cannot {action} a token that is {status}")
        self.action = action
        self.status = status

    def to_dict(self):
        data = super().to_dict()
        data.update({'action': self.action, 'status': self.status})
        return data


class CapacityExceeded(SeatingError):
    status_code = 409

    def __init__(self, available, requested):
        super().__init__(f'Not enough seats! Only {available} seats available.')
        self.available = available
        self.requested = requested

    def to_dict(self):
        data = super().to_dict()
        data.update({'available': self.available, 'requested': self.requested})
        return data


class NothingToUndo(SeatingError):
    status_code = 409

    def __init__(self):
        super().__init__('Nothing to undo')


class StoreFailure(SeatingError):
    status_code = 503
