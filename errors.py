"""
Error taxonomy for the fee ledger.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer answers with.
"""


class LedgerError(Exception):
    status_code = 400
    default_code = 'LEDGER_ERROR'

    def __init__(self, message, code=None, status_code=None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'error': self.message, 'code': self.code}


class ValidationError(LedgerError):
    """Missing field, wrong type, out-of-range value or invalid enum member."""
    default_code = 'VALIDATION_ERROR'


class NotFoundError(LedgerError):
    status_code = 404
    default_code = 'NOT_FOUND'


class ConflictError(LedgerError):
    """Uniqueness violation (invoice number, transaction id)."""
    default_code = 'CONFLICT'


class StateError(LedgerError):
    """Operation not permitted in the record's current state."""
    default_code = 'INVALID_STATE'
