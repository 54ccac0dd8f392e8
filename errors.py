"""Domain error taxonomy.

Services raise these and never build HTTP responses themselves; the resource
layer in ``app.py`` turns them into ``{'error': ..., 'kind': ...}`` payloads.
"""


class ClinicError(Exception):
    kind = 'clinic_error'
    status_code = 400

    def __init__(self, message='', details=None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_dict(self):
        payload = {'error': self.message, 'kind': self.kind}
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(ClinicError, ValueError):
    kind = 'validation_error'
    status_code = 400


class InsufficientStockError(ValidationError):
    kind = 'insufficient_stock'

    def __init__(self, item_name, available, requested):
        super().__init__(
            f"Insufficient quantity for {item_name}. Available: {available}, Requested: {requested}",
            details={'item': item_name, 'available': available, 'requested': requested},
        )


class AuthenticationError(ClinicError):
    kind = 'unauthorized'
    status_code = 401


class ForbiddenError(ClinicError):
    kind = 'forbidden'
    status_code = 403


class NotFoundError(ClinicError):
    kind = 'not_found'
    status_code = 404


class ConflictError(ClinicError):
    kind = 'conflict'
    status_code = 409
