"""
API Error Types
Exceptions raised by services and routes, rendered as JSON by the app error handler
"""


class ApiError(Exception):
    """Base error carrying an HTTP status and a machine-readable code"""
    status_code = 500
    code = 'internal_error'

    def __init__(self, message, code=None, details=None, status_code=None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self):
        return {
            'statusCode': self.status_code,
            'message': self.message,
            'code': self.code,
            'details': self.details,
        }


class ValidationError(ApiError):
    status_code = 400
    code = 'validation_error'


class UnauthorizedError(ApiError):
    status_code = 401
    code = 'unauthorized'


class ForbiddenError(ApiError):
    status_code = 403
    code = 'forbidden'


class NotFoundError(ApiError):
    status_code = 404
    code = 'not_found'


class ConflictError(ApiError):
    """Rejected state transition or duplicate resource"""
    status_code = 409
    code = 'conflict'


class ConfigurationError(ApiError):
    """A required provider setting is missing; never retried"""
    status_code = 500
    code = 'configuration_error'


class ProviderError(ApiError):
    """An external provider (rooms, push, relay) call failed"""
    status_code = 502
    code = 'provider_error'


class ServiceUnavailableError(ApiError):
    status_code = 503
    code = 'service_unavailable'
