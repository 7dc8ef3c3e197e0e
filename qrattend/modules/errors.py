"""
Error taxonomy for the attendance system.

Core managers return these as values inside their results; the Flask layer
raises them and maps them to JSON responses with the matching status code.
"""

from typing import Any, Dict, Optional


class AttendanceError(Exception):
    """Base class for every error surfaced to a caller."""

    status_code = 500
    error_type = 'internal_error'
    default_message = 'An internal error occurred'

    def __init__(self, message: Optional[str] = None, payload: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.payload = payload or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'success': False,
            'message': self.message,
            'error_type': self.error_type
        }
        if self.payload:
            result['data'] = self.payload
        return result


class ValidationError(AttendanceError):
    status_code = 400
    error_type = 'validation_error'
    default_message = 'Validation failed'


class InvalidTokenError(ValidationError):
    # One message for malformed, forged and expired tokens alike
    error_type = 'invalid_token'
    default_message = 'Invalid or expired QR code'


class AuthenticationError(AttendanceError):
    status_code = 401
    error_type = 'authentication_error'
    default_message = 'Authentication required'


class AuthorizationError(AttendanceError):
    status_code = 403
    error_type = 'authorization_error'
    default_message = 'You are not authorized to perform this action'


class NotFoundError(AttendanceError):
    status_code = 404
    error_type = 'not_found'
    default_message = 'Resource not found'


class ConflictError(AttendanceError):
    status_code = 409
    error_type = 'conflict'
    default_message = 'Resource already exists'


class AlreadyMarkedError(ConflictError):
    error_type = 'already_marked'
    default_message = 'Attendance already marked for this session'


class RateExceeded(AttendanceError):
    status_code = 429
    error_type = 'rate_exceeded'
    default_message = 'Too many attempts, please wait before scanning again'


class InternalError(AttendanceError):
    pass
