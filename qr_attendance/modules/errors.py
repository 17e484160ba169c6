"""
Errors Module - QR Attendance Verification Engine

Exception classes signalled by session lifecycle operations and the
persistence layer, plus the rejection reasons a scan can come back with.
Scan rejections are ordinary results, not exceptions: the scan verifier
returns them so the caller can tell the student exactly what went wrong.
"""

from typing import Dict


class AttendanceError(Exception):
    """Base class for errors surfaced to the caller."""

    error_type = 'attendance_error'
    http_status = 400

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__

    def to_dict(self) -> Dict[str, str]:
        return {
            'success': False,
            'error_type': self.error_type,
            'message': self.message
        }


class NotFound(AttendanceError):
    """Attendance session not found."""
    error_type = 'not_found'
    http_status = 404


class Forbidden(AttendanceError):
    """Only the session owner may perform this operation."""
    error_type = 'forbidden'
    http_status = 403


class InvalidState(AttendanceError):
    """Operation is not allowed in the session's current state."""
    error_type = 'invalid_state'
    http_status = 409


class ValidationError(AttendanceError):
    """Invalid input."""
    error_type = 'validation_error'
    http_status = 400


class Unauthenticated(AttendanceError):
    """Authentication required."""
    error_type = 'unauthenticated'
    http_status = 401


class TransientFailure(AttendanceError):
    """Storage is temporarily unavailable, please retry."""
    error_type = 'transient_failure'
    http_status = 503


class RejectionReason:
    """Reasons a scan can be rejected, in the order they are checked."""

    INVALID_TOKEN = 'invalid_token'
    EXPIRED = 'expired'
    SESSION_NOT_ACTIVE = 'session_not_active'
    ALREADY_MARKED = 'already_marked'
    LOCATION_REQUIRED = 'location_required'
    OUT_OF_RANGE = 'out_of_range'

    MESSAGES = {
        INVALID_TOKEN: 'This QR code is not valid. Please scan the code shown by your instructor.',
        EXPIRED: 'This QR code has expired. Ask your instructor to refresh the code.',
        SESSION_NOT_ACTIVE: 'This attendance session is not accepting scans.',
        ALREADY_MARKED: 'Your attendance is already marked for this session.',
        LOCATION_REQUIRED: 'Location access is required to mark attendance for this session.',
        OUT_OF_RANGE: 'You must be closer to the classroom to mark attendance.'
    }

    HTTP_STATUS = {
        INVALID_TOKEN: 400,
        EXPIRED: 410,
        SESSION_NOT_ACTIVE: 400,
        ALREADY_MARKED: 409,
        LOCATION_REQUIRED: 400,
        OUT_OF_RANGE: 403
    }

    @classmethod
    def message_for(cls, reason: str) -> str:
        return cls.MESSAGES.get(reason, 'Attendance could not be recorded.')
