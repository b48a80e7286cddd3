"""Exception hierarchy for the academic alert service."""

from typing import Optional


class AcademicAlertError(Exception):
    """Base class for all service errors"""


class DataError(AcademicAlertError):
    """Malformed or missing enrollment data for a single student"""

    def __init__(self, message: str, student_id: Optional[int] = None, stage: Optional[str] = None):
        super().__init__(message)
        self.student_id = student_id
        self.stage = stage


class ChannelError(AcademicAlertError):
    """A notification could not be handed to the channel"""


class RecordStoreUnavailable(AcademicAlertError):
    """The record store cannot be reached"""


class BatchAbort(AcademicAlertError):
    """A batch run cannot continue and must be marked failed"""


class BatchAlreadyRunning(AcademicAlertError):
    """A batch run was requested while another one is in progress"""


class IdentityVerificationError(AcademicAlertError):
    """The identity verification endpoint failed or rejected the applicant"""

    def __init__(self, message: str, rejected: bool = False):
        super().__init__(message)
        self.rejected = rejected


class EnrollmentRuleViolation(AcademicAlertError):
    """An enrollment request broke a validation rule"""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class InvalidTransition(EnrollmentRuleViolation):
    """An approval decision was made on a request in the wrong state"""

    def __init__(self, message: str):
        super().__init__(message, status_code=409)
