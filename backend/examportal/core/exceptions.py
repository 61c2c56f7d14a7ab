"""
Error taxonomy for the exam portal.

Session-blocking errors (camera, fullscreen) stop a session from leaving the
instructions screen. Data errors (missing exam, rejected submission, missing
identity) surface at submit time. Integrity violations are never exceptions.
"""


class ExamPortalError(Exception):
    """Base class for all portal errors"""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ExamNotFoundError(ExamPortalError, LookupError):
    def __init__(self, exam_id: str):
        super().__init__(f"Exam {exam_id} not found")
        self.exam_id = exam_id


class SubmissionNotFoundError(ExamPortalError, LookupError):
    pass


class SubmissionRejectedError(ExamPortalError):
    pass


class NotAuthenticatedError(ExamPortalError):
    pass


class PermissionDeniedError(ExamPortalError):
    pass


class CameraUnavailableError(ExamPortalError):
    pass


class FullscreenDeniedError(ExamPortalError):
    pass


class InvalidSessionStateError(ExamPortalError):
    pass
