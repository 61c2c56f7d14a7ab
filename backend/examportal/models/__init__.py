from .exam import ExamRecord, SubmissionRecord

__all__ = [
    "ExamRecord",
    "SubmissionRecord",
]
