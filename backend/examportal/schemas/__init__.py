from .exam import (
    Exam,
    ExamCreate,
    ExamPublic,
    ExamStatus,
    ExamSummary,
    MultipleChoiceQuestion,
    Question,
    QuestionPublic,
    QuestionType,
    Section,
    ShortAnswerQuestion,
    TrueFalseQuestion,
)
from .submission import EvaluationRequest, ExamWarning, StudentResult, Submission, WarningType
from .session import Attempt, SessionEvent, SessionSnapshot, SessionState, SubmitReason
from .user import CurrentUser, UserRole

__all__ = [
    "Exam",
    "ExamCreate",
    "ExamPublic",
    "ExamStatus",
    "ExamSummary",
    "MultipleChoiceQuestion",
    "Question",
    "QuestionPublic",
    "QuestionType",
    "Section",
    "ShortAnswerQuestion",
    "TrueFalseQuestion",
    "EvaluationRequest",
    "ExamWarning",
    "StudentResult",
    "Submission",
    "WarningType",
    "Attempt",
    "SessionEvent",
    "SessionSnapshot",
    "SessionState",
    "SubmitReason",
    "CurrentUser",
    "UserRole",
]
