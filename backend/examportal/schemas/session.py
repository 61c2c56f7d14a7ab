from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .exam import QuestionPublic
from .submission import ExamWarning, Submission


class SessionState(str, Enum):
    INSTRUCTIONS = "instructions"
    SECTION_INTRO = "section_intro"
    ANSWERING = "answering"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    FAILED = "failed"


# States in which the attempt is closed to answers, ticks and integrity events
CLOSED_STATES = frozenset({SessionState.SUBMITTING, SessionState.SUBMITTED, SessionState.FAILED})

# States in which the exam is running and fullscreen is enforced
STARTED_STATES = frozenset({SessionState.SECTION_INTRO, SessionState.ANSWERING})


class SubmitReason(str, Enum):
    MANUAL = "manual"
    ADVANCE = "advance"
    EXAM_TIME_UP = "exam_time_up"
    SECTION_TIME_UP = "section_time_up"
    WARNINGS_THRESHOLD = "warnings_threshold"


class Attempt(BaseModel):
    """In-memory, not yet persisted record of one exam sitting"""
    answers: Dict[str, str]
    current_section_index: int = 0
    current_question_index: int = 0
    warning_count: int = 0
    warnings: List[ExamWarning] = Field(default_factory=list)
    start_time: datetime
    end_time: Optional[datetime] = None

    @property
    def unanswered(self) -> List[str]:
        return [question_id for question_id, answer in self.answers.items() if not answer]


class SessionEvent(BaseModel):
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


class SessionSnapshot(BaseModel):
    exam_id: str
    title: str
    state: SessionState
    section_index: int
    section_count: int
    section_name: Optional[str] = None
    question_index: int
    question_count: int
    question: Optional[QuestionPublic] = None
    answers: Dict[str, str]
    unanswered_count: int
    remaining_time: str
    section_remaining_time: Optional[str] = None
    warning_count: int
    warnings_threshold: int
    warnings: List[ExamWarning]
    submit_reason: Optional[SubmitReason] = None
    submission: Optional[Submission] = None
    error: Optional[str] = None
