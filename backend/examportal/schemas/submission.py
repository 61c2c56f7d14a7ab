from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from ..utils.timezone import ensure_aware, utc_now


class WarningType(str, Enum):
    FULLSCREEN_EXIT = "fullscreen_exit"
    TAB_SWITCH = "tab_switch"
    NO_FACE = "no_face"
    MULTIPLE_FACES = "multiple_faces"


WARNING_DESCRIPTIONS = {
    WarningType.FULLSCREEN_EXIT: "Exiting fullscreen during the exam is not allowed!",
    WarningType.TAB_SWITCH: "Tab switching is not allowed during the exam!",
    WarningType.NO_FACE: "No face detected! Please ensure your face is visible.",
    WarningType.MULTIPLE_FACES: "Multiple faces detected! Only you should be visible.",
}


class ExamWarning(BaseModel):
    """One recorded integrity violation; immutable once recorded"""
    model_config = ConfigDict(frozen=True)

    type: WarningType
    timestamp: datetime = Field(default_factory=utc_now)
    image_url: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def make_aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @property
    def description(self) -> str:
        return WARNING_DESCRIPTIONS[self.type]


class Submission(BaseModel):
    exam_id: str
    student_id: str
    answers: Dict[str, str]
    start_time: datetime
    end_time: datetime
    time_taken: int
    score: int
    max_score: int
    percentage: int
    question_scores: Dict[str, int] = Field(default_factory=dict)
    warning_count: int = 0
    warnings: List[ExamWarning] = Field(default_factory=list)
    needs_evaluation: bool = False
    evaluation_complete: bool = True
    passed: bool = False
    evaluated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("start_time", "end_time")
    @classmethod
    def make_aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @field_validator("evaluated_at")
    @classmethod
    def make_evaluated_at_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(value) if value is not None else None


class EvaluationRequest(BaseModel):
    """Manual points for every short-answer question of one submission"""
    scores: Dict[str, int]


class StudentResult(Submission):
    exam_title: str
    exam_subject: str
    exam_date: datetime
