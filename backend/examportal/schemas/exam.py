from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from ..core.config import settings
from ..utils.timezone import ensure_aware


class QuestionType(str, Enum):
    MULTIPLE_CHOICE = "multiple-choice"
    TRUE_FALSE = "true-false"
    SHORT_ANSWER = "short-answer"


class ExamStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"


class QuestionBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    text: str
    points: int = Field(gt=0)
    section: Optional[str] = None


class ChoiceQuestion(QuestionBase):
    options: List[str]
    correct_answer: str

    @model_validator(mode="after")
    def check_correct_answer(self):
        # correct_answer is the string-encoded index of the right option
        if not self.correct_answer.isdigit() or int(self.correct_answer) >= len(self.options):
            raise ValueError(
                f"correct_answer must be an option index between 0 and {len(self.options) - 1}"
            )
        return self


class MultipleChoiceQuestion(ChoiceQuestion):
    type: Literal["multiple-choice"] = "multiple-choice"
    options: List[str] = Field(min_length=2)


class TrueFalseQuestion(ChoiceQuestion):
    type: Literal["true-false"] = "true-false"
    options: List[str] = Field(default_factory=lambda: ["True", "False"], min_length=2, max_length=2)


class ShortAnswerQuestion(QuestionBase):
    type: Literal["short-answer"] = "short-answer"
    model_answer: str = ""


Question = Annotated[
    Union[MultipleChoiceQuestion, TrueFalseQuestion, ShortAnswerQuestion],
    Field(discriminator="type"),
]


class Section(BaseModel):
    id: str
    name: str
    time_limit: int = Field(gt=0)
    questions: List[Question] = Field(min_length=1)


class ExamBase(BaseModel):
    title: str
    subject: str = ""
    semester: Optional[str] = None
    department: Optional[str] = None
    start_time: datetime
    end_time: datetime
    duration: int = Field(gt=0)
    questions: List[Question] = Field(default_factory=list)
    sections: Optional[List[Section]] = None
    assigned_students: List[str] = Field(default_factory=list)
    warnings_threshold: int = Field(default_factory=lambda: settings.default_warnings_threshold, ge=1)
    passing_score: int = Field(default_factory=lambda: settings.default_passing_score, ge=0, le=100)
    instructions: List[str] = Field(default_factory=list)

    @field_validator("start_time", "end_time")
    @classmethod
    def make_aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @model_validator(mode="after")
    def check_structure(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")

        if self.sections:
            names = [section.name for section in self.sections]
            if len(set(names)) != len(names):
                raise ValueError("section names must be unique")

            flattened = []
            for section in self.sections:
                for question in section.questions:
                    if question.section is None:
                        question.section = section.name
                    elif question.section != section.name:
                        raise ValueError(
                            f"question {question.id} is tagged '{question.section}' but listed in section '{section.name}'"
                        )
                    flattened.append(question)

            if self.questions and [q.id for q in self.questions] != [q.id for q in flattened]:
                raise ValueError("questions must be exactly the concatenation of the section question lists")
            self.questions = flattened
        else:
            self.sections = None
            for question in self.questions:
                if question.section is not None:
                    raise ValueError(f"question {question.id} is tagged with a section but the exam has none")

        if not self.questions:
            raise ValueError("an exam needs at least one question")

        ids = [q.id for q in self.questions]
        if len(set(ids)) != len(ids):
            raise ValueError("question ids must be unique")
        return self

    @property
    def is_sectioned(self) -> bool:
        return bool(self.sections)

    @property
    def all_questions(self) -> List[Question]:
        return list(self.questions)

    @property
    def question_map(self) -> Dict[str, Question]:
        return {q.id: q for q in self.questions}

    @property
    def max_score(self) -> int:
        return sum(q.points for q in self.questions)

    @property
    def has_subjective_questions(self) -> bool:
        return any(isinstance(q, ShortAnswerQuestion) for q in self.questions)

    @property
    def section_count(self) -> int:
        return len(self.sections) if self.sections else 1

    def section_questions(self, index: int) -> List[Question]:
        """Questions of the section at index; an unsectioned exam is one implicit section"""
        if not self.sections:
            return list(self.questions)
        return list(self.sections[index].questions)


class ExamCreate(ExamBase):
    status: ExamStatus = ExamStatus.SCHEDULED


class Exam(ExamBase):
    id: str
    created_by: str
    status: ExamStatus = ExamStatus.SCHEDULED


class QuestionPublic(BaseModel):
    """Student-facing question without the answer key"""
    id: str
    type: QuestionType
    text: str
    points: int
    section: Optional[str] = None
    options: Optional[List[str]] = None

    @classmethod
    def from_question(cls, question: Question) -> "QuestionPublic":
        return cls(
            id=question.id,
            type=QuestionType(question.type),
            text=question.text,
            points=question.points,
            section=question.section,
            options=getattr(question, "options", None),
        )


class SectionPublic(BaseModel):
    id: str
    name: str
    time_limit: int
    questions: List[QuestionPublic]


class ExamPublic(BaseModel):
    id: str
    title: str
    subject: str
    semester: Optional[str] = None
    department: Optional[str] = None
    start_time: datetime
    end_time: datetime
    duration: int
    status: ExamStatus
    warnings_threshold: int
    passing_score: int
    instructions: List[str]
    max_score: int
    questions: List[QuestionPublic]
    sections: Optional[List[SectionPublic]] = None

    @classmethod
    def from_exam(cls, exam: Exam) -> "ExamPublic":
        sections = None
        if exam.sections:
            sections = [
                SectionPublic(
                    id=section.id,
                    name=section.name,
                    time_limit=section.time_limit,
                    questions=[QuestionPublic.from_question(q) for q in section.questions],
                )
                for section in exam.sections
            ]
        return cls(
            id=exam.id,
            title=exam.title,
            subject=exam.subject,
            semester=exam.semester,
            department=exam.department,
            start_time=exam.start_time,
            end_time=exam.end_time,
            duration=exam.duration,
            status=exam.status,
            warnings_threshold=exam.warnings_threshold,
            passing_score=exam.passing_score,
            instructions=exam.instructions,
            max_score=exam.max_score,
            questions=[QuestionPublic.from_question(q) for q in exam.questions],
            sections=sections,
        )


class ExamSummary(BaseModel):
    id: str
    title: str
    subject: str
    semester: Optional[str] = None
    created_by: str
    start_time: datetime
    end_time: datetime
    duration: int
    status: ExamStatus
    question_count: int
    max_score: int
    score: Optional[int] = None
    percentage: Optional[int] = None
