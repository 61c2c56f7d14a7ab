from sqlalchemy import Column, String, DateTime, ForeignKey, Boolean, Integer, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from ..core.database import Base
from ..utils.timezone import utc_now


class ExamRecord(Base):
    __tablename__ = "exams"

    id = Column(String, primary_key=True, index=True)
    title = Column(String, nullable=False)
    subject = Column(String, default="")
    semester = Column(String, nullable=True)
    department = Column(String, nullable=True)
    created_by = Column(String, index=True, nullable=False)

    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    duration = Column(Integer, nullable=False)                       # minutes
    status = Column(String, default="scheduled", index=True)

    # Question/section documents as produced by the exam schemas
    questions = Column(JSON, nullable=False)
    sections = Column(JSON, nullable=True)
    assigned_students = Column(JSON, default=list)
    instructions = Column(JSON, default=list)

    warnings_threshold = Column(Integer, default=3)
    passing_score = Column(Integer, default=40)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    submissions = relationship("SubmissionRecord", back_populates="exam")


class SubmissionRecord(Base):
    """One submission per (exam, student); a resubmission overwrites it"""
    __tablename__ = "exam_submissions"
    __table_args__ = (UniqueConstraint("exam_id", "student_id", name="uq_submission_exam_student"),)

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(String, ForeignKey("exams.id"), nullable=False, index=True)
    student_id = Column(String, nullable=False, index=True)

    answers = Column(JSON, nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    time_taken = Column(Integer, default=0)                          # minutes

    score = Column(Integer, default=0)
    max_score = Column(Integer, default=0)
    percentage = Column(Integer, default=0)
    question_scores = Column(JSON, default=dict)

    warning_count = Column(Integer, default=0)
    warnings = Column(JSON, default=list)

    needs_evaluation = Column(Boolean, default=False)
    evaluation_complete = Column(Boolean, default=True)
    passed = Column(Boolean, default=False)
    evaluated_at = Column(DateTime(timezone=True), nullable=True)

    submitted_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    exam = relationship("ExamRecord", back_populates="submissions")
