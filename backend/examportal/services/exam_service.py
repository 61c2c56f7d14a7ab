from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from pydantic import ValidationError
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from datetime import datetime
import logging
import uuid

from ..core.cache import CacheManager, exam_cache_key
from ..core.config import settings
from ..core.exceptions import (
    ExamNotFoundError,
    PermissionDeniedError,
    SubmissionNotFoundError,
    SubmissionRejectedError,
)
from ..models.exam import ExamRecord, SubmissionRecord
from ..schemas.exam import Exam, ExamCreate, ExamStatus, ExamSummary
from ..schemas.submission import ExamWarning, StudentResult, Submission
from ..schemas.user import CurrentUser
from .scoring import apply_manual_evaluation, build_submission
from ..utils.timezone import ensure_aware, utc_now

logger = logging.getLogger(__name__)

# Statuses a schedule change can never move an exam out of
STICKY_STATUSES = (ExamStatus.DRAFT, ExamStatus.COMPLETED)


def derive_status(status: str, start_time: datetime, end_time: datetime, now: Optional[datetime] = None) -> ExamStatus:
    status = ExamStatus(status)
    if status in STICKY_STATUSES:
        return status
    now = now or utc_now()
    if now < ensure_aware(start_time):
        return ExamStatus.SCHEDULED
    if now <= ensure_aware(end_time):
        return ExamStatus.ACTIVE
    return ExamStatus.EXPIRED


def record_to_exam(record: ExamRecord) -> Exam:
    return Exam.model_validate({
        "id": record.id,
        "title": record.title,
        "subject": record.subject or "",
        "semester": record.semester,
        "department": record.department,
        "created_by": record.created_by,
        "start_time": record.start_time,
        "end_time": record.end_time,
        "duration": record.duration,
        "status": record.status,
        "questions": record.questions,
        "sections": record.sections,
        "assigned_students": record.assigned_students or [],
        "warnings_threshold": record.warnings_threshold,
        "passing_score": record.passing_score,
        "instructions": record.instructions or [],
    })


def submission_columns(submission: Submission) -> Dict[str, Any]:
    values = submission.model_dump(exclude={"warnings"})
    values["warnings"] = [warning.model_dump(mode="json") for warning in submission.warnings]
    return values


class ExamService:
    def __init__(self, db: AsyncSession, cache: Optional[CacheManager] = None):
        self.db = db
        self.cache = cache

    async def _get_exam_record(self, exam_id: str) -> Optional[ExamRecord]:
        result = await self.db.execute(select(ExamRecord).filter(ExamRecord.id == exam_id))
        return result.scalars().first()

    async def _get_submission_record(self, exam_id: str, student_id: str) -> Optional[SubmissionRecord]:
        result = await self.db.execute(
            select(SubmissionRecord).filter(
                SubmissionRecord.exam_id == exam_id,
                SubmissionRecord.student_id == student_id,
            )
        )
        return result.scalars().first()

    async def _invalidate(self, exam_id: str):
        if self.cache is not None:
            await self.cache.adelete(exam_cache_key(exam_id))

    async def fetch_exam(self, exam_id: str) -> Optional[Exam]:
        """Exam definition, served from the cache when possible"""
        if self.cache is not None:
            cached = await self.cache.aget(exam_cache_key(exam_id))
            if cached:
                try:
                    return Exam.model_validate(cached)
                except ValidationError as e:
                    logger.warning(f"Discarding unreadable cached exam {exam_id}: {e}")
                    await self._invalidate(exam_id)

        record = await self._get_exam_record(exam_id)
        if not record:
            return None

        exam = record_to_exam(record)
        if self.cache is not None:
            await self.cache.aset(exam_cache_key(exam_id), exam.model_dump(mode="json"), ttl=settings.exam_cache_ttl)
        return exam

    async def require_exam(self, exam_id: str) -> Exam:
        exam = await self.fetch_exam(exam_id)
        if exam is None:
            raise ExamNotFoundError(exam_id)
        return exam

    async def create_exam(self, data: ExamCreate, creator: CurrentUser) -> Exam:
        if not creator.is_staff:
            raise PermissionDeniedError("Only teachers can create exams")

        payload = data.model_dump(mode="json")
        status = data.status
        if status != ExamStatus.DRAFT:
            status = derive_status(status, data.start_time, data.end_time)

        record = ExamRecord(
            id=uuid.uuid4().hex,
            title=data.title,
            subject=data.subject,
            semester=data.semester,
            department=data.department,
            created_by=creator.id,
            start_time=data.start_time,
            end_time=data.end_time,
            duration=data.duration,
            status=status.value,
            questions=payload["questions"],
            sections=payload["sections"],
            assigned_students=payload["assigned_students"],
            instructions=payload["instructions"],
            warnings_threshold=data.warnings_threshold,
            passing_score=data.passing_score,
        )
        self.db.add(record)
        await self.db.commit()
        await self.db.refresh(record)

        logger.info(f"Exam {record.id} '{record.title}' created by {creator.id} ({len(data.questions)} questions)")
        return record_to_exam(record)

    def _check_owner(self, exam: Exam, requester: CurrentUser):
        if requester.is_admin:
            return
        if not requester.is_staff or exam.created_by != requester.id:
            raise PermissionDeniedError("Not enough permissions for this exam")

    async def submit_attempt(
        self,
        exam_id: str,
        student_id: str,
        answers: Mapping[str, str],
        warning_count: int,
        warnings: Sequence[ExamWarning],
        start_time: datetime,
        end_time: datetime,
        time_taken: Optional[int] = None,
    ) -> Submission:
        """Score and store an attempt; a previous submission for the pair is overwritten"""
        record = await self._get_exam_record(exam_id)
        if not record:
            raise ExamNotFoundError(exam_id)
        exam = record_to_exam(record)

        if exam.assigned_students and student_id not in exam.assigned_students:
            raise SubmissionRejectedError(f"Student {student_id} is not assigned to exam {exam_id}")

        submission = build_submission(
            exam,
            student_id=student_id,
            answers=answers,
            warning_count=warning_count,
            warnings=warnings,
            start_time=start_time,
            end_time=end_time,
            time_taken=time_taken,
        )
        values = submission_columns(submission)

        existing = await self._get_submission_record(exam_id, student_id)
        if existing:
            logger.info(f"Overwriting previous submission of {student_id} for exam {exam_id}")
            for key, value in values.items():
                setattr(existing, key, value)
            existing.submitted_at = utc_now()
        else:
            self.db.add(SubmissionRecord(**values))
        await self.db.commit()

        logger.info(
            f"Submission stored: exam={exam_id} student={student_id} "
            f"score={submission.score}/{submission.max_score} warnings={warning_count}"
        )
        return submission

    async def get_submission(self, exam_id: str, student_id: str) -> Optional[Submission]:
        record = await self._get_submission_record(exam_id, student_id)
        return Submission.model_validate(record) if record else None

    async def get_exam_submissions(self, exam_id: str, requester: CurrentUser) -> List[Submission]:
        exam = await self.require_exam(exam_id)
        self._check_owner(exam, requester)

        result = await self.db.execute(
            select(SubmissionRecord)
            .filter(SubmissionRecord.exam_id == exam_id)
            .order_by(SubmissionRecord.submitted_at.desc())
        )
        return [Submission.model_validate(record) for record in result.scalars().all()]

    def _summary(self, record: ExamRecord, status: ExamStatus, submission: Optional[SubmissionRecord] = None) -> ExamSummary:
        return ExamSummary(
            id=record.id,
            title=record.title,
            subject=record.subject or "",
            semester=record.semester,
            created_by=record.created_by,
            start_time=ensure_aware(record.start_time),
            end_time=ensure_aware(record.end_time),
            duration=record.duration,
            status=status,
            question_count=len(record.questions or []),
            max_score=sum(q.get("points", 0) for q in record.questions or []),
            score=submission.score if submission else None,
            percentage=submission.percentage if submission else None,
        )

    async def list_exams_for_student(self, student_id: str, now: Optional[datetime] = None) -> List[ExamSummary]:
        """Assigned, published exams; an exam the student has submitted shows as completed"""
        result = await self.db.execute(
            select(ExamRecord)
            .filter(ExamRecord.status != ExamStatus.DRAFT.value)
            .order_by(ExamRecord.start_time)
        )
        records = [r for r in result.scalars().all() if student_id in (r.assigned_students or [])]

        submissions_result = await self.db.execute(
            select(SubmissionRecord).filter(SubmissionRecord.student_id == student_id)
        )
        submissions = {s.exam_id: s for s in submissions_result.scalars().all()}

        summaries = []
        for record in records:
            submission = submissions.get(record.id)
            if submission:
                status = ExamStatus.COMPLETED
            else:
                status = derive_status(record.status, record.start_time, record.end_time, now)
            summaries.append(self._summary(record, status, submission))
        return summaries

    async def list_exams_for_teacher(self, teacher: CurrentUser, now: Optional[datetime] = None) -> List[ExamSummary]:
        if not teacher.is_staff:
            raise PermissionDeniedError("Only teachers can list their exams")

        query = select(ExamRecord).order_by(ExamRecord.start_time.desc())
        if not teacher.is_admin:
            query = query.filter(ExamRecord.created_by == teacher.id)
        result = await self.db.execute(query)
        return [
            self._summary(record, derive_status(record.status, record.start_time, record.end_time, now))
            for record in result.scalars().all()
        ]

    async def get_student_results(self, student_id: str) -> List[StudentResult]:
        result = await self.db.execute(
            select(SubmissionRecord, ExamRecord)
            .join(ExamRecord, SubmissionRecord.exam_id == ExamRecord.id)
            .filter(SubmissionRecord.student_id == student_id)
            .order_by(SubmissionRecord.submitted_at.desc())
        )

        results = []
        for submission, exam in result.all():
            data = Submission.model_validate(submission).model_dump()
            data.update(exam_title=exam.title, exam_subject=exam.subject or "", exam_date=exam.start_time)
            results.append(StudentResult(**data))
        return results

    async def evaluate_submission(
        self,
        exam_id: str,
        student_id: str,
        scores: Mapping[str, int],
        requester: CurrentUser,
    ) -> Submission:
        """Apply a teacher's short-answer marks; raises ValueError for invalid marks"""
        exam = await self.require_exam(exam_id)
        self._check_owner(exam, requester)

        record = await self._get_submission_record(exam_id, student_id)
        if not record:
            raise SubmissionNotFoundError(f"No submission from {student_id} for exam {exam_id}")

        evaluated = apply_manual_evaluation(exam, Submission.model_validate(record), scores)
        for key, value in submission_columns(evaluated).items():
            setattr(record, key, value)
        await self.db.commit()

        logger.info(
            f"Submission of {student_id} for exam {exam_id} evaluated by {requester.id}: "
            f"{evaluated.score}/{evaluated.max_score} ({evaluated.percentage}%)"
        )
        return evaluated

    async def refresh_statuses(self, now: Optional[datetime] = None) -> int:
        """Move scheduled/active exams along their schedule; returns how many changed"""
        now = now or utc_now()
        result = await self.db.execute(
            select(ExamRecord).filter(
                ExamRecord.status.in_([ExamStatus.SCHEDULED.value, ExamStatus.ACTIVE.value])
            )
        )

        changed = []
        for record in result.scalars().all():
            status = derive_status(record.status, record.start_time, record.end_time, now)
            if status.value != record.status:
                logger.info(f"Exam {record.id}: {record.status} -> {status.value}")
                record.status = status.value
                changed.append(record.id)

        if changed:
            await self.db.commit()
            for exam_id in changed:
                await self._invalidate(exam_id)
        return len(changed)


class SqlExamRepository:
    """Exam repository for live sessions; each call uses its own short-lived DB session"""

    def __init__(self, session_factory: Callable[[], AsyncSession], cache: Optional[CacheManager] = None):
        self.session_factory = session_factory
        self.cache = cache

    async def fetch_exam(self, exam_id: str) -> Optional[Exam]:
        async with self.session_factory() as db:
            return await ExamService(db, self.cache).fetch_exam(exam_id)

    async def submit_attempt(
        self,
        exam_id: str,
        student_id: str,
        answers: Mapping[str, str],
        warning_count: int,
        warnings: Sequence[ExamWarning],
        start_time: datetime,
        end_time: datetime,
        time_taken: Optional[int] = None,
    ) -> Submission:
        async with self.session_factory() as db:
            return await ExamService(db, self.cache).submit_attempt(
                exam_id,
                student_id,
                answers,
                warning_count,
                warnings,
                start_time,
                end_time,
                time_taken,
            )
