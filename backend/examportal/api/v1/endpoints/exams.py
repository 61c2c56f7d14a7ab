from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Union

from ....core.cache import cache
from ....core.database import get_async_db
from ....core.exceptions import ExamNotFoundError, PermissionDeniedError, SubmissionNotFoundError
from ....api.deps import get_current_student, get_current_user, require_staff
from ....schemas.exam import Exam, ExamCreate, ExamPublic, ExamSummary
from ....schemas.submission import EvaluationRequest, StudentResult, Submission
from ....schemas.user import CurrentUser, UserRole
from ....services.exam_service import ExamService

router = APIRouter()


def get_exam_service(db: AsyncSession = Depends(get_async_db)) -> ExamService:
    return ExamService(db, cache)


@router.get("", response_model=List[ExamSummary])
async def list_exams(
    current_user: CurrentUser = Depends(get_current_user),
    service: ExamService = Depends(get_exam_service)
):
    """Assigned exams for students, own exams for teachers (all exams for admins)"""
    if current_user.role == UserRole.STUDENT:
        return await service.list_exams_for_student(current_user.id)
    return await service.list_exams_for_teacher(current_user)


@router.post("", response_model=Exam, status_code=201)
async def create_exam(
    exam_in: ExamCreate,
    current_user: CurrentUser = Depends(require_staff),
    service: ExamService = Depends(get_exam_service)
):
    try:
        return await service.create_exam(exam_in, current_user)
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=e.message)


@router.get("/results/me", response_model=List[StudentResult])
async def get_my_results(
    current_user: CurrentUser = Depends(get_current_student),
    service: ExamService = Depends(get_exam_service)
):
    return await service.get_student_results(current_user.id)


@router.get("/{exam_id}", response_model=Union[Exam, ExamPublic])
async def get_exam(
    exam_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: ExamService = Depends(get_exam_service)
):
    exam = await service.fetch_exam(exam_id)
    if not exam:
        raise HTTPException(status_code=404, detail="Exam not found")

    if current_user.role == UserRole.STUDENT:
        if current_user.id not in exam.assigned_students:
            raise HTTPException(status_code=403, detail="You are not assigned to this exam")
        return ExamPublic.from_exam(exam)

    if not current_user.is_admin and exam.created_by != current_user.id:
        raise HTTPException(status_code=403, detail="Not authorized")
    return exam


@router.get("/{exam_id}/submissions", response_model=List[Submission])
async def get_exam_submissions(
    exam_id: str,
    current_user: CurrentUser = Depends(require_staff),
    service: ExamService = Depends(get_exam_service)
):
    try:
        return await service.get_exam_submissions(exam_id, current_user)
    except ExamNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=e.message)


@router.post("/{exam_id}/submissions/{student_id}/evaluate", response_model=Submission)
async def evaluate_submission(
    exam_id: str,
    student_id: str,
    evaluation: EvaluationRequest,
    current_user: CurrentUser = Depends(require_staff),
    service: ExamService = Depends(get_exam_service)
):
    """Replace the automatic short-answer scores with the teacher's marks"""
    try:
        return await service.evaluate_submission(exam_id, student_id, evaluation.scores, current_user)
    except (ExamNotFoundError, SubmissionNotFoundError) as e:
        raise HTTPException(status_code=404, detail=e.message)
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=e.message)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
