"""
Server-side state machine for one proctored exam sitting.

A session moves Instructions -> (SectionIntro ->) Answering -> Submitting ->
Submitted, with Failed as the parking state for a submission the repository
or identity provider rejected. Every path into submission (manual submit,
advancing past the last question, exam or last-section time-up, reaching the
warnings threshold) goes through ``_begin_submit``, which runs at most once
per attempt.

All callbacks (timer ticks, integrity violations, client messages) run on the
same event loop, so the warning count and the threshold check need no locks.
"""
import asyncio
import logging
import time
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from ..core.config import settings
from ..core.exceptions import (
    CameraUnavailableError,
    ExamNotFoundError,
    FullscreenDeniedError,
    InvalidSessionStateError,
)
from ..schemas.exam import Exam, Question, QuestionPublic
from ..schemas.session import (
    Attempt,
    CLOSED_STATES,
    STARTED_STATES,
    SessionEvent,
    SessionSnapshot,
    SessionState,
    SubmitReason,
)
from ..schemas.submission import WARNING_DESCRIPTIONS, ExamWarning, Submission, WarningType
from ..services.scoring import round_half_up
from ..utils.timezone import format_local_time, minutes_between, utc_now
from .integrity import IntegrityMonitor
from .ports import (
    CameraSource,
    DisplayController,
    ExamRepository,
    FaceDetector,
    IdentityProvider,
    MediaSink,
)
from .timer import TimerEngine, format_hms

logger = logging.getLogger(__name__)

SessionListener = Callable[[SessionEvent], None]


class ExamSession:
    def __init__(
        self,
        exam: Exam,
        repository: ExamRepository,
        identity: IdentityProvider,
        camera: CameraSource,
        detector: FaceDetector,
        display: DisplayController,
        media_sink: MediaSink,
        listener: Optional[SessionListener] = None,
        tick_interval: Optional[float] = None,
        sample_interval: Optional[float] = None,
        low_time_threshold: Optional[int] = None,
        snapshot_upload_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.exam = exam
        self.repository = repository
        self.identity = identity
        self.listener = listener
        self.tick_interval = tick_interval if tick_interval is not None else settings.timer_tick_interval
        self.low_time_threshold = (
            low_time_threshold if low_time_threshold is not None else settings.low_time_threshold_seconds
        )
        self.snapshot_upload_timeout = (
            snapshot_upload_timeout if snapshot_upload_timeout is not None else settings.snapshot_upload_timeout
        )
        self._clock = clock

        self.state = SessionState.INSTRUCTIONS
        self.attempt: Optional[Attempt] = None
        self.timer: Optional[TimerEngine] = None
        self.submit_reason: Optional[SubmitReason] = None
        self.submission: Optional[Submission] = None
        self.error: Optional[str] = None

        self.monitor = IntegrityMonitor(
            camera=camera,
            detector=detector,
            display=display,
            media_sink=media_sink,
            state_provider=lambda: self.state,
            on_violation=self._record_violation,
            on_notice=self._notice,
            sample_interval=sample_interval if sample_interval is not None else settings.face_sample_interval,
        )

        self._pending_captures: Deque[Tuple[WarningType, datetime, asyncio.Task]] = deque()
        self._submit_task: Optional[asyncio.Task] = None
        self._starting = False
        self._closed = False

    @classmethod
    async def load(cls, exam_id: str, repository: ExamRepository, **kwargs) -> "ExamSession":
        exam = await repository.fetch_exam(exam_id)
        if exam is None:
            raise ExamNotFoundError(exam_id)
        return cls(exam, repository, **kwargs)

    # Read-only views

    @property
    def section_index(self) -> int:
        return self.attempt.current_section_index if self.attempt else 0

    @property
    def question_index(self) -> int:
        return self.attempt.current_question_index if self.attempt else 0

    @property
    def warning_count(self) -> int:
        return self.attempt.warning_count if self.attempt else 0

    @property
    def is_last_section(self) -> bool:
        return self.section_index >= self.exam.section_count - 1

    def current_questions(self) -> List[Question]:
        return self.exam.section_questions(self.section_index)

    def current_question(self) -> Optional[Question]:
        questions = self.current_questions()
        if 0 <= self.question_index < len(questions):
            return questions[self.question_index]
        return None

    # Transitions

    async def start(self):
        """Acquire the camera, enter fullscreen and open the attempt"""
        if self.state != SessionState.INSTRUCTIONS or self._closed:
            raise InvalidSessionStateError(f"Cannot start an exam session in state {self.state.value}")
        if self._starting:
            raise InvalidSessionStateError("The exam session is already starting")

        self._starting = True
        try:
            await self.monitor.acquire_camera()
            await self.monitor.enter_fullscreen()
        except (CameraUnavailableError, FullscreenDeniedError) as e:
            logger.warning(f"Exam {self.exam.id} could not start: {e.message}")
            self._emit("error", {"message": e.message, "kind": type(e).__name__, "fatal": True})
            raise
        finally:
            self._starting = False

        if self._closed:
            raise InvalidSessionStateError("Session was closed while starting")

        self.attempt = Attempt(
            answers={question.id: "" for question in self.exam.questions},
            start_time=utc_now(),
        )
        self.timer = TimerEngine(
            total_seconds=self.exam.duration * 60,
            on_exam_time_up=self._on_exam_time_up,
            on_section_time_up=self._on_section_time_up,
            on_tick=self._on_tick,
            on_low_time=self._on_low_time,
            tick_interval=self.tick_interval,
            low_time_threshold=self.low_time_threshold,
            clock=self._clock,
        )
        self.timer.start()
        self.monitor.start_sampling()
        logger.info(f"Exam {self.exam.id} started")

        if self.exam.is_sectioned:
            self._enter_section_intro(0)
        else:
            self._enter_answering()

    def confirm_section(self) -> bool:
        if self.state != SessionState.SECTION_INTRO:
            return False
        section = self.exam.sections[self.section_index]
        self.timer.start_section(section.time_limit * 60)
        self._enter_answering()
        return True

    def _enter_section_intro(self, index: int):
        self.attempt.current_section_index = index
        self.attempt.current_question_index = 0
        self.state = SessionState.SECTION_INTRO
        self.timer.pause()
        logger.info(f"Exam {self.exam.id}: section {index + 1} of {self.exam.section_count}")
        self._emit_state()

    def _enter_answering(self):
        self.attempt.current_question_index = 0
        self.state = SessionState.ANSWERING
        self.timer.resume()
        self._emit_state()

    def set_answer(self, question_id: str, value: str) -> bool:
        if self.state != SessionState.ANSWERING:
            return False
        if question_id not in self.attempt.answers:
            raise ValueError(f"Unknown question: {question_id}")
        if question_id not in {q.id for q in self.current_questions()}:
            logger.debug(f"Ignoring answer for {question_id} outside the active section")
            return False
        self.attempt.answers[question_id] = value
        return True

    def navigate(self, direction: str) -> bool:
        if direction == "next":
            return self.jump_to(self.question_index + 1)
        if direction == "prev":
            return self.jump_to(self.question_index - 1)
        raise ValueError(f"Unknown direction: {direction}")

    def jump_to(self, index: int) -> bool:
        if self.state != SessionState.ANSWERING:
            return False
        if index < 0 or index >= len(self.current_questions()) or index == self.question_index:
            return False
        self.attempt.current_question_index = index
        self._emit_state()
        return True

    def advance(self) -> bool:
        """Next question, next section intro, or submission after the very last question"""
        if self.state != SessionState.ANSWERING:
            return False
        if self.question_index < len(self.current_questions()) - 1:
            return self.jump_to(self.question_index + 1)
        if not self.is_last_section:
            self._enter_section_intro(self.section_index + 1)
            return True
        self._begin_submit(SubmitReason.ADVANCE)
        return True

    def request_submit(self, confirm: bool = False) -> bool:
        if self.state != SessionState.ANSWERING:
            return False
        unanswered = self.attempt.unanswered
        if unanswered and not confirm:
            self._emit("confirm_submit", {
                "unanswered_count": len(unanswered),
                "unanswered": unanswered,
                "message": f"You have {len(unanswered)} unanswered question(s). Submit anyway?",
            })
            return False
        self._begin_submit(SubmitReason.MANUAL)
        return True

    # Timer callbacks

    def _on_tick(self, remaining: int, section_remaining: Optional[int]):
        if self.state in CLOSED_STATES or self._closed:
            return
        data: Dict[str, Any] = {"remaining_time": format_hms(remaining)}
        if section_remaining is not None:
            data["section_remaining_time"] = format_hms(section_remaining)
        self._emit("tick", data)

    def _on_low_time(self, remaining: int):
        if self.state in CLOSED_STATES or self._closed:
            return
        self._emit("low_time", {
            "remaining_time": format_hms(remaining),
            "message": "Less than 5 minutes remaining!",
        })

    def _on_exam_time_up(self):
        if self.state in CLOSED_STATES:
            return
        logger.info(f"Exam {self.exam.id}: time is up, submitting")
        self._begin_submit(SubmitReason.EXAM_TIME_UP)

    def _on_section_time_up(self):
        if self.state != SessionState.ANSWERING:
            return
        if self.is_last_section:
            self._begin_submit(SubmitReason.SECTION_TIME_UP)
        else:
            self._enter_section_intro(self.section_index + 1)

    # Integrity callbacks

    def _record_violation(self, warning_type: WarningType, frame: Optional[Any] = None):
        if self.state not in STARTED_STATES or self.attempt is None or self._closed:
            return

        timestamp = utc_now()
        self.attempt.warning_count += 1
        capture = asyncio.create_task(self.monitor.capture_warning_image(frame))
        self._pending_captures.append((warning_type, timestamp, capture))
        capture.add_done_callback(lambda _: self._flush_captures())

        count = self.attempt.warning_count
        threshold = self.exam.warnings_threshold
        logger.warning(f"Exam {self.exam.id}: {warning_type.value} ({count}/{threshold})")
        self._emit("warning", {
            "type": warning_type.value,
            "message": WARNING_DESCRIPTIONS[warning_type],
            "warning_count": count,
            "warnings_threshold": threshold,
        })

        if count >= threshold:
            logger.warning(f"Exam {self.exam.id}: warnings threshold reached, submitting")
            self._begin_submit(SubmitReason.WARNINGS_THRESHOLD)

    def _notice(self, message: str):
        self._emit("notice", {"message": message})

    def _flush_captures(self):
        """Move finished captures into the warnings list, preserving violation order"""
        while self._pending_captures and self._pending_captures[0][2].done():
            warning_type, timestamp, capture = self._pending_captures.popleft()
            image_url = None
            if not capture.cancelled() and capture.exception() is None:
                image_url = capture.result()
            self.attempt.warnings.append(ExamWarning(type=warning_type, timestamp=timestamp, image_url=image_url))

    async def _drain_captures(self):
        captures = [capture for _, _, capture in self._pending_captures]
        if captures:
            _, pending = await asyncio.wait(captures, timeout=self.snapshot_upload_timeout)
            if pending:
                logger.warning(f"Exam {self.exam.id}: {len(pending)} warning snapshot(s) timed out")
                for capture in pending:
                    capture.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        self._flush_captures()

    # Submission

    def _begin_submit(self, reason: SubmitReason):
        # A closed session never submits on its own
        if self.state in CLOSED_STATES or self._closed:
            return
        self.submit_reason = reason
        self.state = SessionState.SUBMITTING
        self.attempt.end_time = utc_now()
        self.timer.stop()
        self.monitor.stop_sampling()
        logger.info(f"Exam {self.exam.id}: submitting ({reason.value})")
        self._emit_state()
        self._submit_task = asyncio.create_task(self._run_pipeline())

    async def _run_pipeline(self) -> Optional[Submission]:
        try:
            await self._drain_captures()
            student_id = await self.identity.current_student_id()
            attempt = self.attempt
            submission = await self.repository.submit_attempt(
                exam_id=self.exam.id,
                student_id=student_id,
                answers=dict(attempt.answers),
                warning_count=attempt.warning_count,
                warnings=list(attempt.warnings),
                start_time=attempt.start_time,
                end_time=attempt.end_time,
                time_taken=round_half_up(minutes_between(attempt.start_time, attempt.end_time)),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.error = getattr(e, "message", None) or str(e) or type(e).__name__
            self.state = SessionState.FAILED
            logger.error(f"Exam {self.exam.id}: submission failed: {self.error}", exc_info=True)
            self._emit("error", {"message": self.error, "kind": type(e).__name__, "retryable": True})
            self._emit_state()
            return None

        self.submission = submission
        self.error = None
        self.state = SessionState.SUBMITTED
        logger.info(
            f"Exam {self.exam.id} submitted by {submission.student_id}: "
            f"{submission.score}/{submission.max_score} ({submission.percentage}%) at {format_local_time(submission.end_time)}"
        )
        self.monitor.release()
        await self.monitor.exit_fullscreen()
        self._emit("submitted", {"submission": submission.model_dump(mode="json")})
        self._emit_state()
        return submission

    async def retry_submit(self) -> Optional[Submission]:
        if self.state != SessionState.FAILED:
            raise InvalidSessionStateError(f"Nothing to retry in state {self.state.value}")
        self.state = SessionState.SUBMITTING
        self.error = None
        self._emit_state()
        self._submit_task = asyncio.create_task(self._run_pipeline())
        return await self.wait_for_submission()

    async def wait_for_submission(self) -> Optional[Submission]:
        if self._submit_task is not None:
            await asyncio.shield(self._submit_task)
        return self.submission

    async def close(self):
        """Stop every loop and release the camera and fullscreen; safe in any state"""
        if self._closed:
            return
        self._closed = True
        if self.timer is not None:
            self.timer.stop()
        self.monitor.release()

        # An in-flight submission owns the pending captures and finishes on its own
        if self._submit_task is None or self._submit_task.done():
            for _, _, capture in self._pending_captures:
                capture.cancel()
            if self._pending_captures:
                await asyncio.gather(*(c for _, _, c in self._pending_captures), return_exceptions=True)
            if self.attempt is not None:
                self._flush_captures()

        await self.monitor.exit_fullscreen()
        logger.info(f"Exam {self.exam.id}: session closed in state {self.state.value}")

    # Events

    def snapshot(self) -> SessionSnapshot:
        questions = self.current_questions()
        question = self.current_question() if self.state == SessionState.ANSWERING else None
        section_name = self.exam.sections[self.section_index].name if self.exam.is_sectioned else None

        if self.timer is not None:
            remaining = self.timer.remaining_seconds
            section_remaining = self.timer.section_remaining_seconds
        else:
            remaining = self.exam.duration * 60
            section_remaining = None
        # The next section's countdown only starts once its intro is confirmed
        if self.exam.is_sectioned and self.state in (SessionState.INSTRUCTIONS, SessionState.SECTION_INTRO):
            section_remaining = self.exam.sections[self.section_index].time_limit * 60

        return SessionSnapshot(
            exam_id=self.exam.id,
            title=self.exam.title,
            state=self.state,
            section_index=self.section_index,
            section_count=self.exam.section_count,
            section_name=section_name,
            question_index=self.question_index,
            question_count=len(questions),
            question=QuestionPublic.from_question(question) if question is not None else None,
            answers=dict(self.attempt.answers) if self.attempt else {},
            unanswered_count=len(self.attempt.unanswered) if self.attempt else len(self.exam.questions),
            remaining_time=format_hms(remaining),
            section_remaining_time=format_hms(section_remaining) if section_remaining is not None else None,
            warning_count=self.warning_count,
            warnings_threshold=self.exam.warnings_threshold,
            warnings=list(self.attempt.warnings) if self.attempt else [],
            submit_reason=self.submit_reason,
            submission=self.submission,
            error=self.error,
        )

    def _emit_state(self):
        self._emit("state", self.snapshot().model_dump(mode="json"))

    def _emit(self, event_type: str, data: Optional[Dict[str, Any]] = None):
        if self.listener is None:
            return
        try:
            self.listener(SessionEvent(type=event_type, data=data or {}))
        except Exception as e:
            logger.error(f"Session listener failed on {event_type}: {e}", exc_info=True)
