import asyncio
import logging
import math
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def format_hms(seconds: float) -> str:
    """Render remaining seconds as zero-padded HH:MM:SS"""
    if seconds <= 0:
        return "00:00:00"
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class Countdown:
    """
    Countdown against an absolute deadline. Remaining time is recomputed from
    the clock on every read, so a late or skipped tick never adds time back.
    """

    def __init__(self, total_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.total_seconds = total_seconds
        self._clock = clock
        self._remaining = float(total_seconds)
        self._deadline: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._deadline is not None

    def resume(self):
        if self._deadline is None:
            self._deadline = self._clock() + self._remaining

    def pause(self):
        if self._deadline is not None:
            self._remaining = max(0.0, self._deadline - self._clock())
            self._deadline = None

    @property
    def remaining(self) -> float:
        if self._deadline is None:
            return self._remaining
        return max(0.0, self._deadline - self._clock())

    @property
    def remaining_seconds(self) -> int:
        return math.ceil(self.remaining)

    @property
    def expired(self) -> bool:
        return self.remaining <= 0


class TimerEngine:
    """
    Drives the overall exam countdown and the active section countdown from a
    single tick loop. Both countdowns freeze while paused; time-up callbacks
    fire at most once per countdown and the exam deadline wins when both
    expire on the same tick.
    """

    def __init__(
        self,
        total_seconds: float,
        on_exam_time_up: Callable[[], None],
        on_section_time_up: Callable[[], None],
        on_tick: Optional[Callable[[int, Optional[int]], None]] = None,
        on_low_time: Optional[Callable[[int], None]] = None,
        tick_interval: float = 1.0,
        low_time_threshold: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self.exam = Countdown(total_seconds, clock)
        self.section: Optional[Countdown] = None
        self.on_exam_time_up = on_exam_time_up
        self.on_section_time_up = on_section_time_up
        self.on_tick = on_tick
        self.on_low_time = on_low_time
        self.tick_interval = tick_interval
        self.low_time_threshold = low_time_threshold

        self._paused = True
        self._stopped = False
        self._exam_fired = False
        self._section_fired = False
        self._last_exam_remaining = self.exam.remaining_seconds
        self._low_time_notified = False
        self._task: Optional[asyncio.Task] = None

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def remaining_seconds(self) -> int:
        return self.exam.remaining_seconds

    @property
    def section_remaining_seconds(self) -> Optional[int]:
        return self.section.remaining_seconds if self.section is not None else None

    def start_section(self, seconds: float):
        """Replace the section countdown; it runs only while the engine runs"""
        self.section = Countdown(seconds, self._clock)
        self._section_fired = False
        if not self._paused and not self._stopped:
            self.section.resume()

    def pause(self):
        if self._paused or self._stopped:
            return
        self._paused = True
        self.exam.pause()
        if self.section is not None:
            self.section.pause()

    def resume(self):
        if not self._paused or self._stopped:
            return
        self._paused = False
        self.exam.resume()
        if self.section is not None:
            self.section.resume()

    def tick(self):
        if self._paused or self._stopped:
            return

        exam_remaining = self.exam.remaining_seconds
        section_remaining = self.section_remaining_seconds

        if (not self._low_time_notified
                and self._last_exam_remaining > self.low_time_threshold >= exam_remaining):
            self._low_time_notified = True
            if self.on_low_time:
                self.on_low_time(exam_remaining)
        self._last_exam_remaining = exam_remaining

        if self.on_tick:
            self.on_tick(exam_remaining, section_remaining)

        if exam_remaining <= 0:
            if not self._exam_fired:
                self._exam_fired = True
                logger.info("Exam time is up")
                self.on_exam_time_up()
            return

        if self.section is not None and section_remaining <= 0 and not self._section_fired:
            self._section_fired = True
            logger.info("Section time is up")
            self.on_section_time_up()

    async def _run(self):
        while not self._stopped:
            await asyncio.sleep(self.tick_interval)
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Timer tick failed: {e}", exc_info=True)

    def start(self):
        if self._task is None and not self._stopped:
            self._task = asyncio.create_task(self._run())

    def stop(self):
        self.pause()
        self._stopped = True
        if self._task is not None:
            self._task.cancel()
            self._task = None
