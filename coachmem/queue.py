"""
Background task queue - deferred work off the request path.

One in-process priority queue, drained in batches by a periodic scheduler:

    enqueue() -> heap ordered by (priority desc, insertion order)
    QueueScheduler ticks every `interval` seconds -> process_cycle()
    process_cycle() runs up to `batch_size` ready tasks, one at a time,
    each under a hard timeout

Failures feed a circuit breaker:
- CLOSED: normal operation
- OPEN: N consecutive failures inside the window; nothing runs until the
  cool-down has passed
- HALF_OPEN: exactly one trial task; success closes, failure re-opens

A failed task is retried with exponential backoff and moved to the
dead-letter list once it has used up its retries. When the queue is full,
new low-priority tasks are dropped and counted.
"""

import asyncio
import heapq
import itertools
import time
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Optional

from coachmem.config import QueueConfig
from coachmem.errors import CircuitOpenError, QueueOverflow
from coachmem.log import get_logger
from coachmem.models import BackgroundTask, TaskPriority, TaskStatus, TaskType

logger = get_logger("coachmem.queue")

TaskHandler = Callable[[BackgroundTask], Awaitable[object]]


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitState(str, Enum):
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failures exceeded threshold
    HALF_OPEN = "half_open"  # Testing recovery with one task


class CircuitBreaker:
    """Consecutive-failure breaker with a sliding window and a single trial task.

    Usage:
        breaker = CircuitBreaker(failure_threshold=5, window=60, cooldown=30)
        if breaker.allow_request():
            ...
            breaker.record_success()  # or record_failure()
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        window: float = 60.0,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.window = window
        self.cooldown = cooldown
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self.trips = 0

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN reports HALF_OPEN."""
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.cooldown:
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit breaker cool-down over, allowing one trial task")
        return self._state

    def retry_in(self) -> float:
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.cooldown - (self._clock() - self._opened_at))

    def allow_request(self) -> bool:
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        self._failures.clear()
        self.trips += 1
        logger.warning(f"Circuit breaker opened, pausing background work for {self.cooldown}s")

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            logger.info("Circuit breaker trial task succeeded - closing circuit")
        self._state = CircuitState.CLOSED
        self._failures.clear()
        self._trial_in_flight = False

    def record_failure(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            logger.warning("Circuit breaker trial task failed - reopening circuit")
            self._open()
            return

        now = self._clock()
        self._failures.append(now)
        while self._failures and now - self._failures[0] > self.window:
            self._failures.popleft()
        if len(self._failures) >= self.failure_threshold:
            self._open()

    def release_trial(self) -> None:
        """Give back a half-open trial slot that no task used."""
        if self._state == CircuitState.HALF_OPEN:
            self._trial_in_flight = False

    def get_state(self) -> dict:
        return {
            "state": self.state.value,
            "consecutive_failures": len(self._failures),
            "trips": self.trips,
            "retry_in": round(self.retry_in(), 2),
        }


# =============================================================================
# PRIORITY QUEUE
# =============================================================================

class BackgroundQueue:
    """Priority queue of BackgroundTask with retry, dead-letter and breaker.

    Usage:
        queue = BackgroundQueue(config.queue)
        queue.register_handler(TaskType.RELATIONSHIP_ANALYSIS, handler)
        queue.enqueue(TaskType.RELATIONSHIP_ANALYSIS, {"memory_id": ...}, TaskPriority.MEDIUM)
        await queue.process_cycle()
    """

    def __init__(
        self,
        config: QueueConfig,
        clock: Callable[[], float] = time.monotonic,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.config = config
        self._clock = clock
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=config.failure_threshold,
            window=config.failure_window,
            cooldown=config.cooldown,
            clock=clock,
        )
        self._heap: list[tuple[float, int, BackgroundTask]] = []
        self._seq = itertools.count()
        self._handlers: dict[TaskType, TaskHandler] = {}
        self.dead_letters: list[BackgroundTask] = []
        self._metrics = {
            "enqueued": 0,
            "processed": 0,
            "failed": 0,
            "retried": 0,
            "timeouts": 0,
            "dead_lettered": 0,
            "dropped": 0,
            "over_capacity": 0,
            "cycles": 0,
        }

    def __len__(self) -> int:
        return len(self._heap)

    def register_handler(self, task_type: TaskType, handler: TaskHandler) -> None:
        self._handlers[TaskType(task_type)] = handler

    def pending(self) -> list[BackgroundTask]:
        """Pending tasks in the order they would run (ignoring backoff)."""
        return [task for _, _, task in sorted(self._heap)]

    def _push(self, task: BackgroundTask, seq: Optional[int] = None) -> None:
        heapq.heappush(self._heap, (-float(task.priority), next(self._seq) if seq is None else seq, task))

    def _evict_low_priority(self) -> Optional[BackgroundTask]:
        """Remove the most recently queued low-priority task, if any."""
        lows = [entry for entry in self._heap if entry[2].priority == TaskPriority.LOW]
        if not lows:
            return None
        victim = max(lows, key=lambda entry: entry[1])
        self._heap.remove(victim)
        heapq.heapify(self._heap)
        return victim[2]

    def enqueue(
        self,
        task_type: TaskType,
        payload: dict,
        priority: TaskPriority = TaskPriority.MEDIUM,
    ) -> BackgroundTask:
        """Add a task.

        When the queue is at max_depth a new low-priority task is dropped.
        Higher-priority tasks take the place of a queued low-priority task,
        or are admitted over the limit if there is none.

        Raises:
            QueueOverflow: If the task was dropped
        """
        task = BackgroundTask(task_type=TaskType(task_type), payload=payload, priority=TaskPriority(priority))

        if len(self._heap) >= self.config.max_depth:
            if task.priority == TaskPriority.LOW:
                self._metrics["dropped"] += 1
                logger.warning(f"Queue full ({len(self._heap)}), dropped {task.task_type.value} task {task.id}")
                raise QueueOverflow(task.id, len(self._heap))

            victim = self._evict_low_priority()
            if victim is not None:
                victim.status = TaskStatus.FAILED
                victim.last_error = "evicted: queue full"
                self._metrics["dropped"] += 1
                logger.warning(f"Queue full, evicted low-priority task {victim.id} for {task.id}")
            else:
                self._metrics["over_capacity"] += 1
                logger.warning(f"Queue full of high/medium tasks, admitting {task.id} over limit")

        self._push(task)
        self._metrics["enqueued"] += 1
        return task

    def _take_ready(self, limit: int) -> list[tuple[int, BackgroundTask]]:
        """Pop up to `limit` tasks whose backoff has expired, in priority order."""
        now = self._clock()
        taken, waiting = [], []
        while self._heap and len(taken) < limit:
            neg_priority, seq, task = heapq.heappop(self._heap)
            if task.next_attempt_at > now:
                waiting.append((neg_priority, seq, task))
            else:
                taken.append((seq, task))
        for entry in waiting:
            heapq.heappush(self._heap, entry)
        return taken

    def _backoff(self, attempts: int) -> float:
        return self.config.backoff_base * (2 ** (attempts - 1))

    def _dead_letter(self, task: BackgroundTask) -> None:
        task.status = TaskStatus.FAILED
        self.dead_letters.append(task)
        self._metrics["dead_lettered"] += 1
        logger.warning(
            f"Task {task.id} ({task.task_type.value}) moved to dead-letter after "
            f"{task.attempts} attempts: {task.last_error}"
        )

    async def _run(self, seq: int, task: BackgroundTask) -> bool:
        handler = self._handlers.get(task.task_type)
        if handler is None:
            task.last_error = f"no handler for {task.task_type.value}"
            self._dead_letter(task)
            self.breaker.release_trial()
            return False

        task.status = TaskStatus.RUNNING
        task.attempts += 1
        try:
            await asyncio.wait_for(handler(task), timeout=self.config.task_timeout)
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                self._metrics["timeouts"] += 1
                task.last_error = f"timed out after {self.config.task_timeout}s"
            else:
                task.last_error = f"{type(e).__name__}: {e}"
            self._metrics["failed"] += 1
            self.breaker.record_failure()

            if task.attempts > self.config.max_retries:
                self._dead_letter(task)
            else:
                task.status = TaskStatus.PENDING
                task.next_attempt_at = self._clock() + self._backoff(task.attempts)
                self._metrics["retried"] += 1
                self._push(task, seq)
                logger.debug(f"Task {task.id} failed ({task.last_error}), retry {task.attempts}")
            return False

        task.status = TaskStatus.COMPLETED
        self._metrics["processed"] += 1
        self.breaker.record_success()
        return True

    async def process_cycle(self) -> dict:
        """Run one batch.

        Returns:
            {"completed": [task ids], "failed": [task ids]} in execution order

        Raises:
            CircuitOpenError: If the breaker is open (nothing was run)
        """
        if not self.breaker.allow_request():
            raise CircuitOpenError(self.breaker.retry_in())

        self._metrics["cycles"] += 1
        # allow_request() already reserved the trial slot when half-open
        limit = 1 if self.breaker.state == CircuitState.HALF_OPEN else self.config.batch_size
        batch = self._take_ready(limit)
        if not batch:
            # Nothing ready (empty, or all backing off); the trial slot is still owed
            self.breaker.release_trial()
            return {"completed": [], "failed": []}

        completed, failed = [], []
        for index, (seq, task) in enumerate(batch):
            if index > 0 and not self.breaker.allow_request():
                # Opened mid-batch: put the rest back untouched
                for rest_seq, rest in batch[index:]:
                    self._push(rest, rest_seq)
                break
            if await self._run(seq, task):
                completed.append(task.id)
            else:
                failed.append(task.id)

        return {"completed": completed, "failed": failed}

    def get_metrics(self) -> dict:
        return {
            **self._metrics,
            "depth": len(self._heap),
            "dead_letter_size": len(self.dead_letters),
            "breaker": self.breaker.get_state(),
        }


# =============================================================================
# SCHEDULER
# =============================================================================

class QueueScheduler:
    """Ticks process_cycle() every `interval` seconds until stopped.

    `on_tick` callables run before each cycle (the engine uses one to queue
    periodic cache cleanup).
    """

    def __init__(
        self,
        queue: BackgroundQueue,
        interval: float,
        on_tick: Optional[list[Callable[[], None]]] = None,
    ):
        self.queue = queue
        self.interval = interval
        self.on_tick = list(on_tick or [])
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Background scheduler started (every {self.interval}s)")

    async def _loop(self) -> None:
        while not self._stop.is_set():
            for hook in self.on_tick:
                try:
                    hook()
                except Exception:
                    logger.exception("Scheduler tick hook failed")
            try:
                await self.queue.process_cycle()
            except CircuitOpenError as e:
                logger.debug(f"Background cycle skipped: {e}")
            except Exception:
                logger.exception("Background cycle crashed")

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        if not self.running:
            return
        self._stop.set()
        await self._task
        self._task = None
        logger.info("Background scheduler stopped")
