"""
Scheduler core: trigger/job registries, the coordinator loop and the worker pool.

Caller threads touch the registries under ``_lock`` and post admissions to the
coordinator inbox. Workers post execution outcomes to the same inbox. Only the
coordinator pushes and pops the pending heap, so reinsertion and retirement of
a trigger never race with its own firing.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from queue import Empty, Queue
from typing import Any, Dict, List, Optional, Tuple

from .clock import UTC, Clock, SystemClock
from .errors import (
    ForemanError,
    InvalidScheduleError,
    NotFoundError,
    SchedulerFatalError,
    SchedulerShutdownError,
)
from .execution import ExecutionOutcome, JobAttempt
from .jobs import JobDetail, JobKey
from .listeners import SchedulerListener, notify
from .triggers import OneShotTrigger, Trigger, TriggerKey


logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
SHUTDOWN_JOIN_SECONDS = 5.0
HEAP_PRUNE_MIN = 64


class SchedulerState(Enum):
    STANDBY = "standby"
    STARTED = "started"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class SchedulerSettings:
    thread_count: int = 4
    misfire_threshold: timedelta = timedelta(seconds=60)
    idle_wait_seconds: float = 1.0
    timezone_name: str = "UTC"

    def __post_init__(self) -> None:
        if self.thread_count < 1:
            raise ValueError("thread_count must be >= 1")
        if self.misfire_threshold < timedelta(0):
            raise ValueError("misfire_threshold must be >= 0")
        if self.idle_wait_seconds <= 0:
            raise ValueError("idle_wait_seconds must be > 0")


HeapEntry = Tuple[datetime, int, Trigger]


class Scheduler:
    def __init__(self, settings: Optional[SchedulerSettings] = None, clock: Optional[Clock] = None) -> None:
        self.settings = settings or SchedulerSettings()
        self.clock: Clock = clock or SystemClock()

        self._lock = threading.RLock()
        self._triggers: Dict[TriggerKey, Trigger] = {}
        self._jobs: Dict[JobKey, JobDetail] = {}
        self._listeners: List[SchedulerListener] = []
        self._state = SchedulerState.STANDBY

        self._inbox: "Queue[Tuple[str, Any]]" = Queue()
        self._heap: List[HeapEntry] = []
        self._seq = itertools.count()
        self._blocked: Dict[TriggerKey, Trigger] = {}
        self._pass_lock = threading.Lock()

        self._idle = threading.Condition()
        self._in_flight: Dict[TriggerKey, Trigger] = {}
        self._futures: Dict[Future, TriggerKey] = {}

        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.thread_count,
            thread_name_prefix="foreman-worker",
        )
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        subscribe = getattr(self.clock, "subscribe", None)
        if callable(subscribe):
            subscribe(self.wakeup)

    # ------------------------------------------------------------------ state

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_started(self) -> bool:
        return self._state is SchedulerState.STARTED

    @property
    def is_shutdown(self) -> bool:
        return self._state is SchedulerState.SHUTDOWN

    def start(self) -> None:
        with self._lock:
            if self._state is SchedulerState.SHUTDOWN:
                raise SchedulerShutdownError("Scheduler has been shut down and cannot be restarted.")
            if self._state is SchedulerState.STARTED:
                return
            self._state = SchedulerState.STARTED
            self._thread = threading.Thread(target=self._run_loop, daemon=True, name="foreman-coordinator")
            self._thread.start()
        logger.info(
            "Scheduler started with %s worker(s), misfire_threshold=%ss",
            self.settings.thread_count,
            self.settings.misfire_threshold.total_seconds(),
        )

    def shutdown(self, wait_for_running_jobs: bool = True) -> None:
        with self._lock:
            if self._state is SchedulerState.SHUTDOWN:
                return
            self._state = SchedulerState.SHUTDOWN
        logger.info("Scheduler shutting down (wait_for_running_jobs=%s)", wait_for_running_jobs)
        self._stop_event.set()
        self._inbox.put(("stop", None))
        if self._thread is not None:
            self._thread.join(timeout=max(SHUTDOWN_JOIN_SECONDS, self.settings.idle_wait_seconds * 2))
            if self._thread.is_alive():
                logger.warning("Coordinator thread did not stop within timeout.")
        self._executor.shutdown(wait=wait_for_running_jobs, cancel_futures=not wait_for_running_jobs)
        if wait_for_running_jobs:
            self._drain_inbox()
        logger.info("Scheduler shut down.")

    def wakeup(self) -> None:
        self._inbox.put(("wake", None))

    # -------------------------------------------------------------- admission

    def schedule(self, job: JobDetail, trigger: Trigger) -> TriggerKey:
        """
        Admit a job/trigger pair.

        Raises:
            InvalidScheduleError: bad bounds, duplicate trigger identity, a
                conflicting JobDetail under the same key, or a trigger that
                would never fire
            SchedulerShutdownError: the scheduler has been shut down
        """
        return self._admit(job, trigger, register_job=True)

    def _admit(self, job: JobDetail, trigger: Trigger, register_job: bool) -> TriggerKey:
        with self._lock:
            if self._state is SchedulerState.SHUTDOWN:
                raise SchedulerShutdownError("Scheduler has been shut down.")
            if trigger.key in self._triggers:
                raise InvalidScheduleError(f"Trigger {trigger.key} already exists.")
            if trigger.job is not None and trigger.job.key != job.key:
                raise InvalidScheduleError(
                    f"Trigger {trigger.key} is bound to job {trigger.job.key}, not {job.key}."
                )
            existing = self._jobs.get(job.key)
            if register_job and existing is not None and existing is not job:
                raise InvalidScheduleError(f"A different job is already registered as {job.key}.")

            trigger.validate()
            if trigger.start_time is None:
                trigger.start_time = self.clock.now()
                trigger.validate()
            first = trigger.compute_first_fire_time()
            if first is None:
                raise InvalidScheduleError(f"Trigger {trigger.key} will never fire.")

            trigger.job = job
            trigger.next_fire_time = first
            self._triggers[trigger.key] = trigger
            if register_job and existing is None:
                self._jobs[job.key] = job

        logger.info("Scheduled %s for job %s; first fire at %s", trigger.key, job.key, first.isoformat())
        self._inbox.put(("admit", trigger))
        return trigger.key

    def unschedule(self, trigger_key: TriggerKey) -> bool:
        with self._lock:
            trigger = self._triggers.get(trigger_key)
            if trigger is None:
                raise NotFoundError(trigger_key)
            self._remove_trigger_locked(trigger)
        logger.info("Unscheduled %s", trigger_key)
        notify(self._listeners, "trigger_finalized", trigger)
        self.wakeup()
        return True

    def add_job(self, job: JobDetail, replace: bool = False) -> None:
        if not job.durable:
            raise InvalidScheduleError(f"Job {job.key} must be durable to be stored without a trigger.")
        with self._lock:
            if self._state is SchedulerState.SHUTDOWN:
                raise SchedulerShutdownError("Scheduler has been shut down.")
            existing = self._jobs.get(job.key)
            if existing is not None and not replace:
                raise InvalidScheduleError(f"Job {job.key} already exists.")
            self._jobs[job.key] = job
            # retry-derived triggers keep their private copy
            for trigger in self._triggers.values():
                if existing is not None and trigger.job is existing:
                    trigger.job = job
        logger.info("Stored durable job %s", job.key)

    def delete_job(self, job_key: JobKey) -> bool:
        with self._lock:
            if job_key not in self._jobs:
                raise NotFoundError(job_key, kind="Job")
            removed = [t for t in self._triggers.values() if t.job is not None and t.job.key == job_key]
            for trigger in removed:
                del self._triggers[trigger.key]
            del self._jobs[job_key]
        for trigger in removed:
            notify(self._listeners, "trigger_finalized", trigger)
        logger.info("Deleted job %s and %s trigger(s)", job_key, len(removed))
        self.wakeup()
        return True

    def trigger_job(self, job_key: JobKey) -> TriggerKey:
        job = self.get_job(job_key)
        key = TriggerKey(f"{job_key.name}.manual-{uuid.uuid4().hex[:8]}", job_key.group)
        trigger = OneShotTrigger(key, start_time=self.clock.now(), description=f"Manual firing of {job_key}")
        return self._admit(job, trigger, register_job=True)

    # ---------------------------------------------------------------- lookups

    def get_job(self, job_key: JobKey) -> JobDetail:
        with self._lock:
            job = self._jobs.get(job_key)
        if job is None:
            raise NotFoundError(job_key, kind="Job")
        return job

    def get_trigger(self, trigger_key: TriggerKey) -> Trigger:
        with self._lock:
            trigger = self._triggers.get(trigger_key)
        if trigger is None:
            raise NotFoundError(trigger_key)
        return trigger

    def get_triggers_of_job(self, job_key: JobKey) -> List[Trigger]:
        with self._lock:
            triggers = [t for t in self._triggers.values() if t.job is not None and t.job.key == job_key]
        return sorted(triggers, key=lambda t: t.key)

    def get_job_keys(self) -> List[JobKey]:
        with self._lock:
            return sorted(self._jobs)

    def get_trigger_keys(self) -> List[TriggerKey]:
        with self._lock:
            return sorted(self._triggers)

    def add_listener(self, listener: SchedulerListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: SchedulerListener) -> bool:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
                return True
        return False

    # ----------------------------------------------------------- coordinator

    def run_pending(self) -> int:
        """
        Run one coordinator pass on the calling thread.

        Applies queued admissions and outcomes, then dispatches every trigger
        that is due. Returns the number of firings dispatched.
        """
        if self._state is SchedulerState.SHUTDOWN:
            raise SchedulerShutdownError("Scheduler has been shut down.")
        if self._thread is not None and self._thread.is_alive():
            raise ForemanError("run_pending() cannot be used while the scheduler thread is running.")
        return self._run_pass()

    def wait_for_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until every dispatched execution has returned.

        With the coordinator thread running, also waits for their outcomes to
        be applied. Returns False on timeout.
        """

        def idle() -> bool:
            if self._futures:
                return False
            loop_running = self._thread is not None and self._thread.is_alive()
            return not (loop_running and self._in_flight)

        with self._idle:
            return self._idle.wait_for(idle, timeout=timeout)

    def _run_loop(self) -> None:
        logger.info("Coordinator loop started.")
        while not self._stop_event.is_set():
            try:
                self._run_pass()
            except Exception:
                logger.exception("Coordinator pass failed.")
            try:
                item = self._inbox.get(timeout=self._seconds_until_next())
            except Empty:
                continue
            if item[0] == "stop":
                break
            try:
                self._handle(item)
            except Exception:
                logger.exception("Coordinator failed to handle %s message.", item[0])
        logger.info("Coordinator loop stopped.")

    def _run_pass(self) -> int:
        with self._pass_lock:
            self._drain_inbox()
            if self._state is SchedulerState.SHUTDOWN:
                return 0
            self._prune_heap()
            dispatched = 0
            now = self.clock.now()
            while self._heap and self._heap[0][0] <= now:
                if self._state is SchedulerState.SHUTDOWN:
                    break
                fire_time, _, trigger = heapq.heappop(self._heap)
                if not self._is_current(trigger, fire_time):
                    continue
                if trigger.key in self._in_flight:
                    self._blocked[trigger.key] = trigger
                    continue
                if self._fire(trigger, now):
                    dispatched += 1
            return dispatched

    def _drain_inbox(self) -> None:
        while True:
            try:
                item = self._inbox.get_nowait()
            except Empty:
                return
            if item[0] == "stop":
                continue
            self._handle(item)

    def _handle(self, item: Tuple[str, Any]) -> None:
        kind, payload = item
        if kind == "admit":
            self._push(payload)
        elif kind == "outcome":
            self._apply_outcome(payload)
        elif kind == "lost":
            self._release(payload.key)
            self._reinsert_or_retire(payload)

    def _seconds_until_next(self) -> float:
        wait = self.settings.idle_wait_seconds
        if self._heap:
            delta = (self._heap[0][0] - self.clock.now()).total_seconds()
            wait = min(wait, max(delta, 0.0))
        return wait

    def _is_current(self, trigger: Trigger, fire_time: datetime) -> bool:
        with self._lock:
            registered = self._triggers.get(trigger.key) is trigger
        return registered and trigger.next_fire_time == fire_time

    def _prune_heap(self) -> None:
        with self._lock:
            live = len(self._triggers)
            if len(self._heap) <= max(HEAP_PRUNE_MIN, 2 * live):
                return
            before = len(self._heap)
            self._heap = [
                entry
                for entry in self._heap
                if self._triggers.get(entry[2].key) is entry[2] and entry[2].next_fire_time == entry[0]
            ]
        heapq.heapify(self._heap)
        logger.debug("Pruned %s stale heap entries.", before - len(self._heap))

    def _push(self, trigger: Trigger) -> None:
        if trigger.next_fire_time is None:
            return
        with self._lock:
            if self._triggers.get(trigger.key) is not trigger:
                return
        heapq.heappush(self._heap, (trigger.next_fire_time, next(self._seq), trigger))

    def _fire(self, trigger: Trigger, now: datetime) -> bool:
        scheduled = trigger.next_fire_time
        fire_time = scheduled
        if trigger.is_misfired(now, self.settings.misfire_threshold):
            logger.warning(
                "Trigger %s misfired (due %s, now %s); firing once now.",
                trigger.key,
                scheduled.isoformat(),
                now.isoformat(),
            )
            notify(self._listeners, "trigger_misfired", trigger)
            fire_time = now

        try:
            trigger.triggered(fire_time)
            successor = trigger.next_fire_time
            if successor is not None and (successor <= fire_time or successor < EPOCH):
                raise SchedulerFatalError(
                    f"Trigger {trigger.key} computed next fire time {successor.isoformat()} "
                    f"not after {fire_time.isoformat()}."
                )
        except SchedulerFatalError as exc:
            logger.error("%s Retiring trigger.", exc)
            trigger.next_fire_time = None
            self._retire(trigger)
            return False

        attempt = JobAttempt(
            trigger.job,
            trigger,
            scheduled_fire_time=scheduled,
            clock=self.clock,
            scheduler=self,
            listeners=list(self._listeners),
        )
        with self._idle:
            self._in_flight[trigger.key] = trigger
            try:
                future = self._executor.submit(self._execute, attempt)
            except RuntimeError as exc:
                del self._in_flight[trigger.key]
                self._idle.notify_all()
                logger.warning("Could not dispatch %s: %s", trigger.key, exc)
                return False
            self._futures[future] = trigger.key
        future.add_done_callback(self._future_done)
        logger.info("Dispatched %s (job %s, scheduled_for=%s)", trigger.key, trigger.job.key, scheduled.isoformat())
        return True

    def _execute(self, attempt: JobAttempt) -> None:
        try:
            outcome = attempt.run()
        except Exception:
            logger.exception("Attempt for %s crashed outside the job body.", attempt.trigger.key)
            self._inbox.put(("lost", attempt.trigger))
            return
        self._inbox.put(("outcome", outcome))

    def _future_done(self, future: Future) -> None:
        with self._idle:
            trigger_key = self._futures.pop(future, None)
            if future.cancelled() and trigger_key is not None:
                self._in_flight.pop(trigger_key, None)
                logger.info("Cancelled queued firing of %s on shutdown.", trigger_key)
            self._idle.notify_all()

    def _release(self, trigger_key: TriggerKey) -> None:
        with self._idle:
            self._in_flight.pop(trigger_key, None)
            self._idle.notify_all()
        blocked = self._blocked.pop(trigger_key, None)
        if blocked is not None:
            self._push(blocked)

    def _apply_outcome(self, outcome: ExecutionOutcome) -> None:
        trigger = outcome.trigger
        self._release(trigger.key)
        if self._state is SchedulerState.SHUTDOWN:
            return
        with self._lock:
            registered = self._triggers.get(trigger.key) is trigger
        if not registered:
            logger.info("Trigger %s was unscheduled while running; not reinserting.", trigger.key)
            return

        if outcome.success:
            self._reinsert_or_retire(trigger)
            return
        if outcome.wants_retry and self._schedule_retry(outcome):
            self._reinsert_or_retire(trigger)
            return

        reason = outcome.decision.reason if outcome.decision is not None else "no decision"
        logger.warning("Giving up on job %s after attempt %s (%s).", outcome.job.key, outcome.attempt, reason)
        notify(self._listeners, "job_gave_up", outcome.job, trigger, outcome)
        trigger.next_fire_time = None
        self._retire(trigger)

    def _schedule_retry(self, outcome: ExecutionOutcome) -> bool:
        source = outcome.trigger
        decision = outcome.decision
        retry_job = outcome.retry_job
        if retry_job is None:
            retry_job = outcome.job.copy()
            retry_job.job_data_map.attempt_count = outcome.attempt
        key = TriggerKey(f"{source.key.name}.retry-{outcome.attempt}-{uuid.uuid4().hex[:8]}", source.key.group)
        retry_trigger = OneShotTrigger(
            key,
            start_time=decision.retry_at,
            description=f"Retry {outcome.attempt} of {source.key}",
        )
        try:
            self._admit(retry_job, retry_trigger, register_job=False)
        except ForemanError as exc:
            logger.error("Could not schedule retry for %s: %s", outcome.job.key, exc)
            return False
        outcome.job.job_data_map.attempt_count = 0
        notify(self._listeners, "job_retry_scheduled", retry_job, retry_trigger, decision)
        return True

    def _reinsert_or_retire(self, trigger: Trigger) -> None:
        if trigger.next_fire_time is None:
            self._retire(trigger)
        else:
            self._push(trigger)

    def _retire(self, trigger: Trigger) -> None:
        with self._lock:
            if self._triggers.get(trigger.key) is not trigger:
                return
            self._remove_trigger_locked(trigger)
        logger.info("Trigger %s retired.", trigger.key)
        notify(self._listeners, "trigger_finalized", trigger)

    def _remove_trigger_locked(self, trigger: Trigger) -> None:
        del self._triggers[trigger.key]
        if trigger.job is None:
            return
        job_key = trigger.job.key
        job = self._jobs.get(job_key)
        if job is None or job.durable:
            return
        if any(t.job is not None and t.job.key == job_key for t in self._triggers.values()):
            return
        del self._jobs[job_key]
        logger.info("Removed non-durable job %s (no triggers left).", job_key)
