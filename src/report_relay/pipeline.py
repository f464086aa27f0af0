"""Intake pipeline: turns filesystem events and directory scans into deliveries.

Per-path lifecycle::

    (untracked) -> QUEUED -> IN_FLIGHT -> DELIVERED | FAILED | SKIPPED

Terminal entries are kept for ``retention_hours`` and then evicted, after
which the path is treated as never seen. A create/modify event restarts a
FAILED or SKIPPED lifecycle with a new generation; tasks still queued for
an older generation are discarded when a worker picks them up.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable

from .channel import build_caption
from .classifier import priority_for
from .executor import Delivered, FailedRetryable
from .ledger import LedgerWriteError
from .models import DispatchTask, EventKind, FileEvent, FileState, WatchedFile, normalize_path
from .periodic import PeriodicTask
from .recorder import OUTCOME_DELIVERED, OUTCOME_FAILED, OUTCOME_INTERRUPTED, OUTCOME_SKIPPED

if TYPE_CHECKING:
    from .classifier import FileClassifier
    from .config import RelayConfig
    from .executor import DispatchExecutor
    from .ledger import SentLedger
    from .notifier import Notifier
    from .recorder import HealthRecorder
    from .watcher import FileWatcher

REASON_NO_DESTINATION = "no destination"
REASON_ALREADY_SENT = "already sent"
REASON_INTERRUPTED = "interrupted by shutdown"

# Shortest wait before retrying a task that was refused by the local rate limiter
MIN_REQUEUE_DELAY = 1.0


def _file_size(path: Path) -> int | None:
    try:
        return path.stat().st_size
    except OSError:
        return None


@dataclass(frozen=True)
class ProcessResult:
    """What happened to one task taken from the queue."""

    path: Path
    state: FileState
    detail: str = ""
    attempts: int = 0


@dataclass(frozen=True)
class PipelineStatus:
    """Operational view of the pipeline."""

    directory: Path
    watcher_active: bool
    queued_tasks: int
    pending_events: int
    in_flight: int
    tracked_files: int
    sent_files: int
    event_errors: int
    restart_attempts: int
    seconds_since_scan: float | None


class IntakePipeline:
    """Detects new reports and schedules their delivery.

    Two sources feed the pipeline: push events from the ``FileWatcher`` and
    a periodic full scan of the reports folder. Both go through the same
    admission step, which deduplicates against the ledger and the per-path
    tracking map, classifies the file and queues a ``DispatchTask``. A fixed
    pool of workers drains the queue, one task at a time each.

    The tracking map is guarded by one lock. Only one worker can hold a path
    IN_FLIGHT: claiming a task is a QUEUED -> IN_FLIGHT transition made
    under that lock.
    """

    def __init__(
        self,
        config: RelayConfig,
        ledger: SentLedger,
        classifier: FileClassifier,
        executor: DispatchExecutor,
        recorder: HealthRecorder,
        notifier: Notifier,
        logger: logging.Logger,
        *,
        watcher: FileWatcher | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the pipeline.

        Args:
            config: Relay configuration.
            ledger: Loaded sent-file ledger.
            classifier: File name classifier.
            executor: Dispatch executor.
            recorder: Health/audit recorder.
            notifier: Operator notifications.
            logger: Logger instance.
            watcher: Filesystem watch facility; scans only when None.
            clock: Monotonic clock, injectable for tests.
            sleep: Awaitable sleep, injectable for tests.

        """
        self.config = config
        self.ledger = ledger
        self.classifier = classifier
        self.executor = executor
        self.recorder = recorder
        self.notifier = notifier
        self.logger = logger
        self.watcher = watcher
        self._clock = clock
        self._sleep = sleep

        self._tracked: dict[str, WatchedFile] = {}
        self._lock = threading.Lock()
        self._tasks: asyncio.Queue[DispatchTask] = asyncio.Queue(maxsize=config.task_queue_size)
        self._stop = asyncio.Event()
        self._busy: dict[int, DispatchTask] = {}
        self._fatal: BaseException | None = None

        self.event_errors = 0
        self.restart_attempts = 0
        self._restart_streak = 0
        self.last_successful_scan: float | None = None
        self._started_at = clock()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def is_allowed(self, path: Path) -> bool:
        return path.suffix.lower() in self.config.allowed_extensions

    def get_entry(self, path: str | Path) -> WatchedFile | None:
        """Return the tracking record for a path, if any."""
        with self._lock:
            return self._tracked.get(normalize_path(path))

    def handle_event(self, event: FileEvent) -> bool:
        """Apply one filesystem event.

        Args:
            event: Event from the watch facility.

        Returns:
            True if a new task was queued.

        """
        if event.kind is EventKind.DELETED:
            self.forget(event.path)
            return False

        if event.kind is EventKind.RENAMED:
            self.forget(event.path)
            if event.dest_path is None or not self.is_allowed(event.dest_path):
                return False
            return self.observe(event.dest_path, EventKind.CREATED)

        if not self.is_allowed(event.path):
            return False
        return self.observe(event.path, event.kind)

    def observe(self, path: Path, kind: EventKind, *, from_scan: bool = False) -> bool:
        """Start a lifecycle for ``path`` unless it is already known.

        Args:
            path: File that was seen.
            kind: How it was seen.
            from_scan: Seen by a directory scan rather than an event. Scans
                never restart a terminal lifecycle.

        Returns:
            True if a new task was queued.

        """
        key = normalize_path(path)
        if self.ledger.contains(key):
            self.logger.debug("Ignoring %s: already sent", path.name)
            return False

        now = self._clock()
        size = _file_size(path) or 0
        with self._lock:
            entry = self._tracked.get(key)
            if entry is not None:
                if not entry.state.is_terminal:
                    entry.last_event = kind
                    entry.last_event_at = now
                    return False
                if from_scan:
                    return False
                if entry.state is FileState.SKIPPED and entry.last_error == REASON_NO_DESTINATION:
                    # The name decides the destination; content changes cannot help.
                    return False
            generation = entry.generation + 1 if entry is not None else 1
            entry = WatchedFile(
                path=path,
                size=size,
                first_seen=now,
                last_event_at=now,
                last_event=kind,
                generation=generation,
            )
            self._tracked[key] = entry

        classification = self.classifier.classify(path.name)
        if classification is None:
            self._finish(key, generation, FileState.SKIPPED, REASON_NO_DESTINATION)
            self.recorder.record_outcome(path, OUTCOME_SKIPPED, REASON_NO_DESTINATION)
            self.logger.warning("No destination for %s, skipping", path.name)
            return False

        task = DispatchTask(
            ready_at=now + self.config.settle_delay,
            path=path,
            destination=classification.destination,
            caption=path.name,
            priority=classification.priority,
            enqueued_at=now,
            generation=generation,
        )
        self._enqueue(task)
        self.logger.debug("Queued %s for %s", path.name, classification.destination.label)
        return True

    def forget(self, path: Path) -> None:
        """Stop tracking a path. An in-flight dispatch is left to finish."""
        key = normalize_path(path)
        with self._lock:
            entry = self._tracked.get(key)
            if entry is None:
                return
            if entry.state is FileState.IN_FLIGHT:
                entry.last_event = EventKind.DELETED
                entry.last_event_at = self._clock()
                return
            del self._tracked[key]
        self.logger.debug("Stopped tracking %s", path.name)

    def _enqueue(self, task: DispatchTask) -> None:
        """Queue a task, dropping the oldest queued task when full."""
        try:
            self._tasks.put_nowait(task)
        except asyncio.QueueFull:
            dropped = self._tasks.get_nowait()
            with self._lock:
                entry = self._tracked.get(dropped.key)
                if entry is not None and entry.generation == dropped.generation and entry.state is FileState.QUEUED:
                    del self._tracked[dropped.key]
            self.logger.warning("Task queue full, dropped %s until the next scan", dropped.path.name)
            self._tasks.put_nowait(task)
        self.recorder.record_queue_depth(self._tasks.qsize())

    def _finish(self, key: str, generation: int, state: FileState, detail: str = "") -> None:
        with self._lock:
            entry = self._tracked.get(key)
            if entry is None or entry.generation != generation:
                return
            entry.state = state
            entry.last_error = detail or None
            entry.finished_at = self._clock()

    # ------------------------------------------------------------------
    # Directory scan
    # ------------------------------------------------------------------

    def scan_directory(self) -> int:
        """Queue every untracked, unsent report in the folder.

        New files are queued highest priority first, oldest first within a
        priority.

        Returns:
            Number of tasks queued.

        """
        folder = self.config.reports_folder
        if not folder.is_dir():
            self.logger.warning("Reports folder is not reachable: %s", folder)
            return 0

        candidates: list[tuple[int, float, Path]] = []
        for path in folder.iterdir():
            if not path.is_file() or not self.is_allowed(path):
                continue
            if self.ledger.contains(path) or self.get_entry(path) is not None:
                continue
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            candidates.append((-priority_for(path.name), mtime, path))

        candidates.sort(key=lambda c: (c[0], c[1]))
        queued = sum(1 for _, _, path in candidates if self.observe(path, EventKind.CREATED, from_scan=True))

        self.last_successful_scan = self._clock()
        if queued:
            self.logger.info("Directory scan queued %d new reports", queued)
        else:
            self.logger.debug("Directory scan found nothing new")
        return queued

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _current_entry(self, task: DispatchTask) -> WatchedFile | None:
        with self._lock:
            entry = self._tracked.get(task.key)
            if entry is None or entry.generation != task.generation or entry.state is not FileState.QUEUED:
                return None
            return entry

    async def _await_settled(self, task: DispatchTask) -> bool:
        """Wait until the file has been quiet for ``settle_delay`` and its size is stable.

        Returns:
            False if the task was cancelled (deleted or superseded) meanwhile.

        """
        for _ in range(self.config.settle_checks + 1):
            entry = self._current_entry(task)
            if entry is None:
                return False
            deadline = max(task.ready_at, entry.last_event_at + self.config.settle_delay)
            delay = deadline - self._clock()
            if delay > 0:
                await self._sleep(delay)
                entry = self._current_entry(task)
                if entry is None:
                    return False

            size = _file_size(task.path)
            if size is None or size == entry.size:
                return True
            self.logger.debug("%s is still being written (%d -> %d bytes)", task.path.name, entry.size, size)
            with self._lock:
                entry.size = size
                entry.last_event_at = self._clock()
        return self._current_entry(task) is not None

    def _claim(self, task: DispatchTask) -> WatchedFile | None:
        """QUEUED -> IN_FLIGHT, the mutual exclusion point for a path."""
        with self._lock:
            entry = self._tracked.get(task.key)
            if entry is None or entry.generation != task.generation or entry.state is not FileState.QUEUED:
                return None
            entry.state = FileState.IN_FLIGHT
            return entry

    def _requeue(self, task: DispatchTask, entry: WatchedFile) -> None:
        delay = max(self.executor.rate_limiter.retry_after(), MIN_REQUEUE_DELAY)
        with self._lock:
            entry.state = FileState.QUEUED
        self._enqueue(replace(task, ready_at=self._clock() + delay))
        self.logger.info("Rate limit reached, retrying %s in %.0fs", task.path.name, delay)

    async def process_task(self, task: DispatchTask) -> ProcessResult | None:
        """Run one task taken from the queue.

        Args:
            task: Task to run.

        Returns:
            Result, or None if the task was stale and discarded.

        Raises:
            LedgerWriteError: A delivery could not be recorded.

        """
        if not await self._await_settled(task):
            self.logger.debug("Discarding stale task for %s", task.path.name)
            return None

        entry = self._claim(task)
        if entry is None:
            self.logger.debug("Discarding stale task for %s", task.path.name)
            return None

        if self.ledger.contains(task.path):
            self._finish(task.key, task.generation, FileState.SKIPPED, REASON_ALREADY_SENT)
            self.recorder.record_outcome(task.path, OUTCOME_SKIPPED, REASON_ALREADY_SENT, task.destination)
            self.logger.info("Skipping %s: %s", task.path.name, REASON_ALREADY_SENT)
            return ProcessResult(task.path, FileState.SKIPPED, REASON_ALREADY_SENT)

        task = replace(
            task,
            caption=build_caption(task.path, task.destination.label, _file_size(task.path) or 0, datetime.now()),
        )
        try:
            outcome = await self.executor.send(task)
        except asyncio.CancelledError:
            self._finish(task.key, task.generation, FileState.FAILED, REASON_INTERRUPTED)
            self.recorder.record_outcome(task.path, OUTCOME_INTERRUPTED, REASON_INTERRUPTED, task.destination)
            raise

        with self._lock:
            entry.attempts += outcome.attempts

        if isinstance(outcome, Delivered):
            try:
                self.ledger.add(task.path)
            except LedgerWriteError as e:
                self.logger.critical("Delivered %s but could not record it: %s", task.path.name, e)
                self._finish(task.key, task.generation, FileState.FAILED, "ledger write failed")
                self.recorder.record_outcome(task.path, OUTCOME_FAILED, "ledger write failed", task.destination)
                await self.notifier.error("Sent-file ledger is not writable", f"{task.path.name}: {e}")
                raise
            self._finish(task.key, task.generation, FileState.DELIVERED)
            self.recorder.record_outcome(task.path, OUTCOME_DELIVERED, "", task.destination)
            return ProcessResult(task.path, FileState.DELIVERED, attempts=outcome.attempts)

        if isinstance(outcome, FailedRetryable) and outcome.rate_limited:
            self._requeue(task, entry)
            return ProcessResult(task.path, FileState.QUEUED, outcome.reason)

        self._finish(task.key, task.generation, FileState.FAILED, outcome.reason)
        self.recorder.record_outcome(task.path, OUTCOME_FAILED, outcome.reason, task.destination)
        self.logger.warning("Report %s was not delivered: %s", task.path.name, outcome.reason)
        await self.notifier.warning("Report not delivered", f"{task.path.name}: {outcome.reason}")
        return ProcessResult(task.path, FileState.FAILED, outcome.reason, outcome.attempts)

    async def _worker(self, worker_id: int) -> None:
        while not self._stop.is_set():
            task = await self._tasks.get()
            self._busy[worker_id] = task
            try:
                await self.process_task(task)
            except LedgerWriteError:
                raise
            except Exception as e:
                self.event_errors += 1
                self.logger.exception("Unexpected error while processing %s", task.path.name)
                self._finish(task.key, task.generation, FileState.FAILED, f"internal error: {e}")
            finally:
                self._busy.pop(worker_id, None)
                self.recorder.record_queue_depth(self._tasks.qsize())

    async def drain(self) -> list[ProcessResult]:
        """Process queued tasks until the queue is empty.

        Returns:
            Results of every task that was not discarded.

        """
        results: list[ProcessResult] = []

        async def drain_worker() -> None:
            while not self._tasks.empty():
                task = self._tasks.get_nowait()
                if result := await self.process_task(task):
                    results.append(result)

        await asyncio.gather(*(drain_worker() for _ in range(self.config.max_concurrent_uploads)))
        return results

    # ------------------------------------------------------------------
    # Event pump
    # ------------------------------------------------------------------

    async def _pump_events(self) -> None:
        assert self.watcher is not None
        while not self._stop.is_set():
            event = await self.watcher.get_event(timeout=1.0)
            if event is None:
                continue
            try:
                self.handle_event(event)
            except Exception:
                self.event_errors += 1
                self.logger.exception("Error handling %s event for %s", event.kind.value, event.path.name)

    # ------------------------------------------------------------------
    # Periodic jobs
    # ------------------------------------------------------------------

    async def check_health(self) -> list[str]:
        """Inspect the pipeline and report problems to the operator.

        Returns:
            Human-readable issues; empty when healthy.

        """
        issues: list[str] = []
        if self.watcher is None or not self.watcher.is_running:
            issues.append("File watcher is not active")
        if not self.config.reports_folder.is_dir():
            issues.append(f"Reports folder is not reachable: {self.config.reports_folder}")
        if self.event_errors > self.config.max_event_errors:
            issues.append(f"Many event processing errors: {self.event_errors}")

        backlog = self._tasks.qsize() + (self.watcher.pending() if self.watcher else 0)
        if backlog > self.config.max_queue_size:
            issues.append(f"Large processing backlog: {backlog}")

        since_scan = self._clock() - (self.last_successful_scan or self._started_at)
        if since_scan > self.config.max_scan_age:
            issues.append(f"No successful folder scan for {since_scan / 60:.0f} minutes")

        self.recorder.record_queue_depth(self._tasks.qsize())
        self.recorder.record_health_issues(issues)
        if issues:
            self.logger.warning("Monitoring problems: %s", "; ".join(issues))
            await self.notifier.warning(
                "File monitoring problems",
                "\n".join(f"• {issue}" for issue in issues),
            )
        else:
            self.logger.debug("Health check passed")
        return issues

    async def supervise_watcher(self) -> bool:
        """Recreate the watcher if it failed.

        Returns:
            True if the watcher was restarted.

        """
        if self.watcher is None or self.watcher.is_running:
            return False

        reason = self.watcher.error or "observer stopped"
        self.restart_attempts += 1
        self._restart_streak += 1
        self.recorder.record_watcher_restart()
        self.logger.error("File watcher inactive (%s), restart attempt #%d", reason, self.restart_attempts)
        if self._restart_streak == 1:
            await self.notifier.error("File monitoring failed", f"{reason}. Trying to restart the watcher.")

        await self._sleep(self.config.watcher_restart_delay)
        try:
            self.watcher.restart()
        except OSError as e:
            self.logger.error("Could not restart file watcher: %s", e)
            if self._restart_streak % 10 == 0:
                await self.notifier.error(
                    "File monitoring still down",
                    f"{self._restart_streak} restart attempts failed; folder scans continue.",
                )
            return False

        self.logger.info("File watcher restarted (attempt #%d)", self.restart_attempts)
        await self.notifier.success("File monitoring restored", f"Watcher restarted after {self._restart_streak} attempt(s)")
        self._restart_streak = 0
        self.scan_directory()
        return True

    def cleanup(self) -> int:
        """Evict terminal entries older than the retention window.

        Returns:
            Number of entries evicted.

        """
        cutoff = self._clock() - self.config.retention_hours * 3600
        with self._lock:
            stale = [
                key
                for key, entry in self._tracked.items()
                if entry.state.is_terminal and entry.finished_at is not None and entry.finished_at < cutoff
            ]
            for key in stale:
                del self._tracked[key]

        if stale:
            self.logger.debug("Evicted %d finished files from tracking", len(stale))
        if self.event_errors and datetime.now().hour == 0:
            self.event_errors = 0
            self.logger.debug("Reset event error counter")
        return len(stale)

    def save_snapshot(self) -> None:
        self.recorder.save(self.config.stats_file)

    async def _scan_job(self) -> None:
        self.scan_directory()

    async def _cleanup_job(self) -> None:
        self.cleanup()

    async def _snapshot_job(self) -> None:
        self.save_snapshot()

    def _periodic_tasks(self) -> list[PeriodicTask]:
        config = self.config
        tasks = [
            PeriodicTask("directory-scan", config.scan_interval, self._scan_job, self.logger, run_immediately=True),
            PeriodicTask("health-check", config.health_check_interval, self.check_health, self.logger),
            PeriodicTask("cleanup", config.cleanup_interval, self._cleanup_job, self.logger),
            PeriodicTask("statistics", config.stats_save_interval, self._snapshot_job, self.logger),
        ]
        if self.watcher is not None:
            tasks.append(
                PeriodicTask("watch-supervisor", config.watch_check_interval, self.supervise_watcher, self.logger)
            )
        return tasks

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _on_background_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if self._fatal is None:
            self._fatal = exc
        self.logger.critical("Background task %s failed, stopping: %s", task.get_name(), exc)
        self._stop.set()

    async def run(self) -> None:
        """Run until ``stop()`` is called.

        Raises:
            LedgerWriteError: A delivery could not be recorded; the pipeline
                stopped to avoid duplicate sends.

        """
        self._stop.clear()
        self._fatal = None
        self.logger.info("Starting intake pipeline for %s", self.config.reports_folder)

        pump: asyncio.Task[None] | None = None
        if self.watcher is not None:
            try:
                self.watcher.start()
            except OSError as e:
                self.logger.error("Could not start file watcher, relying on folder scans: %s", e)
                self.watcher.error = str(e)
            pump = asyncio.create_task(self._pump_events(), name="event-pump")
            pump.add_done_callback(self._on_background_done)

        workers = {
            n: asyncio.create_task(self._worker(n), name=f"worker-{n}")
            for n in range(self.config.max_concurrent_uploads)
        }
        for worker in workers.values():
            worker.add_done_callback(self._on_background_done)

        periodic = [
            asyncio.create_task(job.run(self._stop), name=job.name) for job in self._periodic_tasks()
        ]
        for job in periodic:
            job.add_done_callback(self._on_background_done)

        await self._stop.wait()
        await self._shutdown(pump, workers, periodic)

        if self._fatal is not None:
            raise self._fatal

    def stop(self) -> None:
        """Signal the pipeline to shut down."""
        self._stop.set()

    async def _shutdown(
        self,
        pump: asyncio.Task[None] | None,
        workers: dict[int, asyncio.Task[None]],
        periodic: list[asyncio.Task[None]],
    ) -> None:
        self.logger.info("Stopping intake pipeline...")
        if self.watcher is not None:
            self.watcher.stop()
        if pump is not None:
            pump.cancel()

        busy = [worker for n, worker in workers.items() if n in self._busy and not worker.done()]
        for n, worker in workers.items():
            if n not in self._busy:
                worker.cancel()

        if busy:
            self.logger.info("Waiting for %d in-flight deliveries", len(busy))
            _, pending = await asyncio.wait(busy, timeout=self.config.shutdown_timeout)
            if pending:
                names = [task.path.name for n, task in self._busy.items() if workers[n] in pending]
                self.logger.warning("Interrupting %d deliveries: %s", len(pending), ", ".join(names))
                for worker in pending:
                    worker.cancel()

        everything = [*workers.values(), *periodic]
        if pump is not None:
            everything.append(pump)
        await asyncio.gather(*everything, return_exceptions=True)

        abandoned = self._tasks.qsize()
        while not self._tasks.empty():
            self._tasks.get_nowait()
        if abandoned:
            self.logger.info("Left %d queued reports for the next start", abandoned)

        try:
            self.save_snapshot()
        except OSError as e:
            self.logger.error("Could not save statistics snapshot: %s", e)
        self.logger.info("Intake pipeline stopped")

    def status(self) -> PipelineStatus:
        with self._lock:
            in_flight = sum(1 for entry in self._tracked.values() if entry.state is FileState.IN_FLIGHT)
            tracked = len(self._tracked)
        return PipelineStatus(
            directory=self.config.reports_folder,
            watcher_active=self.watcher is not None and self.watcher.is_running,
            queued_tasks=self._tasks.qsize(),
            pending_events=self.watcher.pending() if self.watcher else 0,
            in_flight=in_flight,
            tracked_files=tracked,
            sent_files=len(self.ledger),
            event_errors=self.event_errors,
            restart_attempts=self.restart_attempts,
            seconds_since_scan=(
                self._clock() - self.last_successful_scan if self.last_successful_scan is not None else None
            ),
        )

    @property
    def queued(self) -> int:
        return self._tasks.qsize()
