"""Unified supervisor: health monitor plus retry worker.

The health monitor runs on its own thread and queues retry requests.
The calling thread drains the queue and is the only thread that invokes
the agent. Duplicate requests for a task already queued or in flight are
dropped. Setting the stop event ends both loops and interrupts any
backoff wait.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass

from .agent import AgentRunner
from .config import TaskwardenConfig
from .health.models import FindingKind, HealthCheckResult, Severity
from .health.monitor import HealthMonitor
from .recovery.classifier import ErrorKind
from .recovery.points import RecoveryPointError, RecoveryPointManager
from .reports.alerts import AlertHistory
from .reports.reporter import Reporter
from .retry.scheduler import RetryAborted, RetryOutcome, RetryScheduler
from .state import StateStore
from .utils.errors import TaskwardenError
from .utils.timing import Ticker

logger = logging.getLogger(__name__)

# Seconds the retry worker blocks on an empty queue
_QUEUE_POLL = 0.5


@dataclass
class Runtime:
    """All supervisor components wired to one workspace."""

    config: TaskwardenConfig
    store: StateStore
    alerts: AlertHistory
    reporter: Reporter
    points: RecoveryPointManager
    agent: AgentRunner
    scheduler: RetryScheduler
    monitor: HealthMonitor
    stop_event: threading.Event

    @classmethod
    def from_config(
        cls,
        config: TaskwardenConfig,
        agent: AgentRunner | None = None,
        stop_event: threading.Event | None = None,
    ) -> Runtime:
        ws = config.workspace
        stop_event = stop_event or threading.Event()

        store = StateStore(ws.state_path)
        alerts = AlertHistory(ws.alert_history_path, config.monitor.alert_cooldown)
        reporter = Reporter(config, store, alerts)
        points = RecoveryPointManager(store, ws.recovery_path, config.recovery.max_points)
        agent = agent or AgentRunner(config.agent.command, config.agent.timeout, cwd=ws.root_path)
        scheduler = RetryScheduler(
            store,
            points,
            agent,
            config.retry,
            alerts=alerts,
            stop_event=stop_event,
            error_log=ws.error_log_path,
        )
        monitor = HealthMonitor(config, store, reporter=reporter, points=points, alerts=alerts)

        return cls(
            config=config,
            store=store,
            alerts=alerts,
            reporter=reporter,
            points=points,
            agent=agent,
            scheduler=scheduler,
            monitor=monitor,
            stop_event=stop_event,
        )


@dataclass
class RetryRequest:
    """A synthetic failure queued by the health monitor."""

    task_id: str
    kind: ErrorKind
    message: str


class Supervisor:
    """Runs health monitoring and automatic retries together."""

    def __init__(self, runtime: Runtime):
        self.runtime = runtime
        self.stop_event = runtime.stop_event
        self.queue: queue.Queue[RetryRequest] = queue.Queue()
        self.halted_reason: str | None = None

        self._pending: set[str] = set()
        self._lock = threading.Lock()
        self._monitor_thread: threading.Thread | None = None

        runtime.monitor.on_failure = self.request_retry

    # =========================================================================
    # Requests
    # =========================================================================

    def request_retry(self, task_id: str, kind: ErrorKind, message: str) -> bool:
        """Queue a retry unless one for the task is already queued or running."""
        with self._lock:
            if task_id in self._pending:
                logger.debug("Retry for %s already pending; dropped", task_id)
                return False
            self._pending.add(task_id)
        self.queue.put(RetryRequest(task_id, kind, message))
        return True

    def _process(self, request: RetryRequest) -> RetryOutcome | None:
        try:
            return self.runtime.scheduler.attempt_retry(
                request.task_id, request.kind, request.message
            )
        except RetryAborted:
            raise
        except TaskwardenError as e:
            logger.error(f"Retry of {request.task_id} failed: {e}")
            return None
        except OSError as e:
            self._record_fault(f"Retry of {request.task_id} failed", e)
            return None
        finally:
            with self._lock:
                self._pending.discard(request.task_id)

    def drain(self) -> list[tuple[str, RetryOutcome | None]]:
        """Process every queued request on the calling thread."""
        outcomes = []
        while not self.stop_event.is_set():
            try:
                request = self.queue.get_nowait()
            except queue.Empty:
                break
            outcomes.append((request.task_id, self._process(request)))
        return outcomes

    # =========================================================================
    # Monitoring
    # =========================================================================

    def monitor_cycle(self) -> HealthCheckResult:
        """One health cycle, restoring or halting on state corruption."""
        result = self.runtime.monitor.run_cycle()
        if result.has(FindingKind.STATE_CORRUPT):
            self._handle_corruption()
        return result

    def _handle_corruption(self) -> None:
        if not self.runtime.config.recovery.auto_restore_on_corruption:
            self.halt("State document is corrupt and automatic restore is disabled")
            return

        latest = self.runtime.points.latest()
        if latest is None:
            self.halt("State document is corrupt and no recovery point exists")
            return

        try:
            self.runtime.points.restore(latest.id)
        except RecoveryPointError as e:
            self.halt(f"State document is corrupt and restore failed: {e}")
            return

        self.runtime.alerts.append(
            Severity.HIGH,
            "State restored",
            f"Corrupt state document replaced with recovery point {latest.id}",
        )

    def halt(self, reason: str) -> None:
        """Stop the supervisor with an operator-facing reason."""
        self.halted_reason = reason
        logger.error("Supervisor halted: %s", reason)
        self.runtime.alerts.append(
            Severity.CRITICAL,
            "Supervisor halted",
            reason,
            ("taskwarden recover smart", "taskwarden recover restore <point_id>"),
        )
        self.stop_event.set()

    def _monitor_loop(self) -> None:
        ticker = Ticker(self.runtime.monitor.interval, self.stop_event)
        for _ in ticker:
            try:
                self.monitor_cycle()
            except Exception as e:
                logger.exception(f"Monitor cycle failed: {e}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start_monitor(self) -> threading.Thread:
        thread = threading.Thread(target=self._monitor_loop, name="taskwarden-health", daemon=True)
        thread.start()
        self._monitor_thread = thread
        return thread

    def run(self) -> None:
        """Block until stopped, processing retries on this thread.

        Between requests, failed tasks recorded in the state document are
        scanned every ``monitor.interval`` seconds.
        """
        logger.info("Supervisor started for %s", self.runtime.store.path)
        self.start_monitor()
        scan_interval = self.runtime.config.monitor.interval
        next_scan = time.monotonic()

        try:
            while not self.stop_event.is_set():
                try:
                    request = self.queue.get(timeout=_QUEUE_POLL)
                except queue.Empty:
                    if time.monotonic() >= next_scan:
                        next_scan = time.monotonic() + scan_interval
                        self._scan_failures()
                    continue
                self._process(request)
        except RetryAborted:
            logger.info("Retry aborted by stop request")
        finally:
            self.stop()

        logger.info("Supervisor stopped")

    def _scan_failures(self) -> None:
        try:
            self.runtime.scheduler.scan_failures()
        except RetryAborted:
            raise
        except TaskwardenError as e:
            logger.warning(f"Failure scan skipped: {e}")
        except OSError as e:
            self._record_fault("Failure scan failed", e)

    def _record_fault(self, title: str, error: OSError) -> None:
        logger.error(f"{title}: {error}")
        try:
            self.runtime.alerts.append(
                Severity.HIGH,
                title,
                str(error),
                ("taskwarden health check", "taskwarden retry run <task_id>"),
            )
        except OSError as e:
            logger.error(f"Could not record alert: {e}")

    def stop(self, timeout: float = 5.0) -> None:
        self.stop_event.set()
        thread = self._monitor_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
