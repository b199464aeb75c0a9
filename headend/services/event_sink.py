"""Event sinks receiving deployment progress, log lines and the final result."""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol

from ..core.models import DeploymentResult, DeploymentStage

logger = logging.getLogger(__name__)

events_logger = logging.getLogger("headend.events")


class DeploymentEventSink(Protocol):
    """Receiver for the three deployment event streams.

    The deployer calls these synchronously, possibly from transfer worker
    threads, so implementations must be thread-safe.
    """

    def on_progress(self, stage: DeploymentStage, current: int, total: int) -> None:
        ...

    def on_log(self, message: str) -> None:
        ...

    def on_result(self, result: DeploymentResult) -> None:
        ...


class LoggingEventSink:
    """Forward events to the ``headend.events`` logger."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or events_logger

    def on_progress(self, stage: DeploymentStage, current: int, total: int) -> None:
        self._log.info("[%s] %d/%d", stage.value, current, total)

    def on_log(self, message: str) -> None:
        self._log.info("%s", message)

    def on_result(self, result: DeploymentResult) -> None:
        if result.success:
            self._log.info(
                "Deployment finished: %d VM(s) in %.1fs", len(result.vms), result.duration_seconds
            )
        else:
            self._log.warning(
                "Deployment failed after %.1fs (rolled back: %s): %s",
                result.duration_seconds,
                result.rolled_back,
                "; ".join(result.errors),
            )


@dataclass
class DeploymentStatus:
    """Point-in-time view of a buffered deployment."""

    stage: Optional[DeploymentStage] = None
    current: int = 0
    total: int = 0
    logs: List[str] = field(default_factory=list)
    result: Optional[DeploymentResult] = None
    updated_at: Optional[datetime] = None

    @property
    def finished(self) -> bool:
        return self.result is not None


Listener = Callable[[str, object], None]


class BufferedEventSink:
    """Keep status and log lines in memory and fan events out to listeners.

    Listeners are called with ``(event_type, payload)`` where ``event_type``
    is ``progress``, ``log`` or ``result``. A failing listener is logged and
    dropped so it cannot break the deployment.
    """

    def __init__(self, max_logs: int = 1000):
        self._lock = threading.Lock()
        self._status = DeploymentStatus()
        self._listeners: List[Listener] = []
        self._max_logs = max_logs

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def on_progress(self, stage: DeploymentStage, current: int, total: int) -> None:
        with self._lock:
            self._status.stage = stage
            self._status.current = current
            self._status.total = total
            self._touch()
        self._broadcast("progress", {"stage": stage.value, "current": current, "total": total})

    def on_log(self, message: str) -> None:
        with self._lock:
            self._status.logs.append(message)
            if len(self._status.logs) > self._max_logs:
                del self._status.logs[: len(self._status.logs) - self._max_logs]
            self._touch()
        self._broadcast("log", message)

    def on_result(self, result: DeploymentResult) -> None:
        with self._lock:
            self._status.result = result
            self._touch()
        self._broadcast("result", result)

    def snapshot(self) -> DeploymentStatus:
        """Return a copy safe to read while the deployment continues."""
        with self._lock:
            return DeploymentStatus(
                stage=self._status.stage,
                current=self._status.current,
                total=self._status.total,
                logs=list(self._status.logs),
                result=self._status.result,
                updated_at=self._status.updated_at,
            )

    def reset(self) -> None:
        with self._lock:
            self._status = DeploymentStatus()

    def _touch(self) -> None:
        self._status.updated_at = datetime.now(timezone.utc)

    def _broadcast(self, event_type: str, payload: object) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event_type, payload)
            except Exception as exc:  # noqa: BLE001 - listeners are untrusted
                logger.warning("Dropping event listener after error: %s", exc)
                self.unsubscribe(listener)


__all__ = [
    "BufferedEventSink",
    "DeploymentEventSink",
    "DeploymentStatus",
    "LoggingEventSink",
]
