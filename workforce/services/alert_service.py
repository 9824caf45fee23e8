"""
Capacity alerting: periodically recompute every active worker's workload and
report the ones over their ceilings.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, ContextManager, List, Optional

from workforce.config import settings
from workforce.services.allocation_source import AllocationSource
from workforce.services.workload_service import WorkloadCalculationService, WorkloadSnapshot

logger = logging.getLogger(__name__)

ALERT_OVERLOADED = "OVERLOADED"
ALERT_OVER_BEYOND_EXCEEDED = "OVER_BEYOND_EXCEEDED"


@dataclass(frozen=True)
class CapacityAlert:
    worker_id: str
    alert_type: str
    message: str
    snapshot: WorkloadSnapshot


def _log_alert(alert: CapacityAlert) -> None:
    logger.warning(
        "Capacity alert %s: %s",
        alert.alert_type,
        alert.message,
        extra={"worker_id": alert.worker_id, "status": alert.alert_type},
    )


class CapacityAlertEvaluator:
    """
    Polls fresh snapshots (never the cache) and emits alerts.

    ``source_scope`` is called once per evaluation and must return a context
    manager yielding an ``AllocationSource``, so each pass gets its own
    database session.
    """

    def __init__(
        self,
        source_scope: Callable[[], ContextManager[AllocationSource]],
        notify: Optional[Callable[[CapacityAlert], None]] = None,
        interval_seconds: Optional[float] = None,
    ):
        self.source_scope = source_scope
        self.notify = notify or _log_alert
        self.interval_seconds = (
            settings.CAPACITY_ALERT_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def evaluate_snapshot(self, snapshot: WorkloadSnapshot) -> List[CapacityAlert]:
        alerts: List[CapacityAlert] = []
        if snapshot.primary_total > snapshot.primary_ceiling:
            alerts.append(
                CapacityAlert(
                    worker_id=snapshot.worker_id,
                    alert_type=ALERT_OVERLOADED,
                    message=(
                        f"Worker {snapshot.worker_id} is overloaded "
                        f"({snapshot.primary_total:.1f}% of {snapshot.primary_ceiling:.1f}% capacity)"
                    ),
                    snapshot=snapshot,
                )
            )
        if snapshot.secondary_total > snapshot.secondary_ceiling:
            alerts.append(
                CapacityAlert(
                    worker_id=snapshot.worker_id,
                    alert_type=ALERT_OVER_BEYOND_EXCEEDED,
                    message=(
                        f"Over & Beyond workload ({snapshot.secondary_total:.1f}%) exceeds "
                        f"capacity ({snapshot.secondary_ceiling:.1f}%)"
                    ),
                    snapshot=snapshot,
                )
            )
        return alerts

    def evaluate_once(self) -> List[CapacityAlert]:
        """Run one evaluation pass and hand every alert to ``notify``."""
        with self.source_scope() as source:
            calculator = WorkloadCalculationService(source)
            worker_ids = [w.id for w in source.list_workers(active_only=True)]
            snapshots = calculator.compute_snapshots(worker_ids)

        alerts: List[CapacityAlert] = []
        for snapshot in snapshots:
            alerts.extend(self.evaluate_snapshot(snapshot))
        for alert in alerts:
            try:
                self.notify(alert)
            except Exception:
                logger.exception("Capacity alert delivery failed", extra={"worker_id": alert.worker_id})
        logger.info("Capacity evaluation finished: %d workers, %d alerts", len(snapshots), len(alerts))
        return alerts

    # ==================== Background loop ====================

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="capacity-alert-evaluator", daemon=True)
        self._thread.start()
        logger.info("Capacity alert evaluator started (every %ss)", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Capacity alert evaluator stopped")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.evaluate_once()
            except Exception as e:
                logger.warning("Capacity evaluation failed: %s", e)
