"""
Periodic driver.

Re-runs provisioning for every known label on a fixed period, independent of
demand events, and runs idle checks over all registered nodes. The driver
owns its timer thread; nothing registers itself anywhere.
"""
import logging
import threading
from typing import Dict, List, Optional

from fleet_controller.config.settings import Settings, get_settings
from fleet_controller.models import PlannedUnit, RetentionDecision
from fleet_controller.provisioning import ProvisioningController
from fleet_controller.retention import RetentionController

logger = logging.getLogger(__name__)


class PeriodicDriver:
    """Inbound demand/tick surface plus the sweep timer."""

    def __init__(
        self,
        provisioning: ProvisioningController,
        retention: Optional[RetentionController] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.provisioning = provisioning
        self.retention = retention
        self.initial_delay = settings.initial_delay_seconds
        self.recurrence_period = settings.recurrence_period_seconds

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def demand(self, label: str, excess_workload: int) -> List[PlannedUnit]:
        """Handle a demand event for one label."""
        return self.provisioning.decide(label, excess_workload)

    def labels(self) -> List[str]:
        """Full label strings of templates and registered nodes."""
        labels = set(self.provisioning.templates.labels())
        labels.update(self.provisioning.registry.labels())
        return sorted(labels)

    def tick(self) -> Dict[str, List[PlannedUnit]]:
        """One sweep: top up every provisionable label, then check idle nodes.

        Returns:
            Plans keyed by label, for labels that got at least one launch
        """
        plans: Dict[str, List[PlannedUnit]] = {}
        labels = self.labels()
        logger.debug(f"Sweeping {len(labels)} labels")
        for label in labels:
            if not self.provisioning.can_provision(label):
                continue
            plan = self.provisioning.decide(label, 0)
            if plan:
                plans[label] = plan

        if self.retention is not None:
            terminated = 0
            for node in self.provisioning.registry.all_nodes():
                if self.retention.check(node) is RetentionDecision.TERMINATE:
                    terminated += 1
            if terminated:
                logger.info(f"Terminated {terminated} idle node(s)")

        return plans

    def start(self) -> None:
        """Start the sweep thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        logger.info(
            f"Starting periodic driver: initial delay {self.initial_delay}s, "
            f"period {self.recurrence_period}s"
        )
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="fleet-driver")
        self._thread.daemon = True
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the sweep thread."""
        logger.info("Stopping periodic driver")
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        if self._stop_event.wait(self.initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                # keep the timer alive; the next sweep retries
                logger.error(f"Error in periodic sweep: {str(e)}")
            self._stop_event.wait(self.recurrence_period)
