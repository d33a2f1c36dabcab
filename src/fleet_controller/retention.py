"""Idle node retention."""
import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from fleet_controller.config.settings import Settings, get_settings
from fleet_controller.exceptions import ProviderError
from fleet_controller.models import Node, RetentionDecision
from fleet_controller.registry import NodeRegistry, TemplateRepository, count_idle_nodes

logger = logging.getLogger(__name__)


class RetentionController:
    """Terminates nodes that stay idle past their template's threshold.

    Nodes that are still needed to hold the template's primed target are
    kept no matter how long they have been idle.
    """

    def __init__(
        self,
        provider,
        registry: NodeRegistry,
        templates: TemplateRepository,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        settings = settings or get_settings()
        self.provider = provider
        self.registry = registry
        self.templates = templates
        self.disabled = settings.retention_disabled
        self.clock = clock or datetime.now
        self._lock = threading.Lock()

    def evaluate(self, node: Node, now: Optional[datetime] = None) -> RetentionDecision:
        template = self.templates.template_for_node(node)
        if template is None:
            logger.warning(f"No template with labels '{node.label_string}' for node {node.name}, keeping it")
            return RetentionDecision.KEEP

        if template.idle_termination_minutes == 0:
            return RetentionDecision.KEEP

        if not (node.is_idle and node.is_online) or self.disabled:
            return RetentionDecision.KEEP

        now = now or self.clock()
        idle_since = node.idle_since or now
        idle_minutes = (now - idle_since).total_seconds() / 60
        if idle_minutes <= template.idle_termination_minutes:
            return RetentionDecision.KEEP

        idle_count = count_idle_nodes(self.registry, node.label_string)
        logger.debug(f"Idle nodes for '{node.label_string}': {idle_count}")
        if idle_count > template.num_primed_instances:
            logger.info(f"Idle timeout: {node.name} idle for {idle_minutes:.1f} minutes")
            return RetentionDecision.TERMINATE

        logger.debug(f"Keeping {node.name} as primed capacity ({idle_count}/{template.num_primed_instances})")
        return RetentionDecision.KEEP

    def check(self, node: Node, now: Optional[datetime] = None) -> RetentionDecision:
        """Evaluate a node and terminate it if it is no longer needed."""
        # serialized so two idle nodes cannot each count the other as surplus
        with self._lock:
            decision = self.evaluate(node, now)
            if decision is RetentionDecision.TERMINATE:
                try:
                    self.provider.terminate(node.instance_id)
                except ProviderError as e:
                    logger.error(f"Failed to terminate idle node {node.name}: {e}")
                    return RetentionDecision.KEEP
                self.registry.remove(node.name)
            return decision

    def start(self, node: Node) -> None:
        """Connect a newly adopted node right away."""
        self.registry.connect(node, self.clock())
