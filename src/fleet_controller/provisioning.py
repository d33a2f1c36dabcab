"""
Provisioning decisions.

Turns a label's unmet demand (plus any primed-instance shortfall) into a
bounded list of launches. Each launch runs on the shared pool and only
resolves once its node is online, so callers re-checking capacity right
after a decision see the launch as still pending rather than asking for
another instance.
"""
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, List, Optional

from fleet_controller.config.settings import Settings, get_settings
from fleet_controller.exceptions import CapacityExhaustedError, ProviderError, TemplateNotFoundError
from fleet_controller.ledger import CapacityLedger
from fleet_controller.models import Node, PlannedUnit, Template
from fleet_controller.registry import NodeRegistry, TemplateRepository, count_idle_nodes
from fleet_controller.windows import PrimedWindowScheduler

logger = logging.getLogger(__name__)


class ProvisioningController:
    """Plans and launches new nodes for labels with unmet demand."""

    def __init__(
        self,
        provider,
        registry: NodeRegistry,
        templates: TemplateRepository,
        ledger: Optional[CapacityLedger] = None,
        scheduler: Optional[PrimedWindowScheduler] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            provider: Compute provider (see fleet_controller.aws.ec2_provider.EC2Provider)
            registry: Registry that launched nodes are added to
            templates: Template repository used to resolve labels
            ledger: In-flight ledger; built from the provider and global cap if omitted
            scheduler: Primed window scheduler
            executor: Shared launch pool; owned and shut down by the controller if omitted
            settings: Settings (defaults to the cached process settings)
            clock: Returns the current time; used for primed windows and idle clocks
        """
        settings = settings or get_settings()
        self.provider = provider
        self.registry = registry
        self.templates = templates
        self.ledger = ledger or CapacityLedger(provider, settings.instance_cap)
        self.scheduler = scheduler or PrimedWindowScheduler()
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=settings.launch_workers,
            thread_name_prefix="fleet-launch",
        )
        self.launch_timeout = settings.launch_timeout_seconds
        self.clock = clock or datetime.now

    def can_provision(self, label: Optional[str]) -> bool:
        return self.templates.template_for_label(label) is not None

    def _count_pending_spot_nodes(self, label: str) -> List[Node]:
        """Offline nodes whose spot request may still come up."""
        pending = []
        for node in self.registry.nodes_by_label(label):
            # online nodes already show up as capacity
            if node.is_online or not node.spot_request_id:
                continue
            state = self.provider.describe_pending_request(node.spot_request_id)
            if state.is_pending:
                pending.append(node)
        return pending

    def decide(self, label: str, excess_workload: int) -> List[PlannedUnit]:
        """Plan launches for a label and start them.

        Never raises for cap exhaustion or provider trouble; the plan built
        so far is returned instead.

        Args:
            label: Workload label
            excess_workload: Executor-units of unmet demand

        Returns:
            One PlannedUnit per launch started
        """
        plan: List[PlannedUnit] = []
        logger.info(f"Excess workload start for '{label}': {excess_workload}")

        try:
            pending = self._count_pending_spot_nodes(label)
            for node in pending:
                excess_workload -= node.num_executors
            idle_count = count_idle_nodes(self.registry, label) - len(pending)
            logger.info(f"Excess workload after pending spot instances: {excess_workload}")

            template = self.templates.template_for_label(label)
            if template is None:
                logger.debug(f"No template serves label '{label}'")
                return plan

            shortfall = max(0, template.num_primed_instances - idle_count)
            logger.info(
                f"Primed instances needed: {shortfall} = primed instances: "
                f"{template.num_primed_instances} - idle nodes: {idle_count}"
            )
            if shortfall and self.scheduler.is_active(template, self.clock()):
                excess_workload += shortfall * template.num_executors

            while excess_workload > 0:
                if not self.ledger.reserve(template.image_id, template.instance_cap):
                    break
                try:
                    plan.append(self._submit_launch(template))
                except RuntimeError as e:
                    logger.error(f"Launch pool unavailable, stopping plan for '{label}': {e}")
                    break
                excess_workload -= template.num_executors

        except ProviderError as e:
            logger.error(f"Failed to count the number of live instances for '{label}': {e}")

        if plan:
            logger.info(f"Planned {len(plan)} new node(s) for '{label}'")
        return plan

    def _submit_launch(self, template: Template) -> PlannedUnit:
        image_id = template.image_id
        try:
            future = self.executor.submit(self._launch, template)
        except RuntimeError:
            self.ledger.release(image_id)
            raise

        def release_if_cancelled(f: Future) -> None:
            # a cancelled task never ran, so its finally block never released
            if f.cancelled():
                self.ledger.release(image_id)

        future.add_done_callback(release_if_cancelled)
        return PlannedUnit(template.name, template.num_executors, future)

    def _launch(self, template: Template) -> Node:
        """Launch, register and connect one node; always releases the ledger slot."""
        try:
            handle = self.provider.launch(template)
            node = Node.from_launch(template, handle)
            self.registry.register(node)
            try:
                node.instance_id = self.provider.wait_until_running(handle, self.launch_timeout)
                self.registry.connect(node, self.clock())
            except Exception as e:
                logger.error(f"Node {node.name} failed to come online: {e}")
                self.registry.remove(node.name)
                raise
            return node
        finally:
            self.ledger.release(template.image_id)

    def provision_template(self, name: str) -> Node:
        """Launch one node of the named template and wait for it.

        Raises:
            TemplateNotFoundError: No template has that name
            CapacityExhaustedError: A cap refused the launch
            ProviderError: The provider failed
        """
        template = self.templates.template_by_name(name)
        if not self.ledger.reserve(template.image_id, template.instance_cap):
            raise CapacityExhaustedError(f"Instance cap reached for template {name}")
        return self._launch(template)

    def attach(self, instance_id: str, template_name: Optional[str] = None) -> Node:
        """Adopt an instance that is already running as a node."""
        if template_name:
            template = self.templates.template_by_name(template_name)
        else:
            available = self.templates.templates()
            if not available:
                raise TemplateNotFoundError("No templates configured")
            template = available[0]

        instance = self.provider.describe_instance(instance_id)
        node = Node(
            name=f"{template.name} ({instance_id})",
            instance_id=instance_id,
            image_id=instance.get('ImageId', template.image_id),
            label_string=template.label_string,
            template_name=template.name,
            num_executors=template.num_executors,
        )
        self.registry.register(node)
        if instance.get('State', {}).get('Name') == 'running':
            self.registry.connect(node, self.clock())
        logger.info(f"Attached instance {instance_id} as {node.name}")
        return node

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=wait)
