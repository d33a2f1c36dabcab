"""Fleet controller fixtures: an in-process provider and ready-made components."""
import itertools
import threading
from datetime import datetime

import pytest

from fleet_controller.config.settings import Settings
from fleet_controller.exceptions import ProviderError
from fleet_controller.models import LaunchHandle, Node, NodeStatus, RequestState, Template
from fleet_controller.provisioning import ProvisioningController
from fleet_controller.registry import NodeRegistry, TemplateRepository
from fleet_controller.retention import RetentionController

TEST_IMAGE = "ami-12345678"
TEST_LABEL = "linux docker"
NOON = datetime(2024, 3, 6, 12, 0)  # a Wednesday


class FakeProvider:
    """Compute provider that keeps instances in memory."""

    def __init__(self, running=None):
        """
        Args:
            running: Mapping of image id to the number of instances already running
        """
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.instances = {}
        self.request_states = {}
        self.launched = []
        self.terminated = []
        self.count_calls = 0
        self.record_launches = True
        self.launch_gate = threading.Event()
        self.launch_gate.set()
        self.fail_count = False
        self.fail_launch = False
        self.fail_wait = False
        self.fail_terminate = False
        for image_id, count in (running or {}).items():
            for _ in range(count):
                self.instances[self._next_id()] = (image_id, "running")

    def _next_id(self):
        return f"i-{next(self._ids):08x}"

    def count_instances(self, image_id=None):
        with self._lock:
            self.count_calls += 1
            if self.fail_count:
                raise ProviderError("describe_instances unavailable")
            return sum(
                1 for image, state in self.instances.values()
                if state in ("pending", "running") and (image_id is None or image == image_id)
            )

    def describe_pending_request(self, request_id):
        return self.request_states.get(request_id, RequestState.CLOSED)

    def launch(self, template):
        self.launch_gate.wait(timeout=5)
        if self.fail_launch:
            raise ProviderError("InsufficientInstanceCapacity")
        with self._lock:
            instance_id = self._next_id()
            if self.record_launches:
                self.instances[instance_id] = (template.image_id, "pending")
            self.launched.append(template.name)
        return LaunchHandle(instance_id=instance_id, image_id=template.image_id)

    def wait_until_running(self, handle, timeout):
        if self.fail_wait:
            raise ProviderError("instance terminated during boot")
        with self._lock:
            if handle.instance_id in self.instances:
                self.instances[handle.instance_id] = (handle.image_id, "running")
        return handle.instance_id

    def describe_instance(self, instance_id):
        image_id, state = self.instances[instance_id]
        return {"InstanceId": instance_id, "ImageId": image_id, "State": {"Name": state}}

    def terminate(self, instance_id):
        if self.fail_terminate:
            raise ProviderError("terminate_instances unavailable")
        with self._lock:
            self.terminated.append(instance_id)
            if instance_id in self.instances:
                self.instances[instance_id] = (self.instances[instance_id][0], "terminated")


def make_settings(**overrides):
    values = dict(
        deployment_mode="local-dev",
        instance_cap_str="",
        launch_workers=4,
        launch_timeout_seconds=5,
        initial_delay_seconds=0,
        recurrence_period_seconds=0.05,
        retention_disabled=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_template(**overrides):
    values = dict(
        name="linux-builder",
        image_id=TEST_IMAGE,
        num_executors=2,
        instance_cap="",
        num_primed_instances=0,
        label_string=TEST_LABEL,
        idle_termination_minutes=30,
    )
    values.update(overrides)
    return Template(**values)


def make_node(name, label=TEST_LABEL, online=True, busy=0, executors=2, idle_since=NOON,
              spot_request_id=None, template_name="linux-builder"):
    return Node(
        name=name,
        instance_id=f"i-{name}",
        image_id=TEST_IMAGE,
        label_string=label,
        template_name=template_name,
        num_executors=executors,
        spot_request_id=spot_request_id,
        status=NodeStatus.ONLINE if online else NodeStatus.OFFLINE,
        busy_executors=busy,
        idle_since=idle_since,
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def registry():
    return NodeRegistry()


@pytest.fixture
def fleet_settings():
    return make_settings()


@pytest.fixture
def controller_factory(provider, registry, fleet_settings):
    """Build a ProvisioningController; shuts every one down afterwards."""
    controllers = []

    def factory(*templates, settings=None, now=NOON, **kwargs):
        controller = ProvisioningController(
            provider,
            registry,
            TemplateRepository(list(templates) or [make_template()]),
            settings=settings or fleet_settings,
            clock=lambda: now,
            **kwargs,
        )
        controllers.append(controller)
        return controller

    yield factory
    provider.launch_gate.set()
    for controller in controllers:
        controller.shutdown(wait=True)


@pytest.fixture
def retention_factory(provider, registry, fleet_settings):
    def factory(*templates, settings=None, now=NOON):
        return RetentionController(
            provider,
            registry,
            TemplateRepository(list(templates) or [make_template()]),
            settings=settings or fleet_settings,
            clock=lambda: now,
        )
    return factory
