from datetime import timedelta

import pytest

from fleet_controller.models import RetentionDecision
from tests.fixtures.fleet_fixtures import NOON, TEST_LABEL, make_node, make_settings, make_template

KEEP = RetentionDecision.KEEP
TERMINATE = RetentionDecision.TERMINATE

LONG_AGO = NOON - timedelta(hours=2)
RECENTLY = NOON - timedelta(minutes=10)


@pytest.mark.parametrize("idle_since", [LONG_AGO, NOON - timedelta(days=30)])
def test_zero_threshold_never_terminates(retention_factory, registry, idle_since):
    retention = retention_factory(make_template(idle_termination_minutes=0))
    node = make_node("n1", idle_since=idle_since)
    registry.register(node)
    registry.register(make_node("n2", idle_since=idle_since))

    assert retention.evaluate(node) is KEEP


def test_idle_within_threshold_is_kept(retention_factory, registry):
    retention = retention_factory()
    node = make_node("n1", idle_since=RECENTLY)
    registry.register(node)

    assert retention.evaluate(node) is KEEP


def test_idle_past_threshold_with_surplus_is_terminated(retention_factory, registry):
    retention = retention_factory(make_template(num_primed_instances=1))
    node = make_node("n1", idle_since=LONG_AGO)
    registry.register(node)
    registry.register(make_node("n2", idle_since=RECENTLY))

    assert retention.evaluate(node) is TERMINATE


def test_idle_past_threshold_kept_as_primed_capacity(retention_factory, registry):
    retention = retention_factory(make_template(num_primed_instances=2))
    node = make_node("n1", idle_since=LONG_AGO)
    registry.register(node)
    registry.register(make_node("n2", idle_since=LONG_AGO))

    assert retention.evaluate(node) is KEEP


def test_idle_count_uses_exact_label_match(retention_factory, registry):
    retention = retention_factory(make_template(num_primed_instances=1))
    node = make_node("n1", idle_since=LONG_AGO)
    registry.register(node)
    registry.register(make_node("other", label="docker", idle_since=LONG_AGO))

    assert retention.evaluate(node) is KEEP


@pytest.mark.parametrize("overrides", [{"busy": 1}, {"online": False}])
def test_busy_or_offline_nodes_are_kept(retention_factory, registry, overrides):
    retention = retention_factory()
    node = make_node("n1", idle_since=LONG_AGO, **overrides)
    registry.register(node)

    assert retention.evaluate(node) is KEEP


def test_disabled_controller_keeps_everything(retention_factory, registry):
    retention = retention_factory(settings=make_settings(retention_disabled=True))
    node = make_node("n1", idle_since=LONG_AGO)
    registry.register(node)

    assert retention.evaluate(node) is KEEP


def test_node_without_template_is_kept(retention_factory, registry):
    retention = retention_factory()
    node = make_node("n1", label="windows", template_name="retired", idle_since=LONG_AGO)
    registry.register(node)

    assert retention.evaluate(node) is KEEP


def test_check_terminates_and_unregisters(retention_factory, registry, provider):
    retention = retention_factory()
    node = make_node("n1", idle_since=LONG_AGO)
    registry.register(node)

    assert retention.check(node) is TERMINATE
    assert provider.terminated == [node.instance_id]
    assert registry.get(node.name) is None


def test_check_keeps_node_when_terminate_fails(retention_factory, registry, provider):
    retention = retention_factory()
    provider.fail_terminate = True
    node = make_node("n1", idle_since=LONG_AGO)
    registry.register(node)

    assert retention.check(node) is KEEP
    assert registry.get(node.name) is node


def test_check_leaves_one_primed_node(retention_factory, registry, provider):
    retention = retention_factory(make_template(num_primed_instances=1))
    nodes = [make_node(f"n{i}", idle_since=LONG_AGO) for i in range(3)]
    for node in nodes:
        registry.register(node)

    decisions = [retention.check(node) for node in nodes]

    assert decisions == [TERMINATE, TERMINATE, KEEP]
    assert [n.name for n in registry.nodes_by_label(TEST_LABEL)] == ["n2"]


def test_start_connects_node(retention_factory, registry):
    retention = retention_factory()
    node = make_node("n1", online=False, idle_since=None)
    registry.register(node)

    retention.start(node)

    assert node.is_online
    assert node.idle_since == NOON


def test_idle_exactly_at_threshold_is_kept(retention_factory, registry):
    retention = retention_factory()
    node = make_node("n1", idle_since=NOON - timedelta(minutes=30))
    registry.register(node)
    registry.register(make_node("n2", idle_since=LONG_AGO))

    assert retention.evaluate(node) is KEEP


def test_idle_just_past_threshold_is_terminated(retention_factory, registry):
    retention = retention_factory(make_template(num_primed_instances=1))
    node = make_node("n1", idle_since=NOON - timedelta(minutes=30, seconds=1))
    registry.register(node)
    registry.register(make_node("n2", idle_since=LONG_AGO))

    assert retention.evaluate(node) is TERMINATE


def test_node_is_judged_by_its_own_template(retention_factory, registry):
    keeper = make_template(name="keeper", idle_termination_minutes=0)
    reaper = make_template(name="reaper", idle_termination_minutes=30)
    retention = retention_factory(keeper, reaper)
    node = make_node("r1", template_name="reaper", idle_since=LONG_AGO)
    registry.register(node)
    registry.register(make_node("r2", template_name="reaper", idle_since=LONG_AGO))

    assert retention.evaluate(node) is TERMINATE


def test_unknown_template_name_falls_back_to_label(retention_factory, registry):
    retention = retention_factory(make_template(idle_termination_minutes=0))
    node = make_node("n1", template_name="renamed", idle_since=LONG_AGO)
    registry.register(node)
    registry.register(make_node("n2", idle_since=LONG_AGO))

    assert retention.evaluate(node) is KEEP
