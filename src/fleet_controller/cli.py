# cli.py
import click
import logging
import time
from concurrent.futures import wait

from fleet_controller.config.settings import get_settings
from fleet_controller.exceptions import FleetControllerError

logger = logging.getLogger(__name__)


def build_driver(settings=None):
    """Wire the EC2 provider, registry, templates and controllers together."""
    from fleet_controller.aws.ec2_provider import EC2Provider
    from fleet_controller.driver import PeriodicDriver
    from fleet_controller.provisioning import ProvisioningController
    from fleet_controller.registry import NodeRegistry, TemplateRepository
    from fleet_controller.retention import RetentionController

    settings = settings or get_settings()
    provider = EC2Provider(app_name=settings.app_name)
    registry = NodeRegistry()
    templates = TemplateRepository.from_file(settings.templates_file)
    provisioning = ProvisioningController(provider, registry, templates, settings=settings)
    retention = RetentionController(provider, registry, templates, settings=settings)
    return PeriodicDriver(provisioning, retention, settings=settings)


@click.group()
def cli():
    """CLI commands for the EC2 fleet controller"""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
def show_config():
    """Show current configuration"""
    settings = get_settings()

    print("Current Configuration:")
    print(f"  Deployment Mode: {settings.deployment_mode}")
    print(f"  AWS Region: {settings.aws_region}")
    print(f"  AWS Endpoint: {settings.aws_endpoint_url}")
    print(f"  Instance Cap: {settings.instance_cap_str or 'unlimited'}")
    print(f"  Templates File: {settings.templates_file}")
    print(f"  Launch Workers: {settings.launch_workers}")
    print(f"  Sweep Period: {settings.recurrence_period_seconds}s")
    print(f"  Retention Disabled: {settings.retention_disabled}")


@cli.command()
@click.option("--wait/--no-wait", "wait_for_nodes", default=True, help="Wait for launched nodes to come online")
def tick(wait_for_nodes):
    """Run a single provisioning and retention sweep"""
    driver = build_driver()
    try:
        plans = driver.tick()
        if not plans:
            print("Nothing to provision")
            return
        for label, plan in plans.items():
            print(f"{label}: {len(plan)} node(s), {sum(u.num_executors for u in plan)} executor(s)")
        if wait_for_nodes:
            futures = [unit.future for plan in plans.values() for unit in plan]
            done, _ = wait(futures)
            failed = [f for f in done if f.exception() is not None]
            print(f"{len(done) - len(failed)} node(s) online, {len(failed)} failed")
    finally:
        driver.provisioning.shutdown(wait=wait_for_nodes)


@cli.command()
def run():
    """Run the periodic driver until interrupted"""
    driver = build_driver()
    driver.start()
    print("Fleet controller running, press Ctrl+C to stop")
    try:
        while driver.running:
            time.sleep(1)
    except KeyboardInterrupt:
        print("Stopping...")
    finally:
        driver.stop()
        driver.provisioning.shutdown(wait=False)


@cli.command()
@click.option("--template", "template_name", required=True, help="Template name to launch")
def provision(template_name):
    """Launch one node from a template and wait for it"""
    driver = build_driver()
    try:
        node = driver.provisioning.provision_template(template_name)
        print(f"Provisioned {node.name} ({node.instance_id})")
    except FleetControllerError as e:
        print(f"Provisioning failed: {e}")
        raise SystemExit(1)
    finally:
        driver.provisioning.shutdown()


@cli.command()
@click.option("--instance-id", required=True, help="Running instance to check")
@click.option("--template", "template_name", default=None, help="Template the instance belongs to")
def attach(instance_id, template_name):
    """Check that a running instance can be adopted as a node.

    The node registry lives in the controller process, so this only reports
    how the instance would be adopted; nothing is kept after the command exits.
    """
    driver = build_driver()
    try:
        node = driver.provisioning.attach(instance_id, template_name)
        print(f"Instance {instance_id} can be attached as {node.name} ({node.status.value})")
    except FleetControllerError as e:
        print(f"Attach failed: {e}")
        raise SystemExit(1)
    finally:
        driver.provisioning.shutdown()


if __name__ == "__main__":
    cli()
