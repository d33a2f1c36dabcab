"""
EC2 compute provider.

Counts, launches, waits on and terminates instances for the controllers.
Every botocore failure is re-raised as ProviderError.
"""
import logging
import math
import time
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from fleet_controller.aws.utils import get_ec2_client
from fleet_controller.config.settings import get_settings
from fleet_controller.exceptions import LaunchTimeoutError, ProviderError
from fleet_controller.models import LaunchHandle, RequestState, Template
from fleet_controller.utils.decorators import log_execution_time, retry

logger = logging.getLogger(__name__)

COUNTABLE_STATES = ["pending", "running"]
WAITER_DELAY_SECONDS = 15


class EC2Provider:
    """EC2 client wrapper used by the ledger and controllers."""

    def __init__(self, ec2_client=None, app_name: Optional[str] = None, poll_interval: float = 5.0):
        """
        Args:
            ec2_client: boto3 EC2 client (defaults to the managed client)
            app_name: Tag value marking instances created by this controller
            poll_interval: Seconds between spot request polls
        """
        self.ec2_client = ec2_client or get_ec2_client()
        self.app_name = app_name or get_settings().app_name
        self.poll_interval = poll_interval

    @retry(max_attempts=3, delay=0.5)
    def _describe_instances(self, filters: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        instances = []
        paginator = self.ec2_client.get_paginator('describe_instances')
        for page in paginator.paginate(Filters=filters):
            for reservation in page.get('Reservations', []):
                instances.extend(reservation.get('Instances', []))
        return instances

    @log_execution_time
    def count_instances(self, image_id: Optional[str] = None) -> int:
        """Count pending and running instances, optionally for one image.

        This includes instances started outside the controller.
        """
        filters = [{'Name': 'instance-state-name', 'Values': COUNTABLE_STATES}]
        if image_id is not None:
            filters.append({'Name': 'image-id', 'Values': [image_id]})
        try:
            return len(self._describe_instances(filters))
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"Failed to count instances: {e}") from e

    def describe_pending_request(self, request_id: str) -> RequestState:
        """State of a spot instance request."""
        try:
            response = self.ec2_client.describe_spot_instance_requests(
                SpotInstanceRequestIds=[request_id]
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'InvalidSpotInstanceRequestID.NotFound':
                logger.debug(f"Spot request {request_id} not found, treating as closed")
                return RequestState.CLOSED
            raise ProviderError(f"Failed to describe spot request {request_id}: {e}") from e
        except BotoCoreError as e:
            raise ProviderError(f"Failed to describe spot request {request_id}: {e}") from e

        requests = response.get('SpotInstanceRequests', [])
        if not requests:
            return RequestState.CLOSED
        try:
            return RequestState(requests[0]['State'])
        except ValueError:
            logger.warning(f"Unknown spot request state {requests[0]['State']!r} for {request_id}")
            return RequestState.FAILED

    def _tag_specifications(self, template: Template, resource_type: str) -> List[Dict[str, Any]]:
        tags = {
            'Name': f"{self.app_name}-{template.name}",
            'CreatedBy': self.app_name,
            'Template': template.name,
            **template.tags,
        }
        return [{
            'ResourceType': resource_type,
            'Tags': [{'Key': k, 'Value': v} for k, v in tags.items()],
        }]

    def _launch_specification(self, template: Template) -> Dict[str, Any]:
        spec: Dict[str, Any] = {
            'ImageId': template.image_id,
            'InstanceType': template.instance_type,
        }
        if template.key_name:
            spec['KeyName'] = template.key_name
        if template.security_group_ids:
            spec['SecurityGroupIds'] = list(template.security_group_ids)
        if template.subnet_id:
            spec['SubnetId'] = template.subnet_id
        return spec

    @log_execution_time
    def launch(self, template: Template) -> LaunchHandle:
        """Request one instance for the template.

        Spot launches return before the request is fulfilled; the handle then
        carries only the spot request id until wait_until_running resolves it.
        """
        try:
            if template.spot:
                return self._request_spot(template)

            response = self.ec2_client.run_instances(
                MinCount=1,
                MaxCount=1,
                TagSpecifications=self._tag_specifications(template, 'instance'),
                **self._launch_specification(template),
            )
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"Failed to launch template {template.name}: {e}") from e

        instance = response['Instances'][0]
        logger.info(f"Launched instance {instance['InstanceId']} from {template.image_id}")
        return LaunchHandle(instance_id=instance['InstanceId'], image_id=template.image_id)

    def _request_spot(self, template: Template) -> LaunchHandle:
        kwargs: Dict[str, Any] = {
            'InstanceCount': 1,
            'Type': 'one-time',
            'LaunchSpecification': self._launch_specification(template),
            'TagSpecifications': self._tag_specifications(template, 'spot-instances-request'),
        }
        if template.spot_max_price:
            kwargs['SpotPrice'] = template.spot_max_price
        response = self.ec2_client.request_spot_instances(**kwargs)
        request = response['SpotInstanceRequests'][0]
        logger.info(f"Requested spot instance {request['SpotInstanceRequestId']} from {template.image_id}")
        return LaunchHandle(
            instance_id=request.get('InstanceId') or "",
            image_id=template.image_id,
            spot_request_id=request['SpotInstanceRequestId'],
        )

    def _wait_for_spot_fulfillment(self, request_id: str, deadline: float) -> str:
        while True:
            try:
                response = self.ec2_client.describe_spot_instance_requests(
                    SpotInstanceRequestIds=[request_id]
                )
            except (ClientError, BotoCoreError) as e:
                raise ProviderError(f"Failed to describe spot request {request_id}: {e}") from e

            requests = response.get('SpotInstanceRequests', [])
            if not requests:
                raise ProviderError(f"Spot request {request_id} ended in state closed")

            request = requests[0]
            if request.get('InstanceId'):
                return request['InstanceId']

            state = request.get('State')
            if state not in ('open', 'active'):
                raise ProviderError(f"Spot request {request_id} ended in state {state}")

            if time.monotonic() >= deadline:
                raise LaunchTimeoutError(f"Spot request {request_id} was not fulfilled in time")
            time.sleep(self.poll_interval)

    def wait_until_running(self, handle: LaunchHandle, timeout: float) -> str:
        """Block until the launched instance is running.

        Returns:
            The instance id (resolved from the spot request if needed)
        """
        deadline = time.monotonic() + timeout
        instance_id = handle.instance_id
        if not instance_id and handle.spot_request_id:
            instance_id = self._wait_for_spot_fulfillment(handle.spot_request_id, deadline)
            handle.instance_id = instance_id

        remaining = max(deadline - time.monotonic(), 1)
        max_attempts = max(1, math.ceil(remaining / WAITER_DELAY_SECONDS))
        try:
            waiter = self.ec2_client.get_waiter('instance_running')
            waiter.wait(
                InstanceIds=[instance_id],
                WaiterConfig={'Delay': WAITER_DELAY_SECONDS, 'MaxAttempts': max_attempts},
            )
        except WaiterError as e:
            raise LaunchTimeoutError(f"Instance {instance_id} did not reach running: {e}") from e
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"Failed waiting for instance {instance_id}: {e}") from e

        logger.info(f"Instance {instance_id} is running")
        return instance_id

    def describe_instance(self, instance_id: str) -> Dict[str, Any]:
        try:
            response = self.ec2_client.describe_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"Failed to describe instance {instance_id}: {e}") from e

        for reservation in response.get('Reservations', []):
            for instance in reservation.get('Instances', []):
                return instance
        raise ProviderError(f"Instance {instance_id} not found")

    @log_execution_time
    def terminate(self, instance_id: str) -> None:
        try:
            self.ec2_client.terminate_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            raise ProviderError(f"Failed to terminate instance {instance_id}: {e}") from e
        logger.info(f"Terminated instance {instance_id}")
