"""
AWS EC2 provisioner.

Launches one EC2 instance per dedicated tenant from the configured AMI and
reports its progress through the provisioner contract. boto3 is blocking, so
every call runs in a worker thread via ``asyncio.to_thread``.
"""

import asyncio
import logging
from typing import Optional

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
)

from app.config import Settings, settings as default_settings
from app.errors import ProviderError, ProviderUnavailableError
from app.services.provisioner import VPSSpec, ProviderStatus, ProviderState

logger = logging.getLogger(__name__)

# Error codes AWS uses for throttling; worth another poll rather than a failure
_THROTTLING_CODES = {"RequestLimitExceeded", "Throttling", "ThrottlingException", "ServiceUnavailable"}

_FAILED_STATES = {"shutting-down", "terminated", "stopping", "stopped"}


def _get_ec2_client(cfg: Settings):
    return boto3.client(
        "ec2",
        region_name=cfg.aws_region,
        aws_access_key_id=cfg.aws_access_key_id,
        aws_secret_access_key=cfg.aws_secret_access_key,
    )


def _build_user_data(spec: VPSSpec) -> str:
    """Cloud-init script run on first boot.

    The AMI already carries the tenant stack; this only names the host and
    records which tenant it belongs to.
    """
    tenant_slug = spec.tags.get("TenantSlug", "")
    return f"""#!/bin/bash
set -e
hostnamectl set-hostname {spec.name}
echo "TENANT_SLUG={tenant_slug}" >> /etc/environment
echo "TENANT_TIER={spec.tier}" >> /etc/environment
"""


def _translate(exc: Exception, action: str) -> ProviderError:
    """Map a boto error onto the provider error taxonomy."""
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        message = exc.response.get("Error", {}).get("Message", str(exc))
        if code in _THROTTLING_CODES:
            return ProviderUnavailableError(f"EC2 {action} throttled: {code}")
        return ProviderError(f"EC2 {action} failed: {code}: {message}")
    if isinstance(exc, (BotoConnectionError, HTTPClientError)):
        return ProviderUnavailableError(f"EC2 unreachable during {action}: {exc}")
    return ProviderError(f"EC2 {action} failed: {exc}")


class Ec2Provisioner:
    """Provisioner adapter backed by EC2. The handle is the EC2 instance id."""

    def __init__(self, cfg: Settings = None, client=None):
        self.cfg = cfg or default_settings
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = _get_ec2_client(self.cfg)
        return self._client

    def instance_type_for(self, tier: str) -> str:
        return self.cfg.aws_instance_types.get(tier) or self.cfg.aws_instance_types["starter"]

    async def create_vps(self, spec: VPSSpec) -> str:
        if not self.cfg.aws_ami_id:
            raise ProviderError("AWS_AMI_ID not configured")

        tags = [{"Key": "Name", "Value": spec.name}]
        tags.extend({"Key": key, "Value": value} for key, value in spec.tags.items())

        run_kwargs = {
            "ImageId": self.cfg.aws_ami_id,
            "InstanceType": self.instance_type_for(spec.tier),
            "MinCount": 1,
            "MaxCount": 1,
            "UserData": _build_user_data(spec),
            "BlockDeviceMappings": [
                {"DeviceName": "/dev/sda1", "Ebs": {"VolumeSize": spec.disk_gb, "VolumeType": "gp3"}}
            ],
            "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
        }
        if self.cfg.aws_key_pair_name:
            run_kwargs["KeyName"] = self.cfg.aws_key_pair_name
        if self.cfg.aws_security_group_id:
            run_kwargs["SecurityGroupIds"] = [self.cfg.aws_security_group_id]
        if spec.client_token:
            # EC2 returns the original instance for a repeated token
            run_kwargs["ClientToken"] = spec.client_token

        try:
            resp = await asyncio.to_thread(self.client.run_instances, **run_kwargs)
        except (BotoCoreError, ClientError) as exc:
            logger.warning("run_instances for %s failed: %s", spec.name, exc)
            raise _translate(exc, "run_instances")

        instance_id = resp["Instances"][0]["InstanceId"]
        logger.info("EC2 instance %s launched for %s (%s)", instance_id, spec.name, run_kwargs["InstanceType"])
        return instance_id

    async def poll_status(self, handle: str) -> ProviderStatus:
        try:
            desc = await asyncio.to_thread(self.client.describe_instances, InstanceIds=[handle])
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "InvalidInstanceID.NotFound":
                # New instances can take a moment to become visible
                return ProviderStatus(ProviderState.IN_PROGRESS, "Waiting for instance to appear")
            raise _translate(exc, "describe_instances")
        except BotoCoreError as exc:
            raise _translate(exc, "describe_instances")

        instance = self._first_instance(desc)
        if instance is None:
            return ProviderStatus(ProviderState.ERROR, f"Instance {handle} no longer exists")

        state = instance.get("State", {}).get("Name", "")
        if state == "pending":
            return ProviderStatus(ProviderState.IN_PROGRESS, "Instance is starting")
        if state in _FAILED_STATES:
            reason = instance.get("StateReason", {}).get("Message") or state
            return ProviderStatus(ProviderState.ERROR, f"Instance {handle} is {state}: {reason}")
        if state != "running":
            return ProviderStatus(ProviderState.IN_PROGRESS, f"Instance is {state or 'unknown'}")

        public_ip = instance.get("PublicIpAddress")
        if not public_ip:
            return ProviderStatus(ProviderState.IN_PROGRESS, "Waiting for public IP address")

        if not await self._status_checks_passed(handle):
            return ProviderStatus(ProviderState.IN_PROGRESS, "Waiting for status checks")

        return ProviderStatus(ProviderState.READY, "Instance is running", ip_address=public_ip)

    async def teardown(self, handle: str) -> None:
        try:
            await asyncio.to_thread(self.client.terminate_instances, InstanceIds=[handle])
        except (BotoCoreError, ClientError) as exc:
            raise _translate(exc, "terminate_instances")
        logger.info("EC2 instance %s terminated", handle)

    async def _status_checks_passed(self, handle: str) -> bool:
        try:
            resp = await asyncio.to_thread(self.client.describe_instance_status, InstanceIds=[handle])
        except (BotoCoreError, ClientError) as exc:
            raise _translate(exc, "describe_instance_status")

        statuses = resp.get("InstanceStatuses", [])
        if not statuses:
            return False
        status = statuses[0]
        return (
            status.get("InstanceStatus", {}).get("Status") == "ok"
            and status.get("SystemStatus", {}).get("Status") == "ok"
        )

    @staticmethod
    def _first_instance(desc: dict) -> Optional[dict]:
        for reservation in desc.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance
        return None
