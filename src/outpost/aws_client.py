"""EC2 sandbox backend for Outpost.

Presents the same surface as :class:`outpost.control_client.ControlClient`
so the orchestrator can drive either. Each sandbox is a plain Ubuntu
instance with its own ed25519 key pair; shell commands run over SSH
(:mod:`outpost.ssh`) as the image's login user. boto3 is blocking, so every
EC2 call runs in a worker thread.

Credentials are stored as one string, ``ACCESS_KEY_ID:SECRET_ACCESS_KEY``.
Like the REST client, nothing is retried here.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from outpost import ssh
from outpost.config import ControlPlaneConfig
from outpost.control_client import generate_sandbox_name
from outpost.errors import AuthError, ControlPlaneError, TransientError
from outpost.models import CommandResult, Project, Sandbox

logger = logging.getLogger(__name__)

MANAGED_TAG = "ManagedBy"
MANAGED_VALUE = "outpost"

# Written by cloud-init once user data has run.
BOOT_MARKER = "/var/lib/cloud/instance/boot-finished"

UBUNTU_OWNER = "099720109477"  # Canonical
UBUNTU_IMAGE = "ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-amd64-server-*"

_AUTH_CODES = frozenset(
    {
        "AuthFailure",
        "UnauthorizedOperation",
        "InvalidClientTokenId",
        "SignatureDoesNotMatch",
        "AccessDenied",
        "ExpiredToken",
    }
)
_TRANSIENT_CODES = frozenset(
    {
        "RequestLimitExceeded",
        "Throttling",
        "InsufficientInstanceCapacity",
        "ServiceUnavailable",
        "Unavailable",
        "InternalError",
    }
)
_TRANSIENT_STATUSES = frozenset({502, 503, 504})

# (type, vCPU, GiB), smallest first.
_INSTANCE_TYPES = (
    ("t3.small", 2, 2),
    ("t3.medium", 2, 4),
    ("t3.large", 2, 8),
    ("t3.xlarge", 4, 16),
    ("t3.2xlarge", 8, 32),
)

_USER_DATA = """#!/bin/bash
apt-get update -y
apt-get install -y curl git ca-certificates
"""


def parse_credentials(value: str) -> tuple[str, str]:
    """Split ``ACCESS_KEY_ID:SECRET_ACCESS_KEY``."""
    access_key, sep, secret_key = value.strip().partition(":")
    if not sep or not access_key or not secret_key:
        raise AuthError("AWS credentials must be given as ACCESS_KEY_ID:SECRET_ACCESS_KEY")
    return access_key, secret_key


def pick_instance_type(cpu: int, ram: int) -> str:
    """Smallest general-purpose type with at least ``cpu`` vCPUs and ``ram`` GiB."""
    for name, vcpu, memory in _INSTANCE_TYPES:
        if vcpu >= cpu and memory >= ram:
            return name
    return _INSTANCE_TYPES[-1][0]


def translate_error(exc: Exception, operation: str) -> ControlPlaneError:
    """Map a boto3/botocore failure onto the Outpost error taxonomy."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "")
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        message = f"EC2 {operation} failed: {code} {error.get('Message', '')}".strip()
        if code in _AUTH_CODES:
            return AuthError(message, status_code=status)
        if code in _TRANSIENT_CODES or status in _TRANSIENT_STATUSES:
            return TransientError(message, status_code=status)
        return ControlPlaneError(message, status_code=status)
    if isinstance(exc, NoCredentialsError):
        return AuthError("No AWS credentials configured")
    if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return TransientError(
            f"EC2 {operation} failed: {exc}; the operation may still be in progress"
        )
    return ControlPlaneError(f"EC2 {operation} failed: {exc}")


def _tag(tags: list[dict[str, str]] | None, key: str) -> str | None:
    return next((t.get("Value") for t in tags or [] if t.get("Key") == key), None)


def _to_sandbox(instance: dict[str, Any]) -> Sandbox:
    tags = instance.get("Tags")
    return Sandbox(
        id=instance["InstanceId"],
        name=_tag(tags, "Name") or instance["InstanceId"],
        project_name=_tag(tags, "Project"),
        status=(instance.get("State") or {}).get("Name", "unknown"),
        host=instance.get("PublicIpAddress"),
    )


class AwsClient:
    """EC2-backed sandbox client for one set of credentials.

    ``ssh_target`` carries the stored key (and address, once known) of the
    sandbox this client was built for. Sandboxes created through this client
    remember their own key for its lifetime.
    """

    def __init__(
        self,
        credentials: str,
        plane: ControlPlaneConfig,
        *,
        ssh_target: ssh.SSHTarget | None = None,
    ):
        self.access_key, self._secret_key = parse_credentials(credentials)
        self.plane = plane
        self.ssh_target = ssh_target
        self._targets: dict[str, ssh.SSHTarget] = {}
        self._ec2: Any = None

    async def start(self) -> None:
        self._ec2 = await asyncio.to_thread(
            boto3.client,
            "ec2",
            aws_access_key_id=self.access_key,
            aws_secret_access_key=self._secret_key,
            region_name=self.plane.region,
            config=Config(
                connect_timeout=self.plane.request_timeout,
                read_timeout=self.plane.request_timeout,
                retries={"total_max_attempts": 1},
            ),
        )

    async def close(self) -> None:
        if self._ec2 is not None:
            self._ec2.close()
            self._ec2 = None

    async def __aenter__(self) -> AwsClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def ec2(self) -> Any:
        if self._ec2 is None:
            raise RuntimeError("AWS client not started")
        return self._ec2

    async def _call(self, operation: str, **params) -> dict[str, Any]:
        method = getattr(self.ec2, operation)
        try:
            return await asyncio.to_thread(method, **params)
        except (ClientError, BotoCoreError) as exc:
            raise translate_error(exc, operation) from exc

    # ── Commands ─────────────────────────────────────────────────────────

    async def run_command(
        self, sandbox_id: str, command: str, timeout: float | None = None
    ) -> CommandResult:
        """Run a POSIX shell command line on the instance over SSH."""
        target = await self._target(sandbox_id)
        return await ssh.run_command(
            target,
            command,
            timeout=timeout or self.plane.command_timeout,
            connect_timeout=self.plane.request_timeout,
        )

    def _key_for(self, sandbox_id: str) -> ssh.SSHTarget:
        target = self._targets.get(sandbox_id) or self.ssh_target
        if target is None:
            raise ControlPlaneError(f"No SSH key stored for sandbox {sandbox_id}")
        return target

    async def _target(self, sandbox_id: str) -> ssh.SSHTarget:
        target = self._key_for(sandbox_id)
        if not target.host:
            sandbox = await self.get_sandbox(sandbox_id)
            if not sandbox.host:
                raise TransientError(f"Sandbox {sandbox_id} has no public address yet")
            target = dataclasses.replace(target, host=sandbox.host)
            self._targets[sandbox_id] = target
        return target

    # ── Projects ─────────────────────────────────────────────────────────

    async def list_projects(self) -> list[Project]:
        """Project tags on instances this service launched. Also validates the credentials."""
        data = await self._call(
            "describe_instances",
            Filters=[{"Name": f"tag:{MANAGED_TAG}", "Values": [MANAGED_VALUE]}],
            MaxResults=100,
        )
        names = {
            _tag(instance.get("Tags"), "Project")
            for reservation in data.get("Reservations") or []
            for instance in reservation.get("Instances") or []
        }
        return [Project(id=name, name=name) for name in sorted(n for n in names if n)]

    async def create_project(self, name: str) -> Project:
        """EC2 has no projects; a project is just the tag put on new instances."""
        return Project(id=name, name=name)

    # ── Sandboxes ────────────────────────────────────────────────────────

    async def create_sandbox(
        self,
        project_id: str,
        name: str | None = None,
        *,
        os: str = "linux",
        ram: int = 4,
        cpu: int = 2,
    ) -> Sandbox:
        """Launch an instance with a fresh key pair.

        The returned sandbox carries the private key; it is not retrievable
        from EC2 afterwards.
        """
        if os != "linux":
            raise ControlPlaneError(f"Unsupported sandbox OS for EC2: {os}")
        name = name or generate_sandbox_name()
        image_id = await self._image_id()
        group_id = await self._security_group()
        instance_type = self.plane.instance_type or pick_instance_type(cpu, ram)

        key_name = f"outpost-{name}-{int(time.time())}"
        key = await self._call("create_key_pair", KeyName=key_name, KeyType="ed25519")
        try:
            data = await self._call(
                "run_instances",
                ImageId=image_id,
                InstanceType=instance_type,
                MinCount=1,
                MaxCount=1,
                KeyName=key_name,
                SecurityGroupIds=[group_id],
                UserData=_USER_DATA,
                BlockDeviceMappings=[
                    {
                        "DeviceName": "/dev/sda1",
                        "Ebs": {
                            "VolumeSize": self.plane.volume_size,
                            "VolumeType": "gp3",
                            "DeleteOnTermination": True,
                        },
                    }
                ],
                TagSpecifications=[
                    {
                        "ResourceType": "instance",
                        "Tags": [
                            {"Key": "Name", "Value": name},
                            {"Key": "Project", "Value": project_id},
                            {"Key": MANAGED_TAG, "Value": MANAGED_VALUE},
                        ],
                    }
                ],
            )
            instance = data["Instances"][0]
        except (ControlPlaneError, KeyError, IndexError):
            await self._delete_key_pair(key_name)
            raise

        sandbox = _to_sandbox(instance)
        sandbox.name = name
        sandbox.project_name = project_id
        sandbox.ram = ram
        sandbox.cpu = cpu
        sandbox.ssh_username = self.plane.ssh_username
        sandbox.ssh_private_key = key["KeyMaterial"]
        self._targets[sandbox.id] = ssh.SSHTarget(
            private_key=key["KeyMaterial"], username=self.plane.ssh_username
        )
        logger.info(
            "Launched EC2 instance %s (%s, %s) in %s",
            sandbox.id,
            name,
            instance_type,
            self.plane.region,
        )
        return sandbox

    async def _image_id(self) -> str:
        if self.plane.image_id:
            return self.plane.image_id
        data = await self._call(
            "describe_images",
            Owners=[UBUNTU_OWNER],
            Filters=[
                {"Name": "name", "Values": [UBUNTU_IMAGE]},
                {"Name": "state", "Values": ["available"]},
            ],
        )
        images = sorted(data.get("Images") or [], key=lambda i: i.get("CreationDate", ""))
        if not images:
            raise ControlPlaneError(f"No Ubuntu 22.04 image found in {self.plane.region}")
        return images[-1]["ImageId"]

    async def _security_group(self) -> str:
        """Id of the SSH-ingress group, created in the default VPC on first use."""
        name = self.plane.security_group
        data = await self._call(
            "describe_security_groups", Filters=[{"Name": "group-name", "Values": [name]}]
        )
        groups = data.get("SecurityGroups") or []
        if groups:
            return groups[0]["GroupId"]

        vpcs = await self._call(
            "describe_vpcs", Filters=[{"Name": "is-default", "Values": ["true"]}]
        )
        if not vpcs.get("Vpcs"):
            raise ControlPlaneError(f"No default VPC in {self.plane.region}")
        created = await self._call(
            "create_security_group",
            GroupName=name,
            Description="Outpost sandboxes: inbound SSH",
            VpcId=vpcs["Vpcs"][0]["VpcId"],
        )
        group_id = created["GroupId"]
        await self._call(
            "authorize_security_group_ingress",
            GroupId=group_id,
            IpPermissions=[
                {
                    "IpProtocol": "tcp",
                    "FromPort": 22,
                    "ToPort": 22,
                    "IpRanges": [{"CidrIp": "0.0.0.0/0", "Description": "SSH"}],
                }
            ],
        )
        logger.info("Created security group %s (%s)", name, group_id)
        return group_id

    async def _delete_key_pair(self, key_name: str) -> None:
        try:
            await self._call("delete_key_pair", KeyName=key_name)
        except ControlPlaneError as exc:
            logger.warning("Could not delete key pair %s: %s", key_name, exc)

    async def _describe(self, sandbox_id: str) -> dict[str, Any]:
        data = await self._call("describe_instances", InstanceIds=[sandbox_id])
        for reservation in data.get("Reservations") or []:
            for instance in reservation.get("Instances") or []:
                return instance
        raise ControlPlaneError(f"Instance {sandbox_id} not found", status_code=404)

    async def get_sandbox(self, sandbox_id: str) -> Sandbox:
        return _to_sandbox(await self._describe(sandbox_id))

    async def delete_sandbox(self, sandbox_id: str) -> None:
        """Terminate the instance, then drop its key pair."""
        instance = await self._describe(sandbox_id)
        await self._call("terminate_instances", InstanceIds=[sandbox_id])
        if instance.get("KeyName"):
            await self._delete_key_pair(instance["KeyName"])
        self._targets.pop(sandbox_id, None)
        logger.info("Terminated EC2 instance %s", sandbox_id)

    async def wait_for_ready(
        self, sandbox_id: str, *, attempts: int = 30, interval: float = 2.0
    ) -> bool:
        """Poll until the instance runs, has an address, and has finished booting."""
        for attempt in range(attempts):
            sandbox = await self.get_sandbox(sandbox_id)
            if sandbox.status in ("shutting-down", "terminated"):
                logger.warning("Instance %s is %s", sandbox_id, sandbox.status)
                return False
            if sandbox.is_running and sandbox.host and await self._booted(sandbox_id, sandbox.host):
                return True
            logger.debug(
                "Instance %s status=%s (%d/%d)", sandbox_id, sandbox.status, attempt + 1, attempts
            )
            await asyncio.sleep(interval)
        return False

    async def _booted(self, sandbox_id: str, host: str) -> bool:
        target = dataclasses.replace(self._key_for(sandbox_id), host=host)
        try:
            result = await ssh.run_command(
                target,
                f"test -f {BOOT_MARKER} && echo READY",
                timeout=30.0,
                connect_timeout=min(self.plane.request_timeout, 30.0),
            )
        except ControlPlaneError as exc:
            # sshd not up yet, or cloud-init has not installed the key.
            logger.debug("Boot probe on %s: %s", sandbox_id, exc.message)
            return False
        self._targets[sandbox_id] = target
        return result.has_line("READY")
