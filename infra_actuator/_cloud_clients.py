"""Region and credential scoped Alicloud clients.

The actuator only depends on the :class:`ClientFactory` protocol and the small
client protocols below. :class:`AliyunCliClientFactory` satisfies them by
shelling out to the ``aliyun`` command-line tool through plumbum; tests inject
in-memory doubles instead.
"""

from __future__ import annotations

import json
import logging
import os
from collections import abc as cabc
from dataclasses import dataclass
from typing import Any, ClassVar, Protocol

from plumbum import CommandNotFound, local
from plumbum.commands.processes import ProcessExecutionError, ProcessTimedOut

from infra_actuator._actuator_errors import (
    ClientConstructionFailedError,
    CloudCommandError,
    IAMPrerequisiteFailedError,
)

logger = logging.getLogger(__name__)

DEFAULT_INTERNET_CHARGE_TYPE = "PayByTraffic"
ROLE_NOT_FOUND_CODE = "EntityNotExist.Role"


@dataclass(frozen=True, slots=True)
class VPCInfo:
    """Live facts about an existing VPC the infrastructure attaches to.

    Attributes
    ----------
    cidr
        CIDR block of the VPC.
    nat_gateway_id
        ID of the VPC's NAT gateway, empty when the VPC has none.
    snat_table_ids
        Comma-separated SNAT table IDs of that NAT gateway.
    internet_charge_type
        Billing mode of the EIP bound to the NAT gateway.
    """

    cidr: str
    nat_gateway_id: str
    snat_table_ids: str
    internet_charge_type: str


class RAMClient(Protocol):
    def get_service_linked_role(self, role_name: str) -> dict[str, Any] | None: ...

    def create_service_linked_role(self, region: str, service_name: str) -> None: ...


class VPCClient(Protocol):
    def fetch_eip_internet_charge_type(self, vpc_id: str) -> str: ...

    def get_vpc_info(self, vpc_id: str) -> VPCInfo: ...


class ECSClient(Protocol):
    def list_image_share_accounts(self, image_id: str) -> list[str]: ...

    def share_image_to_account(self, image_id: str, account_id: str) -> None: ...


class ROSClient(Protocol):
    def get_stack_id(self, stack_name: str) -> str | None: ...

    def create_stack(
        self,
        stack_name: str,
        template_body: str,
        parameters: cabc.Mapping[str, str],
    ) -> str: ...


class STSClient(Protocol):
    def get_account_id_from_caller_identity(self) -> str: ...


class ClientFactory(Protocol):
    """Builds clients scoped to ``(region, access_key_id, access_key_secret)``."""

    def new_ram_client(self, region: str, access_key_id: str, access_key_secret: str) -> RAMClient: ...

    def new_vpc_client(self, region: str, access_key_id: str, access_key_secret: str) -> VPCClient: ...

    def new_ecs_client(self, region: str, access_key_id: str, access_key_secret: str) -> ECSClient: ...

    def new_ros_client(self, region: str, access_key_id: str, access_key_secret: str) -> ROSClient: ...

    def new_sts_client(self, region: str, access_key_id: str, access_key_secret: str) -> STSClient: ...


class _AliyunCommand:
    """Invoke one ``aliyun <product> <Api>`` call and decode its JSON reply."""

    error_type: ClassVar[type[CloudCommandError]] = CloudCommandError

    def __init__(
        self,
        binary: str,
        region: str,
        access_key_id: str,
        access_key_secret: str,
        *,
        timeout: int = 60,
    ) -> None:
        if not region or not access_key_id or not access_key_secret:
            msg = f"{type(self).__name__} requires a region and an access key pair"
            raise ClientConstructionFailedError(msg)
        try:
            self._command = local[binary]
        except CommandNotFound as exc:
            msg = f"Cloud CLI {binary!r} not found on PATH"
            raise ClientConstructionFailedError(msg) from exc
        self.region = region
        self._timeout = timeout
        self._env = {
            **os.environ,
            "ALIBABA_CLOUD_ACCESS_KEY_ID": access_key_id,
            "ALIBABA_CLOUD_ACCESS_KEY_SECRET": access_key_secret,
            "ALIBABA_CLOUD_REGION_ID": region,
        }

    def call(self, product: str, api: str, *args: str) -> dict[str, Any]:
        bound = self._command[["--region", self.region, product, api, *args]]
        try:
            _, stdout, _ = bound.run(env=self._env, timeout=self._timeout)
        except ProcessExecutionError as exc:
            output = f"{exc.stdout}\n{exc.stderr}".strip()
            msg = f"aliyun {product} {api} failed: {output}"
            raise self.error_type(msg) from exc
        except ProcessTimedOut as exc:
            msg = f"aliyun {product} {api} timed out after {self._timeout}s"
            raise self.error_type(msg) from exc
        try:
            payload = json.loads(stdout or "{}")
        except json.JSONDecodeError as exc:
            msg = f"aliyun {product} {api} returned invalid JSON: {exc}"
            raise self.error_type(msg) from exc
        if not isinstance(payload, dict):
            msg = f"aliyun {product} {api} must return a JSON object"
            raise self.error_type(msg)
        return payload


def _items(payload: cabc.Mapping[str, Any], outer: str, inner: str) -> list[dict[str, Any]]:
    """Return the ``{outer: {inner: [...]}}`` list of an Alicloud reply."""
    return list((payload.get(outer) or {}).get(inner) or [])


class AliyunRAMClient(_AliyunCommand):
    error_type = IAMPrerequisiteFailedError

    def get_service_linked_role(self, role_name: str) -> dict[str, Any] | None:
        """Return the role, or ``None`` when RAM reports it does not exist."""
        try:
            payload = self.call("ram", "GetRole", "--RoleName", role_name)
        except IAMPrerequisiteFailedError as exc:
            if ROLE_NOT_FOUND_CODE in str(exc):
                return None
            raise
        return payload.get("Role") or None

    def create_service_linked_role(self, region: str, service_name: str) -> None:
        logger.info("Creating service-linked role for %s in %s", service_name, region)
        self.call("resourcemanager", "CreateServiceLinkedRole", "--ServiceName", service_name)


class AliyunVPCClient(_AliyunCommand):
    def _first_nat_gateway(self, vpc_id: str) -> dict[str, Any] | None:
        payload = self.call("vpc", "DescribeNatGateways", "--VpcId", vpc_id)
        gateways = _items(payload, "NatGateways", "NatGateway")
        return gateways[0] if gateways else None

    def _eip_charge_type(self, nat_gateway_id: str) -> str:
        payload = self.call(
            "vpc",
            "DescribeEipAddresses",
            "--AssociatedInstanceType",
            "Nat",
            "--AssociatedInstanceId",
            nat_gateway_id,
        )
        addresses = _items(payload, "EipAddresses", "EipAddress")
        if not addresses:
            return DEFAULT_INTERNET_CHARGE_TYPE
        return str(addresses[0].get("InternetChargeType") or DEFAULT_INTERNET_CHARGE_TYPE)

    def fetch_eip_internet_charge_type(self, vpc_id: str) -> str:
        """Return the charge type of the EIP bound to the VPC's NAT gateway."""
        gateway = self._first_nat_gateway(vpc_id)
        if gateway is None:
            return DEFAULT_INTERNET_CHARGE_TYPE
        return self._eip_charge_type(str(gateway["NatGatewayId"]))

    def get_vpc_info(self, vpc_id: str) -> VPCInfo:
        payload = self.call("vpc", "DescribeVpcs", "--VpcId", vpc_id)
        vpcs = _items(payload, "Vpcs", "Vpc")
        if not vpcs:
            msg = f"VPC {vpc_id} not found"
            raise CloudCommandError(msg)
        gateway = self._first_nat_gateway(vpc_id)
        if gateway is None:
            return VPCInfo(
                cidr=str(vpcs[0].get("CidrBlock") or ""),
                nat_gateway_id="",
                snat_table_ids="",
                internet_charge_type=DEFAULT_INTERNET_CHARGE_TYPE,
            )
        nat_gateway_id = str(gateway["NatGatewayId"])
        snat_tables = (gateway.get("SnatTableIds") or {}).get("SnatTableId") or []
        return VPCInfo(
            cidr=str(vpcs[0].get("CidrBlock") or ""),
            nat_gateway_id=nat_gateway_id,
            snat_table_ids=",".join(str(table) for table in snat_tables),
            internet_charge_type=self._eip_charge_type(nat_gateway_id),
        )


class AliyunECSClient(_AliyunCommand):
    def list_image_share_accounts(self, image_id: str) -> list[str]:
        payload = self.call("ecs", "DescribeImageSharePermission", "--ImageId", image_id)
        return [str(account["AliyunId"]) for account in _items(payload, "Accounts", "Account")]

    def share_image_to_account(self, image_id: str, account_id: str) -> None:
        self.call(
            "ecs",
            "ModifyImageSharePermission",
            "--ImageId",
            image_id,
            "--AddAccount.1",
            account_id,
        )


class AliyunROSClient(_AliyunCommand):
    def get_stack_id(self, stack_name: str) -> str | None:
        payload = self.call("ros", "ListStacks", "--StackName.1", stack_name)
        stacks = list(payload.get("Stacks") or [])
        return str(stacks[0]["StackId"]) if stacks else None

    def create_stack(
        self,
        stack_name: str,
        template_body: str,
        parameters: cabc.Mapping[str, str],
    ) -> str:
        args = ["--StackName", stack_name, "--TemplateBody", template_body]
        for index, (key, value) in enumerate(parameters.items(), start=1):
            args += [
                f"--Parameters.{index}.ParameterKey",
                key,
                f"--Parameters.{index}.ParameterValue",
                value,
            ]
        payload = self.call("ros", "CreateStack", *args)
        return str(payload.get("StackId") or "")


class AliyunSTSClient(_AliyunCommand):
    def get_account_id_from_caller_identity(self) -> str:
        payload = self.call("sts", "GetCallerIdentity")
        return str(payload.get("AccountId") or "")


class AliyunCliClientFactory:
    """Client factory backed by the ``aliyun`` CLI.

    Parameters
    ----------
    binary
        Name or path of the ``aliyun`` executable.
    timeout
        Per-call timeout in seconds.
    """

    def __init__(self, binary: str = "aliyun", *, timeout: int = 60) -> None:
        self._binary = binary
        self._timeout = timeout

    def new_ram_client(self, region: str, access_key_id: str, access_key_secret: str) -> AliyunRAMClient:
        return AliyunRAMClient(self._binary, region, access_key_id, access_key_secret, timeout=self._timeout)

    def new_vpc_client(self, region: str, access_key_id: str, access_key_secret: str) -> AliyunVPCClient:
        return AliyunVPCClient(self._binary, region, access_key_id, access_key_secret, timeout=self._timeout)

    def new_ecs_client(self, region: str, access_key_id: str, access_key_secret: str) -> AliyunECSClient:
        return AliyunECSClient(self._binary, region, access_key_id, access_key_secret, timeout=self._timeout)

    def new_ros_client(self, region: str, access_key_id: str, access_key_secret: str) -> AliyunROSClient:
        return AliyunROSClient(self._binary, region, access_key_id, access_key_secret, timeout=self._timeout)

    def new_sts_client(self, region: str, access_key_id: str, access_key_secret: str) -> AliyunSTSClient:
        return AliyunSTSClient(self._binary, region, access_key_id, access_key_secret, timeout=self._timeout)


__all__ = [
    "DEFAULT_INTERNET_CHARGE_TYPE",
    "AliyunCliClientFactory",
    "ClientFactory",
    "ECSClient",
    "RAMClient",
    "ROSClient",
    "STSClient",
    "VPCClient",
    "VPCInfo",
]
