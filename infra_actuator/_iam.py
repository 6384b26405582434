"""RAM prerequisites that must exist before the VPC is provisioned."""

from __future__ import annotations

import logging

from infra_actuator._cloud_clients import RAMClient

logger = logging.getLogger(__name__)

SERVICE_LINKED_ROLE_FOR_NAT_GATEWAY = "AliyunServiceRoleForNatgw"
SERVICE_FOR_NAT_GATEWAY = "nat.aliyuncs.com"


def ensure_nat_gateway_role(ram: RAMClient, region: str) -> None:
    """Create the NAT gateway service-linked role when it is missing.

    The lookup reports absence as ``None``; any raised error from the lookup
    or the create call propagates unchanged. Repeated calls are safe.

    Examples
    --------
    >>> class RAM:
    ...     def get_service_linked_role(self, role_name):
    ...         return {"RoleName": role_name}
    ...     def create_service_linked_role(self, region, service_name):
    ...         raise AssertionError("role already exists")
    >>> ensure_nat_gateway_role(RAM(), "cn-shanghai")
    """
    role = ram.get_service_linked_role(SERVICE_LINKED_ROLE_FOR_NAT_GATEWAY)
    if role is not None:
        logger.debug("Service-linked role %s present", SERVICE_LINKED_ROLE_FOR_NAT_GATEWAY)
        return
    logger.info(
        "Service-linked role %s missing; creating it in %s",
        SERVICE_LINKED_ROLE_FOR_NAT_GATEWAY,
        region,
    )
    ram.create_service_linked_role(region, SERVICE_FOR_NAT_GATEWAY)
