"""Compute the OpenTofu variable tree for the infrastructure module.

Both stages are pure: identical inputs always yield equal outputs, and nothing
here talks to the cloud or the engine.

Examples
--------
>>> ops = TerraformChartOps()
>>> config = InfrastructureConfig.from_mapping({"networks": {"vpc": {"cidr": "10.0.0.0/16"}}})
>>> ops.compute_create_vpc_initializer_values(config, "PayByTraffic").vpc.create
True
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from infra_actuator._actuator_models import Infrastructure, InfrastructureConfig
from infra_actuator._cloud_clients import VPCInfo

OUTPUT_KEY_VPC_ID = "vpc_id"
OUTPUT_KEY_VPC_CIDR = "vpc_cidr"
OUTPUT_KEY_SECURITY_GROUP_ID = "sg_id"
OUTPUT_KEY_VSWITCH_NODES_PREFIX = "vswitch_z"

# OpenTofu expressions referencing resources the module creates itself.
_CREATED_VPC_ID = "alicloud_vpc.vpc.id"
_CREATED_NAT_GATEWAY_ID = "alicloud_nat_gateway.nat_gateway.id"
_CREATED_SNAT_TABLE_IDS = "alicloud_nat_gateway.nat_gateway.snat_table_ids"


@dataclass(frozen=True, slots=True)
class VPCValues:
    create: bool
    id: str
    cidr: str


@dataclass(frozen=True, slots=True)
class NATGatewayValues:
    create: bool
    id: str
    snat_table_ids: str


@dataclass(frozen=True, slots=True)
class EIPValues:
    internet_charge_type: str


@dataclass(frozen=True, slots=True)
class InitializerValues:
    """VPC, NAT gateway, and EIP inputs resolved before chart rendering."""

    vpc: VPCValues
    nat_gateway: NATGatewayValues
    eip: EIPValues


def _quote(value: str) -> str:
    """Render ``value`` as an OpenTofu string literal."""
    return json.dumps(value)


class TerraformChartOps:
    """Default chart-value computer injected into the actuator."""

    def compute_create_vpc_initializer_values(
        self, config: InfrastructureConfig, internet_charge_type: str
    ) -> InitializerValues:
        """Return initializer values for a VPC the module creates.

        Parameters
        ----------
        config
            Decoded provider configuration; ``networks.vpc.cidr`` is used.
        internet_charge_type
            EIP billing mode, read from the live VPC or the default.
        """
        return InitializerValues(
            vpc=VPCValues(
                create=True,
                id=_CREATED_VPC_ID,
                cidr=config.networks.vpc.cidr or "",
            ),
            nat_gateway=NATGatewayValues(
                create=True,
                id=_CREATED_NAT_GATEWAY_ID,
                snat_table_ids=_CREATED_SNAT_TABLE_IDS,
            ),
            eip=EIPValues(internet_charge_type=internet_charge_type),
        )

    def compute_use_vpc_initializer_values(
        self, config: InfrastructureConfig, info: VPCInfo
    ) -> InitializerValues:
        """Return initializer values for attaching to an existing VPC."""
        # A VPC without NAT gateway still gets one from the module.
        create_nat_gateway = not info.nat_gateway_id
        return InitializerValues(
            vpc=VPCValues(
                create=False,
                id=_quote(config.networks.vpc.id or ""),
                cidr=info.cidr,
            ),
            nat_gateway=NATGatewayValues(
                create=create_nat_gateway,
                id=_CREATED_NAT_GATEWAY_ID if create_nat_gateway else _quote(info.nat_gateway_id),
                snat_table_ids=(
                    _CREATED_SNAT_TABLE_IDS
                    if create_nat_gateway
                    else _quote(info.snat_table_ids)
                ),
            ),
            eip=EIPValues(internet_charge_type=info.internet_charge_type),
        )

    def compute_chart_values(
        self,
        infra: Infrastructure,
        config: InfrastructureConfig,
        pod_cidr: str | None,
        values: InitializerValues,
    ) -> dict[str, Any]:
        """Assemble the full variable tree handed to OpenTofu.

        Parameters
        ----------
        infra
            Infrastructure object; supplies region, namespace, and SSH key.
        config
            Decoded provider configuration; supplies the worker zones.
        pod_cidr
            Pod network of the cluster, ``None`` when undeclared.
        values
            Output of one of the initializer computations.

        Returns
        -------
        dict[str, Any]
            Variables written to the module's ``tfvars.json``.
        """
        zones: list[dict[str, Any]] = []
        for zone in config.networks.zones:
            entry: dict[str, Any] = {
                "name": zone.name,
                "cidr": {"workers": zone.workers},
            }
            if zone.eip_allocation_id:
                entry["natGateway"] = {"eipAllocationID": zone.eip_allocation_id}
            zones.append(entry)

        return {
            "alicloud": {"region": infra.spec.region},
            "vpc": {
                "create": values.vpc.create,
                "id": values.vpc.id,
                "cidr": values.vpc.cidr,
            },
            "natGateway": {
                "create": values.nat_gateway.create,
                "id": values.nat_gateway.id,
                "sNatTableIDs": values.nat_gateway.snat_table_ids,
            },
            "eip": {"internetChargeType": values.eip.internet_charge_type},
            "clusterName": infra.namespace,
            "sshPublicKey": infra.spec.ssh_public_key,
            "zones": zones,
            "podCIDR": pod_cidr,
            "outputKeys": {
                "vpcID": OUTPUT_KEY_VPC_ID,
                "vpcCIDR": OUTPUT_KEY_VPC_CIDR,
                "securityGroupID": OUTPUT_KEY_SECURITY_GROUP_ID,
                "vswitchNodesPrefix": OUTPUT_KEY_VSWITCH_NODES_PREFIX,
            },
        }
