"""Tests for OpenTofu variable computation."""

from __future__ import annotations

from typing import Any

from infra_actuator._actuator_models import Infrastructure, InfrastructureConfig
from infra_actuator._chart_values import TerraformChartOps
from infra_actuator._cloud_clients import VPCInfo


def _config(vpc: dict[str, str], zones: list[dict[str, Any]] | None = None) -> InfrastructureConfig:
    return InfrastructureConfig.from_mapping({"networks": {"vpc": vpc, "zones": zones or []}})


def test_create_vpc_values() -> None:
    values = TerraformChartOps().compute_create_vpc_initializer_values(
        _config({"cidr": "192.168.0.0/16"}), "PayByTraffic"
    )
    assert values.vpc.create is True
    assert values.vpc.id == "alicloud_vpc.vpc.id", "Created VPC id is a reference"
    assert values.vpc.cidr == "192.168.0.0/16"
    assert values.nat_gateway.id == "alicloud_nat_gateway.nat_gateway.id"
    assert values.nat_gateway.snat_table_ids == "alicloud_nat_gateway.nat_gateway.snat_table_ids"
    assert values.eip.internet_charge_type == "PayByTraffic"


def test_use_vpc_values_quote_literals() -> None:
    info = VPCInfo(
        cidr="10.0.0.0/16",
        nat_gateway_id="ngw-1",
        snat_table_ids="stb-1",
        internet_charge_type="PayByBandwidth",
    )
    values = TerraformChartOps().compute_use_vpc_initializer_values(
        _config({"id": "vpc-1"}), info
    )
    assert values.vpc.create is False
    assert values.vpc.id == '"vpc-1"'
    assert values.vpc.cidr == "10.0.0.0/16"
    assert values.nat_gateway.id == '"ngw-1"'
    assert values.nat_gateway.snat_table_ids == '"stb-1"'
    assert values.eip.internet_charge_type == "PayByBandwidth"


def test_use_vpc_without_nat_gateway_creates_one() -> None:
    info = VPCInfo(
        cidr="10.0.0.0/16",
        nat_gateway_id="",
        snat_table_ids="",
        internet_charge_type="PayByTraffic",
    )
    values = TerraformChartOps().compute_use_vpc_initializer_values(
        _config({"id": "vpc-1"}), info
    )
    assert values.nat_gateway.create is True
    assert values.nat_gateway.id == "alicloud_nat_gateway.nat_gateway.id"


def test_chart_values_tell_nat_gateway_reuse_from_creation(
    infrastructure_manifest: dict[str, Any],
) -> None:
    infra = Infrastructure.from_mapping(infrastructure_manifest)
    config = _config({"id": "vpc-1"})
    ops = TerraformChartOps()
    without_nat = VPCInfo(
        cidr="10.0.0.0/16",
        nat_gateway_id="",
        snat_table_ids="",
        internet_charge_type="PayByTraffic",
    )
    with_nat = VPCInfo(
        cidr="10.0.0.0/16",
        nat_gateway_id="ngw-1",
        snat_table_ids="stb-1",
        internet_charge_type="PayByTraffic",
    )

    created = ops.compute_chart_values(
        infra, config, None, ops.compute_use_vpc_initializer_values(config, without_nat)
    )
    reused = ops.compute_chart_values(
        infra, config, None, ops.compute_use_vpc_initializer_values(config, with_nat)
    )

    assert created["natGateway"]["create"] is True, "Missing NAT gateway should be created"
    assert reused["natGateway"] == {
        "create": False,
        "id": '"ngw-1"',
        "sNatTableIDs": '"stb-1"',
    }, "Existing NAT gateway should be attached, not created"


def test_chart_values_shape(infrastructure_manifest: dict[str, Any]) -> None:
    infra = Infrastructure.from_mapping(infrastructure_manifest)
    config = _config(
        {"cidr": "192.168.0.0/16"},
        [
            {"name": "cn-shanghai-a", "workers": "192.168.0.0/24"},
            {
                "name": "cn-shanghai-b",
                "worker": "192.168.1.0/24",
                "natGateway": {"eipAllocationID": "eip-1"},
            },
        ],
    )
    ops = TerraformChartOps()
    values = ops.compute_create_vpc_initializer_values(config, "PayByTraffic")

    chart = ops.compute_chart_values(infra, config, "100.96.0.0/11", values)

    assert chart == {
        "alicloud": {"region": "cn-shanghai"},
        "vpc": {"create": True, "id": "alicloud_vpc.vpc.id", "cidr": "192.168.0.0/16"},
        "natGateway": {
            "create": True,
            "id": "alicloud_nat_gateway.nat_gateway.id",
            "sNatTableIDs": "alicloud_nat_gateway.nat_gateway.snat_table_ids",
        },
        "eip": {"internetChargeType": "PayByTraffic"},
        "clusterName": "shoot--dev--alicloud",
        "sshPublicKey": "ssh-rsa AAAA",
        "zones": [
            {"name": "cn-shanghai-a", "cidr": {"workers": "192.168.0.0/24"}},
            {
                "name": "cn-shanghai-b",
                "cidr": {"workers": "192.168.1.0/24"},
                "natGateway": {"eipAllocationID": "eip-1"},
            },
        ],
        "podCIDR": "100.96.0.0/11",
        "outputKeys": {
            "vpcID": "vpc_id",
            "vpcCIDR": "vpc_cidr",
            "securityGroupID": "sg_id",
            "vswitchNodesPrefix": "vswitch_z",
        },
    }


def test_chart_values_are_deterministic(infrastructure_manifest: dict[str, Any]) -> None:
    infra = Infrastructure.from_mapping(infrastructure_manifest)
    config = InfrastructureConfig.from_mapping(infra.spec.provider_config)
    ops = TerraformChartOps()
    values = ops.compute_create_vpc_initializer_values(config, "PayByTraffic")
    first = ops.compute_chart_values(infra, config, None, values)
    second = ops.compute_chart_values(infra, config, None, values)
    assert first == second, "Equal inputs should give equal chart values"
    assert first["podCIDR"] is None
