from __future__ import annotations

import base64
import json
import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    project_root = Path(__file__).resolve().parents[2]
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))


@pytest.fixture
def credentials_secret() -> dict[str, object]:
    """Secret manifest holding a valid access key pair."""

    def encode(value: str) -> str:
        return base64.b64encode(value.encode("utf-8")).decode("ascii")

    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "data": {
            "accessKeyID": encode("accessKeyID"),
            "accessKeySecret": encode("accessKeySecret"),
            "credentialsFile": encode("credentialsFile"),
        },
    }


@pytest.fixture
def infrastructure_manifest() -> dict[str, object]:
    """Infrastructure manifest declaring a new VPC with one zone."""
    return {
        "apiVersion": "extensions.gardener.cloud/v1alpha1",
        "kind": "Infrastructure",
        "metadata": {"namespace": "shoot--dev--alicloud", "name": "infra", "uid": "uid-1"},
        "spec": {
            "region": "cn-shanghai",
            "secretRef": {"namespace": "shoot--dev--alicloud", "name": "cloudprovider"},
            "sshPublicKey": "ssh-rsa AAAA",
            "providerConfig": {
                "apiVersion": "alicloud.provider.extensions.gardener.cloud/v1alpha1",
                "kind": "InfrastructureConfig",
                "networks": {
                    "vpc": {"cidr": "192.168.0.0/16"},
                    "zones": [{"name": "cn-shanghai-a", "workers": "192.168.0.0/24"}],
                },
            },
        },
    }


@pytest.fixture
def eip_state_text() -> str:
    """OpenTofu state with one EIP and the outputs the actuator reads."""
    return json.dumps(
        {
            "version": 4,
            "outputs": {
                "vpc_id": {"value": "vpcID", "type": "string"},
                "vpc_cidr": {"value": "vpcCIDR", "type": "string"},
                "sg_id": {"value": "sgID", "type": "string"},
            },
            "resources": [
                {
                    "mode": "managed",
                    "type": "alicloud_eip",
                    "instances": [{"attributes": {"ip_address": "139.196.40.2"}}],
                }
            ],
        }
    )
