"""Tests for the NAT gateway service-linked role prerequisite."""

from __future__ import annotations

from typing import Any

import pytest

from infra_actuator._actuator_errors import IAMPrerequisiteFailedError
from infra_actuator._iam import ensure_nat_gateway_role


class FakeRAM:
    def __init__(self, role: dict[str, Any] | None = None) -> None:
        self.role = role
        self.calls: list[tuple[str, ...]] = []
        self.create_error: Exception | None = None

    def get_service_linked_role(self, role_name: str) -> dict[str, Any] | None:
        self.calls.append(("get", role_name))
        return self.role

    def create_service_linked_role(self, region: str, service_name: str) -> None:
        self.calls.append(("create", region, service_name))
        if self.create_error is not None:
            raise self.create_error
        self.role = {"RoleName": "AliyunServiceRoleForNatgw"}


def test_creates_missing_role() -> None:
    ram = FakeRAM()
    ensure_nat_gateway_role(ram, "cn-shanghai")
    assert ram.calls == [
        ("get", "AliyunServiceRoleForNatgw"),
        ("create", "cn-shanghai", "nat.aliyuncs.com"),
    ]


def test_existing_role_is_left_alone() -> None:
    ram = FakeRAM(role={"RoleName": "AliyunServiceRoleForNatgw"})
    ensure_nat_gateway_role(ram, "cn-shanghai")
    assert ram.calls == [("get", "AliyunServiceRoleForNatgw")]


def test_repeated_calls_create_once() -> None:
    ram = FakeRAM()
    ensure_nat_gateway_role(ram, "cn-shanghai")
    ensure_nat_gateway_role(ram, "cn-shanghai")
    creates = [call for call in ram.calls if call[0] == "create"]
    assert len(creates) == 1, "Second call should observe the created role"


def test_create_error_propagates() -> None:
    ram = FakeRAM()
    error = IAMPrerequisiteFailedError("Forbidden.RAM")
    ram.create_error = error
    with pytest.raises(IAMPrerequisiteFailedError) as excinfo:
        ensure_nat_gateway_role(ram, "cn-shanghai")
    assert excinfo.value is error, "Errors should surface unmodified"
