"""Derive provider status facts from the raw OpenTofu state."""

from __future__ import annotations

import json
from collections import abc as cabc
from typing import Any

from infra_actuator._actuator_errors import StateParseError
from infra_actuator._actuator_models import RawState

EIP_RESOURCE_TYPES = frozenset({"alicloud_eip", "alicloud_eip_address"})


def parse_state_document(raw_state: RawState) -> dict[str, Any]:
    """Decode and parse the state; an empty state yields ``{}``.

    Raises
    ------
    StateParseError
        If the payload is not a JSON object.
    """
    text = raw_state.decoded()
    if not text.strip():
        return {}
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        msg = f"Invalid JSON in OpenTofu state: {exc}"
        raise StateParseError(msg) from exc
    if not isinstance(document, dict):
        msg = "OpenTofu state root must be a JSON object"
        raise StateParseError(msg)
    return document


def _as_list(value: object, what: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        msg = f"OpenTofu state field {what!r} must be a list"
        raise StateParseError(msg)
    return value


def _iter_eip_addresses(document: dict[str, Any]) -> cabc.Iterator[str]:
    for resource in _as_list(document.get("resources"), "resources"):
        if not isinstance(resource, dict):
            msg = "OpenTofu state resources must be JSON objects"
            raise StateParseError(msg)
        if resource.get("type") not in EIP_RESOURCE_TYPES:
            continue
        for instance in _as_list(resource.get("instances"), "instances"):
            attributes = instance.get("attributes") if isinstance(instance, dict) else None
            if not isinstance(attributes, dict):
                continue
            if ip_address := attributes.get("ip_address"):
                yield str(ip_address)


def extract_egress_cidrs(raw_state: RawState) -> list[str]:
    """Return ``/32`` CIDRs of every EIP recorded in ``raw_state``.

    Order follows the state: resource order, then instance order.

    Examples
    --------
    >>> state = RawState(data='{"resources": [{"mode": "managed", "type": "alicloud_eip",'
    ...     ' "instances": [{"attributes": {"ip_address": "139.196.40.2"}}]}]}')
    >>> extract_egress_cidrs(state)
    ['139.196.40.2/32']
    """
    document = parse_state_document(raw_state)
    return [f"{address}/32" for address in _iter_eip_addresses(document)]


def output_value(outputs: cabc.Mapping[str, Any], key: str) -> str | None:
    """Extract an output value, handling both direct and wrapped formats."""
    if key not in outputs:
        return None
    output = outputs[key]
    if isinstance(output, dict) and "value" in output:
        output = output["value"]
    if output is None:
        return None
    return output if isinstance(output, str) else json.dumps(output)


def state_output(raw_state: RawState, key: str) -> str | None:
    """Return output ``key`` of ``raw_state``, ``None`` when it is absent.

    Examples
    --------
    >>> state_output(RawState(data='{"outputs": {"vpc_id": {"value": "vpc-1"}}}'), "vpc_id")
    'vpc-1'
    """
    outputs = parse_state_document(raw_state).get("outputs") or {}
    if not isinstance(outputs, dict):
        msg = "OpenTofu state field 'outputs' must be an object"
        raise StateParseError(msg)
    return output_value(outputs, key)
