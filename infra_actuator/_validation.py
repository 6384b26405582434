"""Validate cluster networking and worker pools against Alicloud constraints.

Every validator is a pure function returning a list of :class:`FieldError`;
an empty list means the input is acceptable. Field paths use the dotted,
indexed notation of the manifests, e.g. ``spec.networking.nodes`` or
``workers[0].dataVolumes[1].name``.
"""

from __future__ import annotations

import ipaddress
import json
import re
from collections import abc as cabc
from dataclasses import dataclass
from typing import Any

from infra_actuator._actuator_models import Zone

ERROR_REQUIRED = "FieldValueRequired"
ERROR_INVALID = "FieldValueInvalid"
ERROR_TOO_LONG = "FieldValueTooLong"

RESERVED_CIDR = ipaddress.ip_network("100.64.0.0/10")
DATA_VOLUME_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
DATA_VOLUME_NAME_MAX_LENGTH = 64
IN_PLACE_UPDATE_STRATEGIES = frozenset({"AutoInPlaceUpdate", "ManualInPlaceUpdate"})


@dataclass(frozen=True, slots=True)
class FieldError:
    """A single validation failure.

    Attributes
    ----------
    type
        One of ``ERROR_REQUIRED``, ``ERROR_INVALID``, ``ERROR_TOO_LONG``.
    field
        Path of the offending field.
    bad_value
        The rejected value, ``None`` for missing fields.
    detail
        Human-readable explanation.
    """

    type: str
    field: str
    bad_value: object = None
    detail: str = ""

    def __str__(self) -> str:
        if self.bad_value is None:
            return f"{self.field}: {self.type}: {self.detail}"
        return f"{self.field}: {self.type}: {self.bad_value!r}: {self.detail}"


@dataclass(frozen=True, slots=True)
class Networking:
    nodes: str | None = None
    pods: str | None = None
    services: str | None = None

    @classmethod
    def from_mapping(cls, payload: cabc.Mapping[str, Any] | None) -> Networking:
        payload = payload or {}
        return cls(
            nodes=payload.get("nodes"),
            pods=payload.get("pods"),
            services=payload.get("services"),
        )


@dataclass(frozen=True, slots=True)
class Volume:
    type: str | None = None
    size: str = ""
    encrypted: bool | None = None


@dataclass(frozen=True, slots=True)
class DataVolume:
    name: str = ""
    size: str = ""
    type: str | None = None


@dataclass(frozen=True, slots=True)
class Worker:
    """A worker pool as far as Alicloud validation is concerned."""

    name: str
    zones: tuple[str, ...] = ()
    volume: Volume | None = None
    data_volumes: tuple[DataVolume, ...] = ()
    update_strategy: str | None = None
    provider_config: cabc.Mapping[str, Any] | None = None
    minimum: int = 0
    maximum: int = 0

    @classmethod
    def from_mapping(cls, payload: cabc.Mapping[str, Any]) -> Worker:
        volume = payload.get("volume")
        return cls(
            name=str(payload["name"]),
            zones=tuple(str(zone) for zone in payload.get("zones") or []),
            volume=(
                Volume(
                    type=volume.get("type"),
                    size=str(volume.get("size") or ""),
                    encrypted=volume.get("encrypted"),
                )
                if volume is not None
                else None
            ),
            data_volumes=tuple(
                DataVolume(
                    name=str(data_volume.get("name") or ""),
                    size=str(data_volume.get("size") or ""),
                    type=data_volume.get("type"),
                )
                for data_volume in payload.get("dataVolumes") or []
            ),
            update_strategy=payload.get("updateStrategy"),
            provider_config=payload.get("providerConfig"),
            minimum=int(payload.get("minimum") or 0),
            maximum=int(payload.get("maximum") or 0),
        )


def _child(path: str, name: str) -> str:
    return f"{path}.{name}" if path else name


def _index(path: str, index: int) -> str:
    return f"{path}[{index}]"


def _parse_cidr(value: str) -> ipaddress.IPv4Network | ipaddress.IPv6Network | None:
    try:
        return ipaddress.ip_network(value, strict=False)
    except ValueError:
        return None


def _validate_cidr(value: str, path: str) -> list[FieldError]:
    network = _parse_cidr(value)
    if network is None:
        return [FieldError(ERROR_INVALID, path, value, "invalid CIDR")]
    if network.version == RESERVED_CIDR.version and network.overlaps(RESERVED_CIDR):
        detail = f"must not overlap with {RESERVED_CIDR} (reserved by Alicloud)"
        return [FieldError(ERROR_INVALID, path, value, detail)]
    return []


def validate_networking(networking: Networking, path: str) -> list[FieldError]:
    """Validate the cluster networking section.

    ``nodes`` is required; every CIDR given must be parsable and must not
    overlap ``100.64.0.0/10``.

    Examples
    --------
    >>> validate_networking(Networking(nodes="10.250.0.0/16"), "spec.networking")
    []
    """
    errors: list[FieldError] = []
    if networking.nodes is None:
        errors.append(
            FieldError(ERROR_REQUIRED, _child(path, "nodes"), None, "a nodes CIDR must be provided")
        )
    for name in ("nodes", "pods", "services"):
        value = getattr(networking, name)
        if value is not None:
            errors.extend(_validate_cidr(value, _child(path, name)))
    return errors


def validate_networking_update(
    old: Networking, new: Networking, path: str
) -> list[FieldError]:
    """Forbid changing a valid ``nodes`` or ``services`` CIDR.

    Old values that never parsed as CIDRs may be replaced; ``pods`` is free
    to change.
    """
    errors: list[FieldError] = []
    for name in ("nodes", "services"):
        old_value = getattr(old, name)
        new_value = getattr(new, name)
        if old_value is None or _parse_cidr(old_value) is None:
            continue
        if new_value != old_value:
            errors.append(
                FieldError(ERROR_INVALID, _child(path, name), new_value, "field is immutable")
            )
    return errors


def _validate_volume(volume: Volume | None, path: str) -> list[FieldError]:
    if volume is None:
        return [FieldError(ERROR_REQUIRED, path, None, "must not be empty")]
    errors: list[FieldError] = []
    if not volume.type:
        errors.append(FieldError(ERROR_REQUIRED, _child(path, "type"), None, "must not be empty"))
    if not volume.size:
        errors.append(FieldError(ERROR_REQUIRED, _child(path, "size"), None, "must not be empty"))
    return errors


def _validate_data_volume(data_volume: DataVolume, path: str) -> list[FieldError]:
    errors: list[FieldError] = []
    name_path = _child(path, "name")
    if len(data_volume.name) > DATA_VOLUME_NAME_MAX_LENGTH:
        errors.append(
            FieldError(
                ERROR_TOO_LONG,
                name_path,
                data_volume.name,
                f"must not be more than {DATA_VOLUME_NAME_MAX_LENGTH} characters",
            )
        )
    elif not DATA_VOLUME_NAME_PATTERN.match(data_volume.name):
        errors.append(
            FieldError(
                ERROR_INVALID,
                name_path,
                data_volume.name,
                f"must match {DATA_VOLUME_NAME_PATTERN.pattern}",
            )
        )
    if not data_volume.type:
        errors.append(FieldError(ERROR_REQUIRED, _child(path, "type"), None, "must not be empty"))
    if not data_volume.size:
        errors.append(FieldError(ERROR_REQUIRED, _child(path, "size"), None, "must not be empty"))
    return errors


def validate_workers(
    workers: cabc.Sequence[Worker], zones: cabc.Sequence[Zone], path: str
) -> list[FieldError]:
    """Validate worker volumes and zone placement.

    Parameters
    ----------
    workers
        Worker pools of the cluster.
    zones
        Zones declared in the infrastructure configuration.
    path
        Field path of the worker list.
    """
    available = {zone.name for zone in zones}
    errors: list[FieldError] = []
    for i, worker in enumerate(workers):
        worker_path = _index(path, i)
        errors.extend(_validate_volume(worker.volume, _child(worker_path, "volume")))
        for j, data_volume in enumerate(worker.data_volumes):
            errors.extend(
                _validate_data_volume(data_volume, _index(_child(worker_path, "dataVolumes"), j))
            )

        zones_path = _child(worker_path, "zones")
        if not worker.zones:
            errors.append(FieldError(ERROR_REQUIRED, zones_path, None, "at least one zone must be configured"))
            continue
        for j, zone in enumerate(worker.zones):
            if zone not in available:
                errors.append(
                    FieldError(
                        ERROR_INVALID,
                        _index(zones_path, j),
                        zone,
                        "zone is not declared in the infrastructure configuration",
                    )
                )
    return errors


def _canonical(value: cabc.Mapping[str, Any] | None) -> str:
    return json.dumps(value, sort_keys=True)


def validate_workers_update(
    old: cabc.Sequence[Worker], new: cabc.Sequence[Worker], path: str
) -> list[FieldError]:
    """Check that existing worker pools only change in allowed ways.

    Workers are matched by name. Zones may only be appended. For in-place
    update strategies ``providerConfig`` and ``dataVolumes`` are frozen.
    """
    previous = {worker.name: worker for worker in old}
    errors: list[FieldError] = []
    for i, worker in enumerate(new):
        before = previous.get(worker.name)
        if before is None:
            continue
        worker_path = _index(path, i)

        if worker.zones[: len(before.zones)] != before.zones:
            errors.append(
                FieldError(
                    ERROR_INVALID,
                    _child(worker_path, "zones"),
                    list(worker.zones),
                    "zones may only be appended, not removed or reordered",
                )
            )

        if worker.update_strategy not in IN_PLACE_UPDATE_STRATEGIES:
            continue
        if _canonical(worker.provider_config) != _canonical(before.provider_config):
            errors.append(
                FieldError(
                    ERROR_INVALID,
                    _child(worker_path, "providerConfig"),
                    worker.provider_config,
                    "providerConfig is immutable when update strategy is in-place",
                )
            )
        if worker.data_volumes != before.data_volumes:
            errors.append(
                FieldError(
                    ERROR_INVALID,
                    _child(worker_path, "dataVolumes"),
                    None,
                    "dataVolumes is immutable when update strategy is in-place",
                )
            )
    return errors


__all__ = [
    "FieldError",
    "Networking",
    "Worker",
    "validate_networking",
    "validate_networking_update",
    "validate_workers",
    "validate_workers_update",
]
