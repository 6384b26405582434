"""Data models for the infrastructure actuator.

These models provide a small, typed contract shared by the credential,
OpenTofu, chart-value, and actuator helpers, keeping data flow explicit across
module boundaries. Mapping converters follow the camelCase wire format of the
persisted Infrastructure objects.

Examples
--------
>>> state = RawState(data="c29tZSBkYXRh", encoding="base64")
>>> state.decoded()
'some data'
"""

from __future__ import annotations

import base64
import binascii
import json
import threading
from collections import abc as cabc
from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias

from infra_actuator._actuator_errors import StateParseError

EXTENSIONS_API_VERSION = "extensions.gardener.cloud/v1alpha1"
PROVIDER_API_VERSION = "alicloud.provider.extensions.gardener.cloud/v1alpha1"
PURPOSE_NODES = "nodes"

StateEncoding: TypeAlias = Literal["none", "base64"]


@dataclass(frozen=True, slots=True)
class OperationContext:
    """Cancellation signal shared by one reconcile attempt.

    Attributes
    ----------
    cancel
        Event set by the caller to abort long-running engine executions.

    Examples
    --------
    >>> ctx = OperationContext()
    >>> ctx.cancelled()
    False
    """

    cancel: threading.Event = field(default_factory=threading.Event)

    def cancelled(self) -> bool:
        """Return whether the caller requested cancellation."""
        return self.cancel.is_set()


@dataclass(frozen=True, slots=True)
class SecretReference:
    """Namespaced locator of the cloud credentials secret."""

    namespace: str
    name: str


@dataclass(frozen=True, slots=True)
class Credentials:
    """Alicloud credentials resolved from a secret.

    Attributes
    ----------
    access_key_id
        Access key ID used for API authentication.
    access_key_secret
        Access key secret used for API authentication.
    credentials_file
        Optional file-form credentials blob handed to the engine.
    """

    access_key_id: str = field(repr=False)
    access_key_secret: str = field(repr=False)
    credentials_file: str | None = field(default=None, repr=False)


@dataclass(frozen=True, slots=True)
class VPC:
    """Declared VPC: either an existing ``id`` or a ``cidr`` to create."""

    id: str | None = None
    cidr: str | None = None


@dataclass(frozen=True, slots=True)
class Zone:
    """A worker zone with its node subnet."""

    name: str
    workers: str
    eip_allocation_id: str | None = None


@dataclass(frozen=True, slots=True)
class Networks:
    """Network section of the provider configuration."""

    vpc: VPC
    zones: tuple[Zone, ...] = ()


@dataclass(frozen=True, slots=True)
class InfrastructureConfig:
    """Decoded ``providerConfig`` of an Infrastructure object.

    Examples
    --------
    >>> config = InfrastructureConfig.from_mapping(
    ...     {"networks": {"vpc": {"cidr": "192.168.0.0/16"}, "zones": []}}
    ... )
    >>> config.networks.vpc.cidr
    '192.168.0.0/16'
    """

    networks: Networks

    @classmethod
    def from_mapping(cls, payload: cabc.Mapping[str, Any] | None) -> InfrastructureConfig:
        """Build the configuration from its wire mapping."""
        if payload is None:
            msg = "infrastructure providerConfig is missing"
            raise ValueError(msg)
        networks = payload.get("networks") or {}
        vpc = networks.get("vpc") or {}
        zones: list[Zone] = []
        for raw_zone in networks.get("zones") or []:
            nat_gateway = raw_zone.get("natGateway") or {}
            zones.append(
                Zone(
                    name=str(raw_zone["name"]),
                    # ``worker`` is the deprecated spelling of ``workers``.
                    workers=str(raw_zone.get("workers") or raw_zone.get("worker") or ""),
                    eip_allocation_id=nat_gateway.get("eipAllocationID"),
                )
            )
        return cls(
            networks=Networks(
                vpc=VPC(id=vpc.get("id"), cidr=vpc.get("cidr")),
                zones=tuple(zones),
            )
        )


@dataclass(frozen=True, slots=True)
class OwnerReference:
    """Controller back-reference used for garbage collection."""

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = True
    block_owner_deletion: bool = True

    def to_mapping(self) -> dict[str, object]:
        """Return the camelCase wire mapping."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }


@dataclass(frozen=True, slots=True)
class InfrastructureSpec:
    """Desired infrastructure state; read-only to the actuator."""

    region: str
    secret_ref: SecretReference
    provider_config: cabc.Mapping[str, Any] | None = None
    ssh_public_key: str = ""


@dataclass(frozen=True, slots=True)
class RawState:
    """Serialized OpenTofu state as round-tripped through the status.

    Attributes
    ----------
    data
        State payload, raw or base64-encoded depending on ``encoding``.
    encoding
        Either ``"none"`` or ``"base64"``.

    Examples
    --------
    >>> RawState.unmarshal(RawState(data="{}").marshal()).decoded()
    '{}'
    """

    data: str = ""
    encoding: StateEncoding = "none"

    def decoded(self) -> str:
        """Return the state document with any transport encoding removed."""
        match self.encoding:
            case "none":
                return self.data
            case "base64":
                try:
                    return base64.b64decode(self.data, validate=True).decode("utf-8")
                except (binascii.Error, UnicodeDecodeError) as exc:
                    msg = f"Invalid base64 state data: {exc}"
                    raise StateParseError(msg) from exc
            case _:
                msg = f"Unsupported state encoding {self.encoding!r}"
                raise StateParseError(msg)

    def to_mapping(self) -> dict[str, str]:
        """Return the JSON-serialisable mapping."""
        return {"data": self.data, "encoding": self.encoding}

    def marshal(self) -> str:
        """Return the JSON text persisted under ``status.state``."""
        return json.dumps(self.to_mapping())

    @classmethod
    def from_mapping(cls, payload: cabc.Mapping[str, Any]) -> RawState:
        """Build a raw state from its mapping form."""
        encoding = payload.get("encoding") or "none"
        if encoding not in ("none", "base64"):
            msg = f"Unsupported state encoding {encoding!r}"
            raise StateParseError(msg)
        return cls(data=str(payload.get("data") or ""), encoding=encoding)

    @classmethod
    def unmarshal(cls, text: str | None) -> RawState:
        """Parse marshalled state text; ``None`` yields an empty state."""
        if not text:
            return cls()
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            msg = f"Failed to parse persisted state: {exc}"
            raise StateParseError(msg) from exc
        if not isinstance(payload, dict):
            msg = "Persisted state must be a JSON object"
            raise StateParseError(msg)
        return cls.from_mapping(payload)


@dataclass(frozen=True, slots=True)
class SecurityGroup:
    """Security group reported in the provider status."""

    purpose: str
    id: str


@dataclass(frozen=True, slots=True)
class VPCStatus:
    """VPC facts derived from engine outputs."""

    id: str
    security_groups: tuple[SecurityGroup, ...] = ()


@dataclass(frozen=True, slots=True)
class InfrastructureStatus:
    """Provider-specific status envelope.

    Examples
    --------
    >>> status = InfrastructureStatus(vpc=VPCStatus(id="vpc-1"))
    >>> status.to_mapping()["kind"]
    'InfrastructureStatus'
    """

    vpc: VPCStatus
    api_version: str = PROVIDER_API_VERSION
    kind: str = "InfrastructureStatus"

    def to_mapping(self) -> dict[str, object]:
        """Return the camelCase wire mapping."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "vpc": {
                "id": self.vpc.id,
                "securityGroups": [
                    {"purpose": group.purpose, "id": group.id}
                    for group in self.vpc.security_groups
                ],
            },
        }

    @classmethod
    def from_mapping(cls, payload: cabc.Mapping[str, Any]) -> InfrastructureStatus:
        """Build the provider status from its wire mapping."""
        vpc = payload.get("vpc") or {}
        groups = tuple(
            SecurityGroup(purpose=str(group["purpose"]), id=str(group["id"]))
            for group in vpc.get("securityGroups") or []
        )
        return cls(
            vpc=VPCStatus(id=str(vpc.get("id") or ""), security_groups=groups),
            api_version=str(payload.get("apiVersion") or PROVIDER_API_VERSION),
            kind=str(payload.get("kind") or "InfrastructureStatus"),
        )


@dataclass(frozen=True, slots=True)
class InfrastructureObjectStatus:
    """Complete status written once per successful reconcile."""

    provider_status: InfrastructureStatus | None = None
    egress_cidrs: tuple[str, ...] = ()
    state: RawState | None = None

    def to_mapping(self) -> dict[str, object]:
        """Return the camelCase wire mapping."""
        payload: dict[str, object] = {"egressCIDRs": list(self.egress_cidrs)}
        if self.provider_status is not None:
            payload["providerStatus"] = self.provider_status.to_mapping()
        if self.state is not None:
            payload["state"] = self.state.to_mapping()
        return payload

    @classmethod
    def from_mapping(
        cls, payload: cabc.Mapping[str, Any] | None
    ) -> InfrastructureObjectStatus:
        """Build the status from its wire mapping."""
        if not payload:
            return cls()
        provider_status = payload.get("providerStatus")
        state = payload.get("state")
        if isinstance(state, str):
            raw_state: RawState | None = RawState.unmarshal(state)
        elif isinstance(state, dict):
            raw_state = RawState.from_mapping(state)
        else:
            raw_state = None
        return cls(
            provider_status=(
                InfrastructureStatus.from_mapping(provider_status)
                if provider_status
                else None
            ),
            egress_cidrs=tuple(str(cidr) for cidr in payload.get("egressCIDRs") or []),
            state=raw_state,
        )


@dataclass(slots=True)
class Infrastructure:
    """An Infrastructure object as read from the object store.

    ``status`` is replaced wholesale after every successful status write.
    """

    namespace: str
    name: str
    uid: str
    spec: InfrastructureSpec
    status: InfrastructureObjectStatus = field(
        default_factory=InfrastructureObjectStatus
    )
    resource_version: str | None = None

    def owner_reference(self) -> OwnerReference:
        """Return the controller reference pointing at this object."""
        return OwnerReference(
            api_version=EXTENSIONS_API_VERSION,
            kind="Infrastructure",
            name=self.name,
            uid=self.uid,
        )

    @classmethod
    def from_mapping(cls, payload: cabc.Mapping[str, Any]) -> Infrastructure:
        """Build an Infrastructure object from its manifest mapping."""
        metadata = payload.get("metadata") or {}
        spec = payload.get("spec") or {}
        secret_ref = spec.get("secretRef") or {}
        try:
            infra_spec = InfrastructureSpec(
                region=str(spec["region"]),
                secret_ref=SecretReference(
                    namespace=str(secret_ref["namespace"]),
                    name=str(secret_ref["name"]),
                ),
                provider_config=spec.get("providerConfig"),
                ssh_public_key=str(spec.get("sshPublicKey") or ""),
            )
            namespace = str(metadata["namespace"])
            name = str(metadata["name"])
        except KeyError as exc:
            msg = f"Infrastructure manifest is missing field {exc.args[0]!r}"
            raise ValueError(msg) from exc
        resource_version = metadata.get("resourceVersion")
        return cls(
            namespace=namespace,
            name=name,
            uid=str(metadata.get("uid") or ""),
            spec=infra_spec,
            status=InfrastructureObjectStatus.from_mapping(payload.get("status")),
            resource_version=str(resource_version) if resource_version else None,
        )


@dataclass(frozen=True, slots=True)
class MachineImage:
    """A machine image resolved for the infrastructure's region."""

    name: str
    version: str
    image_id: str
    encrypted: bool = False


@dataclass(frozen=True, slots=True)
class Cluster:
    """Descriptor of the cluster owning the infrastructure.

    Examples
    --------
    >>> Cluster.from_mapping({"name": "dev", "networking": {"pods": "100.96.0.0/11"}}).pod_cidr
    '100.96.0.0/11'
    """

    name: str
    pod_cidr: str | None = None
    machine_images: tuple[MachineImage, ...] = ()

    @classmethod
    def from_mapping(cls, payload: cabc.Mapping[str, Any]) -> Cluster:
        """Build the descriptor from its JSON mapping."""
        networking = payload.get("networking") or {}
        images = tuple(
            MachineImage(
                name=str(image["name"]),
                version=str(image["version"]),
                image_id=str(image["id"]),
                encrypted=bool(image.get("encrypted", False)),
            )
            for image in payload.get("machineImages") or []
        )
        return cls(
            name=str(payload.get("name") or ""),
            pod_cidr=networking.get("pods"),
            machine_images=images,
        )


__all__ = [
    "PURPOSE_NODES",
    "Cluster",
    "Credentials",
    "Infrastructure",
    "InfrastructureConfig",
    "InfrastructureObjectStatus",
    "InfrastructureSpec",
    "InfrastructureStatus",
    "MachineImage",
    "Networks",
    "OperationContext",
    "OwnerReference",
    "RawState",
    "SecretReference",
    "SecurityGroup",
    "VPC",
    "VPCStatus",
    "Zone",
]
