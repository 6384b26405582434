#!/usr/bin/env -S uv run python
# /// script
# requires-python = ">=3.13"
# dependencies = ["cyclopts>=2.9", "plumbum"]
# ///
"""Reconcile, restore, or delete Alicloud infrastructure via OpenTofu.

This script:
- loads the Infrastructure object and its credentials secret from the JSON
  object store;
- ensures the NAT gateway service-linked role exists;
- runs OpenTofu init and apply (or destroy) in a per-object work directory;
- shares the cluster's machine images with the caller account; and
- writes the derived status (VPC, security group, egress CIDRs, state) back.

The ``validate`` command checks a shoot manifest's networking and workers
without touching any cloud resources.
"""

from __future__ import annotations

import json
import logging
import signal
import sys
import tempfile
from collections import abc as cabc
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cyclopts import App, Parameter

from infra_actuator._actuator import Actuator, DelegateSettings
from infra_actuator._actuator_errors import ActuatorError
from infra_actuator._actuator_models import (
    Cluster,
    Infrastructure,
    InfrastructureConfig,
    OperationContext,
)
from infra_actuator._cloud_clients import AliyunCliClientFactory
from infra_actuator._input_resolution import (
    InputResolution,
    require_path,
    resolve_input,
    resolve_path,
)
from infra_actuator._object_store import JsonObjectStore
from infra_actuator._tofu_delegate import TofuDelegateFactory
from infra_actuator._validation import (
    FieldError,
    Networking,
    Worker,
    validate_networking,
    validate_networking_update,
    validate_workers,
    validate_workers_update,
)

app = App(help="Reconcile Alicloud infrastructure via OpenTofu.")
logger = logging.getLogger(__name__)

DEFAULT_WORK_DIR = Path(tempfile.gettempdir()) / "infra-actuator"


@dataclass(frozen=True, slots=True)
class ActuatorInputs:
    """Inputs for one actuator operation."""

    namespace: str
    name: str
    store_dir: Path
    work_dir: Path
    tofu_module: Path
    tofu_binary: str
    log_level: str
    cluster_file: Path | None


@dataclass(frozen=True, slots=True)
class RawActuatorInputs:
    """Raw actuator inputs from the CLI."""

    namespace: str | None = None
    name: str | None = None
    store_dir: Path | None = None
    work_dir: Path | None = None
    tofu_module: Path | None = None
    tofu_binary: str | None = None
    log_level: str | None = None
    cluster_file: Path | None = None


def resolve_actuator_inputs(
    raw: RawActuatorInputs, env: cabc.Mapping[str, str] | None = None
) -> ActuatorInputs:
    """Resolve actuator inputs; CLI values override the environment."""
    namespace = resolve_input(
        raw.namespace, InputResolution(env_key="INFRA_NAMESPACE", required=True), env
    )
    name = resolve_input(raw.name, InputResolution(env_key="INFRA_NAME", required=True), env)
    store_dir = require_path(
        raw.store_dir,
        InputResolution(env_key="ACTUATOR_STORE_DIR", as_path=True),
        env,
    )
    work_dir = require_path(
        raw.work_dir,
        InputResolution(env_key="ACTUATOR_WORK_DIR", default=DEFAULT_WORK_DIR, as_path=True),
        env,
    )
    tofu_module = require_path(
        raw.tofu_module,
        InputResolution(env_key="ACTUATOR_TOFU_MODULE", as_path=True),
        env,
    )
    tofu_binary = resolve_input(
        raw.tofu_binary, InputResolution(env_key="ACTUATOR_TOFU_BINARY", default="tofu"), env
    )
    log_level = resolve_input(
        raw.log_level, InputResolution(env_key="ACTUATOR_LOG_LEVEL", default="info"), env
    )
    cluster_file = resolve_path(
        raw.cluster_file, InputResolution(env_key="CLUSTER_FILE", as_path=True), env
    )

    return ActuatorInputs(
        namespace=str(namespace),
        name=str(name),
        store_dir=store_dir,
        work_dir=work_dir,
        tofu_module=tofu_module,
        tofu_binary=str(tofu_binary),
        log_level=str(log_level).lower(),
        cluster_file=cluster_file,
    )


def _read_json_file(path: Path, what: str) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        msg = f"Failed to read {what} {path}: {exc}"
        raise ActuatorError(msg) from exc
    except json.JSONDecodeError as exc:
        msg = f"Invalid JSON in {what} {path}: {exc}"
        raise ActuatorError(msg) from exc
    if not isinstance(payload, dict):
        msg = f"{what} {path} must contain a JSON object"
        raise ActuatorError(msg)
    return payload


def load_cluster(path: Path | None, infra: Infrastructure) -> Cluster:
    """Load the cluster descriptor; without a file a bare one is assumed."""
    if path is None:
        return Cluster(name=infra.namespace)
    payload = _read_json_file(path, "cluster file")
    try:
        return Cluster.from_mapping(payload)
    except (KeyError, TypeError, AttributeError) as exc:
        msg = f"Invalid cluster file {path}: {exc}"
        raise ActuatorError(msg) from exc


def build_actuator(inputs: ActuatorInputs, store: JsonObjectStore) -> Actuator:
    """Wire the actuator with the CLI-backed cloud clients and OpenTofu."""
    return Actuator(
        store=store,
        client_factory=AliyunCliClientFactory(),
        delegate_factory=TofuDelegateFactory(inputs.work_dir, inputs.tofu_module),
        settings=DelegateSettings(image=inputs.tofu_binary, log_level=inputs.log_level),
    )


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@contextmanager
def _cancel_on_signals(ctx: OperationContext) -> cabc.Iterator[None]:
    """Set the context's cancel event on SIGINT or SIGTERM."""

    def _handler(signum: int, _frame: object) -> None:
        logger.warning("Received signal %s; cancelling", signum)
        ctx.cancel.set()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def run_operation(operation: str, raw: RawActuatorInputs) -> int:
    """Run one actuator operation and report the outcome.

    Returns ``0`` on success and ``1`` when the operation fails.
    """
    inputs = resolve_actuator_inputs(raw)
    _configure_logging(inputs.log_level)
    store = JsonObjectStore(inputs.store_dir)
    ctx = OperationContext()

    try:
        infra = store.load_infrastructure(inputs.namespace, inputs.name)
        cluster = load_cluster(inputs.cluster_file, infra)
        actuator = build_actuator(inputs, store)
        with _cancel_on_signals(ctx):
            getattr(actuator, operation)(ctx, infra, cluster)
    except ActuatorError as exc:
        print(f"error: {operation} failed: {exc}", file=sys.stderr)
        return 1

    print(f"{operation} of infrastructure {inputs.namespace}/{inputs.name} complete.")
    return 0


@app.command()
def reconcile(
    namespace: str | None = Parameter(),
    name: str | None = Parameter(),
    store_dir: Path | None = Parameter(),
    work_dir: Path | None = Parameter(),
    tofu_module: Path | None = Parameter(),
    tofu_binary: str | None = Parameter(),
    log_level: str | None = Parameter(),
    cluster_file: Path | None = Parameter(),
) -> int:
    """Converge the infrastructure and persist its status."""
    return run_operation(
        "reconcile",
        RawActuatorInputs(
            namespace=namespace,
            name=name,
            store_dir=store_dir,
            work_dir=work_dir,
            tofu_module=tofu_module,
            tofu_binary=tofu_binary,
            log_level=log_level,
            cluster_file=cluster_file,
        ),
    )


@app.command()
def restore(
    namespace: str | None = Parameter(),
    name: str | None = Parameter(),
    store_dir: Path | None = Parameter(),
    work_dir: Path | None = Parameter(),
    tofu_module: Path | None = Parameter(),
    tofu_binary: str | None = Parameter(),
    log_level: str | None = Parameter(),
    cluster_file: Path | None = Parameter(),
) -> int:
    """Rebuild OpenTofu state from the persisted status and reconcile."""
    return run_operation(
        "restore",
        RawActuatorInputs(
            namespace=namespace,
            name=name,
            store_dir=store_dir,
            work_dir=work_dir,
            tofu_module=tofu_module,
            tofu_binary=tofu_binary,
            log_level=log_level,
            cluster_file=cluster_file,
        ),
    )


@app.command()
def delete(
    namespace: str | None = Parameter(),
    name: str | None = Parameter(),
    store_dir: Path | None = Parameter(),
    work_dir: Path | None = Parameter(),
    tofu_module: Path | None = Parameter(),
    tofu_binary: str | None = Parameter(),
    log_level: str | None = Parameter(),
    cluster_file: Path | None = Parameter(),
) -> int:
    """Destroy the infrastructure recorded in the OpenTofu state."""
    return run_operation(
        "delete",
        RawActuatorInputs(
            namespace=namespace,
            name=name,
            store_dir=store_dir,
            work_dir=work_dir,
            tofu_module=tofu_module,
            tofu_binary=tofu_binary,
            log_level=log_level,
            cluster_file=cluster_file,
        ),
    )


def validate_shoot(
    shoot: cabc.Mapping[str, Any], old_shoot: cabc.Mapping[str, Any] | None = None
) -> list[FieldError]:
    """Validate a shoot manifest, and its transition from ``old_shoot``."""
    spec = shoot.get("spec") or {}
    provider = spec.get("provider") or {}
    networking = Networking.from_mapping(spec.get("networking"))
    workers = [Worker.from_mapping(worker) for worker in provider.get("workers") or []]
    config = InfrastructureConfig.from_mapping(provider.get("infrastructureConfig") or {})

    errors = validate_networking(networking, "spec.networking")
    errors += validate_workers(workers, config.networks.zones, "spec.provider.workers")
    if old_shoot is not None:
        old_spec = old_shoot.get("spec") or {}
        old_workers = [
            Worker.from_mapping(worker)
            for worker in (old_spec.get("provider") or {}).get("workers") or []
        ]
        errors += validate_networking_update(
            Networking.from_mapping(old_spec.get("networking")),
            networking,
            "spec.networking",
        )
        errors += validate_workers_update(old_workers, workers, "spec.provider.workers")
    return errors


def run_validation(shoot_file: Path, old_shoot_file: Path | None = None) -> int:
    """Validate shoot manifests and print every finding.

    Returns ``0`` when the manifest is valid and ``1`` otherwise.
    """
    try:
        shoot = _read_json_file(shoot_file, "shoot file")
        old_shoot = (
            _read_json_file(old_shoot_file, "shoot file") if old_shoot_file else None
        )
        errors = validate_shoot(shoot, old_shoot)
    except ActuatorError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except (KeyError, TypeError, ValueError) as exc:
        print(f"error: invalid shoot manifest: {exc}", file=sys.stderr)
        return 1

    for error in errors:
        print(f"invalid: {error}", file=sys.stderr)
    if errors:
        return 1
    print(f"{shoot_file} is valid.")
    return 0


@app.command()
def validate(
    shoot_file: Path,
    old_shoot_file: Path | None = Parameter(),
) -> int:
    """Validate a shoot manifest's networking and worker pools."""
    return run_validation(shoot_file, old_shoot_file)


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(app())
