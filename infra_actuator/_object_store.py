"""JSON-file object store for secrets and Infrastructure objects.

Objects live under ``<root>/<kind>/<namespace>/<name>.json``. Status writes
use the object's ``metadata.resourceVersion`` for optimistic concurrency: a
write carrying a stale version loses the race and raises
:class:`StatusPersistenceConflictError`, leaving the stored object untouched.
Object writes hold an exclusive ``flock`` on a sibling ``.lock`` file across
the version check and the replacement.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
from collections import abc as cabc
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Any, Protocol

from infra_actuator._actuator_errors import (
    ActuatorError,
    StatusPersistenceConflictError,
)
from infra_actuator._actuator_models import Infrastructure, InfrastructureObjectStatus

logger = logging.getLogger(__name__)


class SecretReader(Protocol):
    """Read access to Kubernetes-style secret manifests."""

    def get_secret(self, namespace: str, name: str) -> cabc.Mapping[str, Any] | None:
        """Return the secret manifest or ``None`` when it does not exist."""
        ...


class StatusWriter(Protocol):
    """Write access to the status of Infrastructure objects."""

    def patch_status(
        self, infra: Infrastructure, status: InfrastructureObjectStatus
    ) -> None:
        """Replace the persisted status of ``infra`` with ``status``."""
        ...


def _write_json_atomic(path: Path, payload: cabc.Mapping[str, Any]) -> None:
    """Write ``payload`` to ``path`` via a private temporary file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    text = json.dumps(payload, indent=2, sort_keys=True)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
    except Exception:
        with suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise

    tmp_path.replace(path)


@contextmanager
def _exclusive_lock(path: Path) -> cabc.Iterator[None]:
    """Hold an exclusive lock on the sibling ``<path>.lock`` file."""
    lock_path = path.with_suffix(path.suffix + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        yield
    finally:
        os.close(fd)


def _read_json(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        msg = f"Failed to parse {path}: {exc}"
        raise ActuatorError(msg) from exc
    if not isinstance(payload, dict):
        msg = f"{path} must contain a JSON object"
        raise ActuatorError(msg)
    return payload


class JsonObjectStore:
    """Secrets and Infrastructure objects persisted as JSON documents.

    Parameters
    ----------
    root
        Base directory of the store.

    Examples
    --------
    >>> store = JsonObjectStore(Path("/tmp/store"))
    >>> store.get_secret("garden", "missing") is None
    True
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, kind: str, namespace: str, name: str) -> Path:
        return self.root / kind / namespace / f"{name}.json"

    def get_secret(self, namespace: str, name: str) -> dict[str, Any] | None:
        """Return the secret manifest stored for ``namespace/name``."""
        return _read_json(self._path("secrets", namespace, name))

    def put_secret(self, namespace: str, name: str, manifest: cabc.Mapping[str, Any]) -> None:
        """Store a secret manifest, replacing any previous one."""
        _write_json_atomic(self._path("secrets", namespace, name), manifest)

    def load_infrastructure(self, namespace: str, name: str) -> Infrastructure:
        """Load an Infrastructure object.

        Raises
        ------
        ActuatorError
            If the object does not exist or cannot be parsed.
        """
        payload = _read_json(self._path("infrastructures", namespace, name))
        if payload is None:
            msg = f"Infrastructure {namespace}/{name} not found"
            raise ActuatorError(msg)
        try:
            return Infrastructure.from_mapping(payload)
        except ValueError as exc:
            msg = f"Invalid Infrastructure {namespace}/{name}: {exc}"
            raise ActuatorError(msg) from exc

    def put_infrastructure(self, manifest: cabc.Mapping[str, Any]) -> None:
        """Store an Infrastructure manifest, initialising its resourceVersion."""
        payload = dict(manifest)
        metadata = dict(payload.get("metadata") or {})
        metadata.setdefault("resourceVersion", "1")
        payload["metadata"] = metadata
        path = self._path(
            "infrastructures", str(metadata["namespace"]), str(metadata["name"])
        )
        with _exclusive_lock(path):
            _write_json_atomic(path, payload)

    def patch_status(
        self, infra: Infrastructure, status: InfrastructureObjectStatus
    ) -> None:
        """Replace the stored status, guarded by ``infra.resource_version``.

        Raises
        ------
        StatusPersistenceConflictError
            If the stored object changed since ``infra`` was read or vanished.
        ActuatorError
            If the stored resourceVersion is not numeric.
        """
        path = self._path("infrastructures", infra.namespace, infra.name)
        with _exclusive_lock(path):
            payload = _read_json(path)
            if payload is None:
                msg = f"Infrastructure {infra.namespace}/{infra.name} no longer exists"
                raise StatusPersistenceConflictError(msg)
            metadata = dict(payload.get("metadata") or {})
            stored_version = metadata.get("resourceVersion")
            if (
                infra.resource_version is not None
                and str(stored_version) != infra.resource_version
            ):
                msg = (
                    f"Infrastructure {infra.namespace}/{infra.name} was modified "
                    f"(resourceVersion {stored_version}, expected {infra.resource_version})"
                )
                raise StatusPersistenceConflictError(msg)

            try:
                next_version = str(int(stored_version or 0) + 1)
            except (TypeError, ValueError) as exc:
                msg = (
                    f"Infrastructure {infra.namespace}/{infra.name} has a non-numeric "
                    f"resourceVersion {stored_version!r}"
                )
                raise ActuatorError(msg) from exc
            metadata["resourceVersion"] = next_version
            payload["metadata"] = metadata
            payload["status"] = status.to_mapping()
            _write_json_atomic(path, payload)
        infra.resource_version = next_version
        logger.debug(
            "Patched status of %s/%s at resourceVersion %s",
            infra.namespace,
            infra.name,
            next_version,
        )


__all__ = ["JsonObjectStore", "SecretReader", "StatusWriter"]
