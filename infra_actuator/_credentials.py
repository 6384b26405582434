"""Resolve Alicloud credentials from a referenced secret."""

from __future__ import annotations

import base64
import binascii
from collections import abc as cabc
from typing import Any

from infra_actuator._actuator_errors import (
    CredentialMalformedError,
    CredentialNotFoundError,
)
from infra_actuator._actuator_models import Credentials, SecretReference
from infra_actuator._object_store import SecretReader

ACCESS_KEY_ID = "accessKeyID"
ACCESS_KEY_SECRET = "accessKeySecret"
CREDENTIALS_FILE = "credentialsFile"


def _decode_secret_data(
    ref: SecretReference, manifest: cabc.Mapping[str, Any]
) -> dict[str, str]:
    """Merge base64 ``data`` with plain ``stringData``; plain values win."""
    values: dict[str, str] = {}
    for key, encoded in (manifest.get("data") or {}).items():
        try:
            values[key] = base64.b64decode(str(encoded), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            msg = f"secret {ref.namespace}/{ref.name} has undecodable key {key!r}"
            raise CredentialMalformedError(msg) from exc
    for key, value in (manifest.get("stringData") or {}).items():
        values[key] = str(value)
    return values


def resolve_credentials(store: SecretReader, ref: SecretReference) -> Credentials:
    """Read the secret behind ``ref`` and extract Alicloud credentials.

    Every call reads the secret again; the secret may rotate between two
    resolutions within the same reconcile attempt.

    Parameters
    ----------
    store
        Secret source.
    ref
        Namespaced secret locator from the infrastructure spec.

    Returns
    -------
    Credentials
        Access key pair and the optional credentials file blob.

    Raises
    ------
    CredentialNotFoundError
        If the secret does not exist.
    CredentialMalformedError
        If ``accessKeyID`` or ``accessKeySecret`` is missing or empty.

    Examples
    --------
    >>> class Store:
    ...     def get_secret(self, namespace, name):
    ...         return {"stringData": {"accessKeyID": "id", "accessKeySecret": "s"}}
    >>> resolve_credentials(Store(), SecretReference("garden", "cloud")).credentials_file is None
    True
    """
    manifest = store.get_secret(ref.namespace, ref.name)
    if manifest is None:
        msg = f"secret {ref.namespace}/{ref.name} not found"
        raise CredentialNotFoundError(msg)

    values = _decode_secret_data(ref, manifest)
    missing = [key for key in (ACCESS_KEY_ID, ACCESS_KEY_SECRET) if not values.get(key)]
    if missing:
        msg = f"secret {ref.namespace}/{ref.name} is missing {', '.join(missing)}"
        raise CredentialMalformedError(msg)

    return Credentials(
        access_key_id=values[ACCESS_KEY_ID],
        access_key_secret=values[ACCESS_KEY_SECRET],
        credentials_file=values.get(CREDENTIALS_FILE) or None,
    )
