"""Exception hierarchy for the infrastructure actuator.

Every failure the actuator can surface derives from :class:`ActuatorError` so
callers driving the reconcile loop can catch a single base error and schedule
a retry. No error is retried internally.

Examples
--------
>>> raise ApplyFailedError("tofu apply failed: exit status 1")
"""

from __future__ import annotations


class ActuatorError(Exception):
    """Base error for infrastructure actuator operations.

    Parameters
    ----------
    message
        Human-readable error message describing the failure.

    Examples
    --------
    >>> raise ActuatorError("unexpected actuator failure")
    """


class CredentialNotFoundError(ActuatorError):
    """Raised when the referenced credentials secret does not exist."""


class CredentialMalformedError(ActuatorError):
    """Raised when the credentials secret lacks a required key.

    Examples
    --------
    >>> raise CredentialMalformedError("secret garden/cloud is missing accessKeyID")
    """


class ClientConstructionFailedError(ActuatorError):
    """Raised when a region-scoped cloud client cannot be built."""


class CloudCommandError(ActuatorError):
    """Raised when an ``aliyun`` CLI invocation fails or returns bad JSON."""


class IAMPrerequisiteFailedError(CloudCommandError):
    """Raised when a RAM service-linked role lookup or creation fails."""


class ApplyFailedError(ActuatorError):
    """Raised when an OpenTofu run does not converge.

    Parameters
    ----------
    message
        Human-readable error message, including the engine's stderr verbatim.

    Examples
    --------
    >>> raise ApplyFailedError("tofu apply failed (return_code=1): boom")
    """


class TofuExecutionError(ApplyFailedError):
    """Raised when an execution unit cannot be prepared or cleaned up."""


class OutputVariableMissingError(ActuatorError):
    """Raised when a requested OpenTofu output variable is absent."""


class StateParseError(ActuatorError):
    """Raised when the OpenTofu state document cannot be parsed."""


class InvalidProviderConfigError(ActuatorError):
    """Raised when an Infrastructure's ``providerConfig`` cannot be decoded."""


class StatusPersistenceConflictError(ActuatorError):
    """Raised when the status write loses an optimistic-concurrency race.

    Examples
    --------
    >>> raise StatusPersistenceConflictError("resourceVersion 3 is stale")
    """


__all__ = [
    "ActuatorError",
    "ApplyFailedError",
    "ClientConstructionFailedError",
    "CloudCommandError",
    "CredentialMalformedError",
    "CredentialNotFoundError",
    "IAMPrerequisiteFailedError",
    "InvalidProviderConfigError",
    "OutputVariableMissingError",
    "StateParseError",
    "StatusPersistenceConflictError",
    "TofuExecutionError",
]
