"""OpenTofu execution units for infrastructure provisioning.

A :class:`TofuDelegate` owns one working directory identified by
``(purpose, namespace, name)``. Its lifecycle is:

1. construction with a single :class:`TofuConfig` value;
2. seeding through :meth:`TofuDelegate.initialize_with` (fresh or restored
   state, variables, credentials);
3. :meth:`TofuDelegate.apply` or :meth:`TofuDelegate.destroy`;
4. reading outputs and the raw state back for status derivation.

Engine runs are bounded by two deadlines. The cleaning deadline bounds the
wait for a previous execution in the same directory to finish and the removal
of its leftovers. The execution deadline bounds one execution, ``init`` plus
the command that follows it. On expiry or cancellation the process receives
SIGTERM, gets the termination grace period, and is then killed.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import time
from collections import abc as cabc
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Protocol, TypeAlias

from plumbum import CommandNotFound, local

from infra_actuator._actuator_errors import (
    ApplyFailedError,
    OutputVariableMissingError,
    TofuExecutionError,
)
from infra_actuator._actuator_models import (
    Credentials,
    OperationContext,
    OwnerReference,
    RawState,
)
from infra_actuator._state_reader import output_value, parse_state_document

logger = logging.getLogger(__name__)

TERRAFORMER_PURPOSE = "infra"
STATE_FILE = "terraform.tfstate"
VARIABLES_FILE = "terraform.tfvars.json"
EXECUTION_FILE = "execution.json"
CREDENTIALS_FILE = "credentials"
STALE_ARTIFACTS = (".terraform.tfstate.lock.info", "tfplan", "crash.log")
MODULE_PATTERNS = ("*.tf", "*.tf.json", ".terraform.lock.hcl")

_POLL_INTERVAL_SECONDS = 0.5


@dataclass(frozen=True, slots=True)
class TofuResult:
    """Result of an OpenTofu command execution.

    Attributes
    ----------
    success
        Whether the command exited with status code ``0``.
    stdout
        Captured standard output.
    stderr
        Captured standard error.
    return_code
        Process exit status code returned by OpenTofu.

    Examples
    --------
    >>> TofuResult(success=True, stdout="ok", stderr="", return_code=0).success
    True
    """

    success: bool
    stdout: str
    stderr: str
    return_code: int


@dataclass(frozen=True, slots=True)
class TofuConfig:
    """Configuration applied to an execution unit before it runs.

    Attributes
    ----------
    owner
        Back-reference to the Infrastructure object owning the unit.
    image
        OpenTofu executable used for every engine command.
    use_projected_token_mount
        Hand credentials to the engine as a file instead of variables.
    log_level
        Engine log verbosity, exported as ``TF_LOG``.
    termination_grace_period
        Time between SIGTERM and SIGKILL when an execution is aborted.
    deadline_cleaning
        Bound on cleaning up a previous execution.
    deadline_execution
        Bound on the new execution, shared by ``init`` and its command.
    env
        Extra environment variables for the engine.
    """

    owner: OwnerReference
    image: str = "tofu"
    use_projected_token_mount: bool = True
    log_level: str = "info"
    termination_grace_period: timedelta = timedelta(seconds=630)
    deadline_cleaning: timedelta = timedelta(minutes=5)
    deadline_execution: timedelta = timedelta(minutes=15)
    env: cabc.Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CreateState:
    """Seed an execution with an empty baseline state."""


@dataclass(frozen=True, slots=True)
class CreateOrUpdateState:
    """Seed an execution with previously persisted state."""

    state: str


StateSeed: TypeAlias = CreateState | CreateOrUpdateState


@dataclass(frozen=True, slots=True)
class TofuInitializer:
    """Everything written into the unit before the engine runs."""

    seed: StateSeed
    variables: cabc.Mapping[str, Any]
    credentials: Credentials | None = None


class IaCDelegate(Protocol):
    """Execution unit contract consumed by the actuator."""

    def initialize_with(self, initializer: TofuInitializer) -> IaCDelegate: ...

    def apply(self, ctx: OperationContext) -> None: ...

    def destroy(self, ctx: OperationContext) -> None: ...

    def get_state_output_variables(self, *keys: str) -> dict[str, str]: ...

    def get_raw_state(self) -> RawState: ...

    def is_state_empty(self) -> bool: ...


class IaCDelegateFactory(Protocol):
    """Creates execution units and their initializers."""

    def new_for_config(
        self, purpose: str, namespace: str, name: str, config: TofuConfig
    ) -> IaCDelegate: ...

    def default_initializer(
        self,
        seed: StateSeed,
        variables: cabc.Mapping[str, Any],
        credentials: Credentials | None = None,
    ) -> TofuInitializer: ...


def _validate_command_args(args: list[str]) -> None:
    """Validate OpenTofu CLI arguments for safe execution."""
    for arg in args:
        if not isinstance(arg, str):
            msg = f"OpenTofu argument must be a string, got {type(arg).__name__}"
            raise TypeError(msg)
        if any(char in arg for char in ("\x00", "\n", "\r")):
            msg = "OpenTofu argument contains an invalid control character"
            raise ValueError(msg)


def _to_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _stop(proc: subprocess.Popen[Any], grace: float) -> None:
    """Terminate ``proc``, escalating to SIGKILL after ``grace`` seconds."""
    proc.terminate()
    try:
        proc.communicate(timeout=grace)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.communicate()


def run_tofu(
    ctx: OperationContext,
    args: list[str],
    cwd: Path,
    env: cabc.Mapping[str, str] | None = None,
    *,
    binary: str = "tofu",
    deadline: float,
    grace: float,
) -> TofuResult:
    """Execute an OpenTofu command bounded by ``deadline`` seconds.

    Parameters
    ----------
    ctx
        Operation context; cancellation aborts the command.
    args
        Command arguments (without the binary).
    cwd
        Working directory for the command.
    env
        Complete environment for the command.
    binary
        OpenTofu executable.
    deadline
        Seconds the command may run.
    grace
        Seconds between SIGTERM and SIGKILL when aborting.

    Returns
    -------
    TofuResult
        Result containing success status, output, and return code.

    Raises
    ------
    ApplyFailedError
        If the deadline expires or the context is cancelled.
    TofuExecutionError
        If the binary cannot be found.
    """
    _validate_command_args([binary, *args])
    try:
        command = local[binary]
    except CommandNotFound as exc:
        msg = f"OpenTofu binary {binary!r} not found on PATH"
        raise TofuExecutionError(msg) from exc

    proc = command[args].popen(
        cwd=str(cwd),
        env=dict(env) if env is not None else None,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    expires_at = time.monotonic() + deadline
    while True:
        try:
            stdout, stderr = proc.communicate(timeout=_POLL_INTERVAL_SECONDS)
        except subprocess.TimeoutExpired:
            if ctx.cancelled():
                _stop(proc, grace)
                msg = f"{binary} {args[0]} cancelled"
                raise ApplyFailedError(msg) from None
            if time.monotonic() >= expires_at:
                _stop(proc, grace)
                msg = f"{binary} {args[0]} exceeded its deadline of {deadline:.0f}s"
                raise ApplyFailedError(msg) from None
        else:
            break

    return TofuResult(
        success=proc.returncode == 0,
        stdout=_to_text(stdout),
        stderr=_to_text(stderr),
        return_code=proc.returncode,
    )


def write_tfvars(path: Path, variables: cabc.Mapping[str, Any]) -> None:
    """Write variables to a ``tfvars.json`` file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(variables, indent=2, sort_keys=True), encoding="utf-8")


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class TofuDelegate:
    """One OpenTofu execution unit backed by a local working directory.

    Parameters
    ----------
    purpose, namespace, name
        Identity of the unit; together they select the working directory.
    config
        Execution configuration.
    work_root
        Base directory for all units.
    module_dir
        OpenTofu module copied into the working directory when seeding.
    """

    def __init__(
        self,
        purpose: str,
        namespace: str,
        name: str,
        config: TofuConfig,
        *,
        work_root: Path,
        module_dir: Path | None = None,
    ) -> None:
        self.purpose = purpose
        self.namespace = namespace
        self.name = name
        self.config = config
        self.work_dir = work_root / namespace / name / purpose
        self._module_dir = module_dir
        self._env: dict[str, str] | None = None

    @property
    def state_path(self) -> Path:
        return self.work_dir / STATE_FILE

    def _base_env(self) -> dict[str, str]:
        return {
            **os.environ,
            **self.config.env,
            "TF_LOG": self.config.log_level.upper(),
            "TF_IN_AUTOMATION": "1",
            "TF_INPUT": "0",
        }

    def _credentials_env(self, credentials: Credentials | None) -> dict[str, str]:
        if credentials is None:
            return {}
        if self.config.use_projected_token_mount and credentials.credentials_file:
            path = self.work_dir / CREDENTIALS_FILE
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(credentials.credentials_file)
            return {"ALIBABA_CLOUD_CREDENTIALS_FILE": str(path)}
        return {
            "TF_VAR_ACCESS_KEY_ID": credentials.access_key_id,
            "TF_VAR_ACCESS_KEY_SECRET": credentials.access_key_secret,
        }

    def _copy_module(self) -> None:
        if self._module_dir is None:
            return
        if not self._module_dir.is_dir():
            msg = f"OpenTofu module directory {self._module_dir} does not exist"
            raise TofuExecutionError(msg)
        for pattern in MODULE_PATTERNS:
            for source in self._module_dir.glob(pattern):
                shutil.copy2(source, self.work_dir / source.name)

    def initialize_with(self, initializer: TofuInitializer) -> TofuDelegate:
        """Seed the working directory for the next execution.

        ``CreateState`` keeps any state a previous, unrecorded execution left
        in the directory and otherwise starts from none.
        ``CreateOrUpdateState`` writes the given state so already-provisioned
        resources are updated instead of re-created.

        Raises
        ------
        TofuExecutionError
            If the working directory cannot be prepared.
        """
        try:
            self.work_dir.mkdir(parents=True, exist_ok=True)
            self._copy_module()
            write_tfvars(self.work_dir / VARIABLES_FILE, initializer.variables)

            match initializer.seed:
                case CreateOrUpdateState(state=state) if state.strip():
                    self.state_path.write_text(state, encoding="utf-8")
                    logger.debug("Seeded %s with persisted state", self.work_dir)
                case _ if self.state_path.exists():
                    logger.info("Resuming from the state left in %s", self.work_dir)
                case _:
                    logger.debug("Seeded %s with an empty state", self.work_dir)

            credentials_env = self._credentials_env(initializer.credentials)
        except OSError as exc:
            msg = f"Failed to prepare OpenTofu work dir {self.work_dir}: {exc}"
            raise TofuExecutionError(msg) from exc

        self._env = {**self._base_env(), **credentials_env}
        return self

    def _read_execution(self) -> dict[str, Any]:
        path = self.work_dir / EXECUTION_FILE
        if not path.exists():
            return {}
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable execution record %s", path)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _write_execution(self, *, pid: int | None) -> None:
        record = {"owner": self.config.owner.to_mapping(), "pid": pid}
        path = self.work_dir / EXECUTION_FILE
        try:
            path.write_text(json.dumps(record, indent=2), encoding="utf-8")
        except OSError as exc:
            msg = f"Failed to record execution in {path}: {exc}"
            raise TofuExecutionError(msg) from exc

    def _clean_previous_execution(self) -> None:
        """Wait for a previous run in this directory and drop its leftovers."""
        record = self._read_execution()
        owner_uid = (record.get("owner") or {}).get("uid")
        if owner_uid and self.config.owner.uid and owner_uid != self.config.owner.uid:
            msg = (
                f"{self.work_dir} belongs to owner {owner_uid}, "
                f"not {self.config.owner.uid}"
            )
            raise TofuExecutionError(msg)

        expires_at = time.monotonic() + self.config.deadline_cleaning.total_seconds()
        pid = record.get("pid")
        while isinstance(pid, int) and pid != os.getpid() and _pid_alive(pid):
            if time.monotonic() >= expires_at:
                msg = (
                    f"previous execution (pid {pid}) in {self.work_dir} still running "
                    f"after {self.config.deadline_cleaning}"
                )
                raise TofuExecutionError(msg)
            time.sleep(_POLL_INTERVAL_SECONDS)

        for artifact in STALE_ARTIFACTS:
            (self.work_dir / artifact).unlink(missing_ok=True)

    def _run(self, ctx: OperationContext, args: list[str], deadline: float) -> TofuResult:
        if self._env is None:
            msg = f"{self.work_dir} was not initialized before execution"
            raise TofuExecutionError(msg)
        logger.info("Running %s %s in %s", self.config.image, args[0], self.work_dir)
        return run_tofu(
            ctx,
            args,
            self.work_dir,
            self._env,
            binary=self.config.image,
            deadline=deadline,
            grace=self.config.termination_grace_period.total_seconds(),
        )

    def _execute(self, ctx: OperationContext, command: list[str]) -> None:
        """Run ``init`` then ``command``, recording ownership meanwhile.

        Both commands share one execution deadline.
        """
        self._clean_previous_execution()
        self._write_execution(pid=os.getpid())
        expires_at = time.monotonic() + self.config.deadline_execution.total_seconds()
        try:
            for args in (["init", "-input=false", "-no-color"], command):
                remaining = expires_at - time.monotonic()
                if remaining <= 0:
                    msg = (
                        f"tofu {args[0]} not started: execution exceeded its deadline "
                        f"of {self.config.deadline_execution}"
                    )
                    raise ApplyFailedError(msg)
                result = self._run(ctx, args, remaining)
                if not result.success:
                    msg = (
                        f"tofu {args[0]} failed "
                        f"(cwd={self.work_dir}, return_code={result.return_code}): "
                        f"{result.stderr}"
                    )
                    raise ApplyFailedError(msg)
        finally:
            self._write_execution(pid=None)

    def apply(self, ctx: OperationContext) -> None:
        """Converge the infrastructure to the seeded variables.

        Raises
        ------
        ApplyFailedError
            If ``init`` or ``apply`` fail, time out, or are cancelled.
        """
        self._execute(
            ctx,
            [
                "apply",
                "-input=false",
                "-auto-approve",
                "-no-color",
                f"-var-file={VARIABLES_FILE}",
            ],
        )

    def destroy(self, ctx: OperationContext) -> None:
        """Tear down everything recorded in the state and drop the unit.

        An empty state means nothing was provisioned; the call then only
        removes the working directory.
        """
        if self.is_state_empty():
            logger.info("State of %s is empty; nothing to destroy", self.work_dir)
        else:
            self._execute(
                ctx,
                [
                    "destroy",
                    "-input=false",
                    "-auto-approve",
                    "-no-color",
                    f"-var-file={VARIABLES_FILE}",
                ],
            )
        shutil.rmtree(self.work_dir, ignore_errors=True)

    def _state_document(self) -> dict[str, Any]:
        return parse_state_document(self.get_raw_state())

    def get_state_output_variables(self, *keys: str) -> dict[str, str]:
        """Return the requested outputs of the current state.

        Raises
        ------
        OutputVariableMissingError
            If any requested key is absent.
        StateParseError
            If the state cannot be parsed.
        """
        outputs = self._state_document().get("outputs") or {}
        values: dict[str, str] = {}
        missing: list[str] = []
        for key in keys:
            value = output_value(outputs, key)
            if value is None:
                missing.append(key)
            else:
                values[key] = value
        if missing:
            msg = f"OpenTofu outputs missing in {self.work_dir}: {', '.join(missing)}"
            raise OutputVariableMissingError(msg)
        return values

    def get_raw_state(self) -> RawState:
        """Return the current state, empty when none exists."""
        if not self.state_path.exists():
            return RawState()
        return RawState(data=self.state_path.read_text(encoding="utf-8"), encoding="none")

    def is_state_empty(self) -> bool:
        return not self._state_document().get("resources")


class TofuDelegateFactory:
    """Create :class:`TofuDelegate` units rooted at ``work_root``."""

    def __init__(self, work_root: Path, module_dir: Path | None = None) -> None:
        self.work_root = work_root
        self.module_dir = module_dir

    def new_for_config(
        self, purpose: str, namespace: str, name: str, config: TofuConfig
    ) -> TofuDelegate:
        return TofuDelegate(
            purpose,
            namespace,
            name,
            config,
            work_root=self.work_root,
            module_dir=self.module_dir,
        )

    def default_initializer(
        self,
        seed: StateSeed,
        variables: cabc.Mapping[str, Any],
        credentials: Credentials | None = None,
    ) -> TofuInitializer:
        return TofuInitializer(seed=seed, variables=variables, credentials=credentials)


__all__ = [
    "TERRAFORMER_PURPOSE",
    "CreateOrUpdateState",
    "CreateState",
    "IaCDelegate",
    "IaCDelegateFactory",
    "StateSeed",
    "TofuConfig",
    "TofuDelegate",
    "TofuDelegateFactory",
    "TofuInitializer",
    "TofuResult",
    "run_tofu",
    "write_tfvars",
]
