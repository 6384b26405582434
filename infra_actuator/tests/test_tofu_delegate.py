"""Tests for the OpenTofu execution unit."""

from __future__ import annotations

import json
import os
import stat
import sys
import threading
from collections import abc as cabc
from datetime import timedelta
from pathlib import Path

import pytest

from infra_actuator._actuator_errors import (
    ApplyFailedError,
    OutputVariableMissingError,
    StateParseError,
    TofuExecutionError,
)
from infra_actuator._actuator_models import (
    Credentials,
    OperationContext,
    OwnerReference,
    RawState,
)
from infra_actuator._tofu_delegate import (
    CreateOrUpdateState,
    CreateState,
    TofuConfig,
    TofuDelegate,
    TofuDelegateFactory,
    TofuResult,
    run_tofu,
)

OWNER = OwnerReference(
    api_version="extensions.gardener.cloud/v1alpha1",
    kind="Infrastructure",
    name="infra",
    uid="uid-1",
)
CREDENTIALS = Credentials("accessKeyID", "accessKeySecret", "credentialsFile")


class FakeTofu:
    """Stand-in for ``run_tofu`` recording each invocation."""

    def __init__(self, results: cabc.Mapping[str, TofuResult] | None = None) -> None:
        self.calls: list[list[str]] = []
        self.envs: list[cabc.Mapping[str, str]] = []
        self.results = dict(results or {})

    def __call__(
        self,
        ctx: OperationContext,
        args: list[str],
        cwd: Path,
        env: cabc.Mapping[str, str] | None = None,
        *,
        binary: str = "tofu",
        deadline: float,
        grace: float,
    ) -> TofuResult:
        self.calls.append([binary, *args])
        self.envs.append(dict(env or {}))
        return self.results.get(
            args[0], TofuResult(success=True, stdout="ok", stderr="", return_code=0)
        )


@pytest.fixture
def module_dir(tmp_path: Path) -> Path:
    module = tmp_path / "module"
    module.mkdir()
    (module / "main.tf").write_text('resource "alicloud_vpc" "vpc" {}\n', encoding="utf-8")
    (module / "variables.tf").write_text('variable "vpc" {}\n', encoding="utf-8")
    (module / "README.md").write_text("not copied\n", encoding="utf-8")
    return module


@pytest.fixture
def factory(tmp_path: Path, module_dir: Path) -> TofuDelegateFactory:
    return TofuDelegateFactory(tmp_path / "work", module_dir)


@pytest.fixture
def fake_tofu(monkeypatch: pytest.MonkeyPatch) -> FakeTofu:
    fake = FakeTofu()
    monkeypatch.setattr("infra_actuator._tofu_delegate.run_tofu", fake)
    return fake


def _delegate(factory: TofuDelegateFactory, **overrides: object) -> TofuDelegate:
    config = TofuConfig(owner=OWNER, **overrides)  # type: ignore[arg-type]
    return factory.new_for_config("infra", "shoot--dev", "infra", config)


def _initialize(
    delegate: TofuDelegate,
    factory: TofuDelegateFactory,
    seed: CreateState | CreateOrUpdateState,
    credentials: Credentials | None = CREDENTIALS,
) -> TofuDelegate:
    initializer = factory.default_initializer(seed, {"vpc": {"create": True}}, credentials)
    return delegate.initialize_with(initializer)


def test_work_dir_is_keyed_by_identity(factory: TofuDelegateFactory, tmp_path: Path) -> None:
    delegate = _delegate(factory)
    assert delegate.work_dir == tmp_path / "work" / "shoot--dev" / "infra" / "infra"


def test_initialize_fresh_keeps_state_left_by_earlier_attempt(
    factory: TofuDelegateFactory,
) -> None:
    delegate = _delegate(factory)
    delegate.work_dir.mkdir(parents=True)
    delegate.state_path.write_text('{"resources": [{"type": "alicloud_vpc"}]}', encoding="utf-8")

    _initialize(delegate, factory, CreateState())

    assert delegate.state_path.read_text(encoding="utf-8") == (
        '{"resources": [{"type": "alicloud_vpc"}]}'
    ), "Fresh seed must not drop state of already-applied resources"
    assert delegate.is_state_empty() is False
    variables = json.loads((delegate.work_dir / "terraform.tfvars.json").read_text())
    assert variables == {"vpc": {"create": True}}, "Variables should be written"
    assert (delegate.work_dir / "main.tf").exists(), "Module sources should be copied"
    assert not (delegate.work_dir / "README.md").exists(), "Only module files are copied"


def test_initialize_fresh_without_state_starts_empty(factory: TofuDelegateFactory) -> None:
    delegate = _initialize(_delegate(factory), factory, CreateState())
    assert not delegate.state_path.exists(), "No state should be invented"
    assert delegate.is_state_empty() is True



def test_initialize_with_state_writes_state(factory: TofuDelegateFactory) -> None:
    delegate = _initialize(_delegate(factory), factory, CreateOrUpdateState(state="some data"))
    assert delegate.state_path.read_text(encoding="utf-8") == "some data"


def test_projected_token_mount_writes_private_credentials_file(
    factory: TofuDelegateFactory, fake_tofu: FakeTofu
) -> None:
    delegate = _initialize(_delegate(factory), factory, CreateState())
    delegate.apply(OperationContext())

    credentials_path = delegate.work_dir / "credentials"
    assert credentials_path.read_text(encoding="utf-8") == "credentialsFile"
    assert stat.S_IMODE(credentials_path.stat().st_mode) == 0o600, "File must be 0600"
    env = fake_tofu.envs[0]
    assert env["ALIBABA_CLOUD_CREDENTIALS_FILE"] == str(credentials_path)
    assert "TF_VAR_ACCESS_KEY_SECRET" not in env, "Keys should not leak into env"
    assert env["TF_LOG"] == "INFO", "Log level should be exported upper-cased"


def test_without_token_mount_credentials_use_variables(
    factory: TofuDelegateFactory, fake_tofu: FakeTofu
) -> None:
    delegate = _initialize(
        _delegate(factory, use_projected_token_mount=False, log_level="debug"),
        factory,
        CreateState(),
    )
    delegate.apply(OperationContext())

    env = fake_tofu.envs[0]
    assert env["TF_VAR_ACCESS_KEY_ID"] == "accessKeyID"
    assert env["TF_VAR_ACCESS_KEY_SECRET"] == "accessKeySecret"
    assert env["TF_LOG"] == "DEBUG"
    assert not (delegate.work_dir / "credentials").exists()


def test_apply_runs_init_then_apply(
    factory: TofuDelegateFactory, fake_tofu: FakeTofu
) -> None:
    delegate = _initialize(_delegate(factory, image="/opt/tofu"), factory, CreateState())

    delegate.apply(OperationContext())

    assert [call[:2] for call in fake_tofu.calls] == [
        ["/opt/tofu", "init"],
        ["/opt/tofu", "apply"],
    ], "init should precede apply"
    assert "-auto-approve" in fake_tofu.calls[1]
    assert "-var-file=terraform.tfvars.json" in fake_tofu.calls[1]
    record = json.loads((delegate.work_dir / "execution.json").read_text())
    assert record == {"owner": OWNER.to_mapping(), "pid": None}, "Owner should be recorded"


def test_apply_failure_carries_stderr(
    factory: TofuDelegateFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    fake = FakeTofu(
        {"apply": TofuResult(success=False, stdout="", stderr="Error: quota", return_code=1)}
    )
    monkeypatch.setattr("infra_actuator._tofu_delegate.run_tofu", fake)
    delegate = _initialize(_delegate(factory), factory, CreateState())

    with pytest.raises(ApplyFailedError, match="Error: quota"):
        delegate.apply(OperationContext())


class FakeClock:
    """Monotonic clock advanced by the fake engine."""

    def __init__(self) -> None:
        self.now = 0.0

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def _timed_engine(
    monkeypatch: pytest.MonkeyPatch, seconds_per_command: float
) -> list[tuple[str, float]]:
    clock = FakeClock()
    deadlines: list[tuple[str, float]] = []

    def engine(
        ctx: OperationContext,
        args: list[str],
        cwd: Path,
        env: cabc.Mapping[str, str] | None = None,
        *,
        binary: str = "tofu",
        deadline: float,
        grace: float,
    ) -> TofuResult:
        deadlines.append((args[0], deadline))
        clock.now += seconds_per_command
        return TofuResult(success=True, stdout="", stderr="", return_code=0)

    monkeypatch.setattr("infra_actuator._tofu_delegate.time", clock)
    monkeypatch.setattr("infra_actuator._tofu_delegate.run_tofu", engine)
    return deadlines


def test_init_and_apply_share_one_deadline(
    factory: TofuDelegateFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    deadlines = _timed_engine(monkeypatch, seconds_per_command=600)
    delegate = _initialize(_delegate(factory), factory, CreateState())

    delegate.apply(OperationContext())

    assert deadlines == [("init", 900.0), ("apply", 300.0)], (
        "apply should only get the time init left over"
    )


def test_apply_not_started_once_deadline_is_spent(
    factory: TofuDelegateFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    deadlines = _timed_engine(monkeypatch, seconds_per_command=900)
    delegate = _initialize(_delegate(factory), factory, CreateState())

    with pytest.raises(ApplyFailedError, match="deadline"):
        delegate.apply(OperationContext())

    assert [command for command, _ in deadlines] == ["init"], "apply must not start"
    record = json.loads((delegate.work_dir / "execution.json").read_text())
    assert record["pid"] is None, "Execution record should be released"


def test_unusable_work_root_is_reported(tmp_path: Path, module_dir: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    factory = TofuDelegateFactory(blocker, module_dir)

    with pytest.raises(TofuExecutionError, match="Failed to prepare OpenTofu work dir"):
        _initialize(_delegate(factory), factory, CreateState())


def test_apply_requires_initialization(factory: TofuDelegateFactory) -> None:
    delegate = _delegate(factory)
    delegate.work_dir.mkdir(parents=True)
    with pytest.raises(TofuExecutionError, match="not initialized"):
        delegate.apply(OperationContext())


def test_foreign_owner_is_refused(
    factory: TofuDelegateFactory, fake_tofu: FakeTofu
) -> None:
    delegate = _initialize(_delegate(factory), factory, CreateState())
    foreign = {"owner": {"uid": "someone-else"}, "pid": None}
    (delegate.work_dir / "execution.json").write_text(json.dumps(foreign), encoding="utf-8")

    with pytest.raises(TofuExecutionError, match="someone-else"):
        delegate.apply(OperationContext())
    assert fake_tofu.calls == [], "Engine must not run in a foreign work dir"


def test_stale_artifacts_are_removed(
    factory: TofuDelegateFactory, fake_tofu: FakeTofu
) -> None:
    delegate = _initialize(
        _delegate(factory, deadline_cleaning=timedelta(seconds=1)), factory, CreateState()
    )
    lock = delegate.work_dir / ".terraform.tfstate.lock.info"
    lock.write_text("{}", encoding="utf-8")

    delegate.apply(OperationContext())

    assert not lock.exists(), "Stale lock info should be cleaned before running"


def test_destroy_with_empty_state_is_noop(
    factory: TofuDelegateFactory, fake_tofu: FakeTofu
) -> None:
    delegate = _initialize(_delegate(factory), factory, CreateState())

    delegate.destroy(OperationContext())

    assert fake_tofu.calls == [], "Nothing to destroy means no engine run"
    assert not delegate.work_dir.exists(), "Work dir should be removed"


def test_destroy_runs_engine_and_removes_work_dir(
    factory: TofuDelegateFactory, fake_tofu: FakeTofu, eip_state_text: str
) -> None:
    delegate = _initialize(
        _delegate(factory), factory, CreateOrUpdateState(state=eip_state_text)
    )

    delegate.destroy(OperationContext())

    assert [call[1] for call in fake_tofu.calls] == ["init", "destroy"]
    assert not delegate.work_dir.exists(), "Work dir should be removed after destroy"


def test_outputs_are_read_from_state(
    factory: TofuDelegateFactory, eip_state_text: str
) -> None:
    delegate = _initialize(
        _delegate(factory), factory, CreateOrUpdateState(state=eip_state_text)
    )

    outputs = delegate.get_state_output_variables("vpc_id", "sg_id")

    assert outputs == {"vpc_id": "vpcID", "sg_id": "sgID"}


def test_missing_outputs_are_named(factory: TofuDelegateFactory) -> None:
    delegate = _initialize(
        _delegate(factory),
        factory,
        CreateOrUpdateState(state='{"outputs": {"vpc_id": {"value": "vpc-1"}}}'),
    )

    with pytest.raises(OutputVariableMissingError, match="vpc_cidr, sg_id"):
        delegate.get_state_output_variables("vpc_id", "vpc_cidr", "sg_id")


def test_outputs_without_state_are_missing(factory: TofuDelegateFactory) -> None:
    with pytest.raises(OutputVariableMissingError, match="vpc_id"):
        _delegate(factory).get_state_output_variables("vpc_id")


def test_unparsable_state_raises(factory: TofuDelegateFactory) -> None:
    delegate = _initialize(_delegate(factory), factory, CreateOrUpdateState(state="{oops"))
    with pytest.raises(StateParseError):
        delegate.get_state_output_variables("vpc_id")


def test_raw_state_round_trip(factory: TofuDelegateFactory, eip_state_text: str) -> None:
    delegate = _delegate(factory)
    assert delegate.get_raw_state() == RawState(), "No state should give empty data"
    assert delegate.is_state_empty() is True

    _initialize(delegate, factory, CreateOrUpdateState(state=eip_state_text))

    assert delegate.get_raw_state() == RawState(data=eip_state_text, encoding="none")
    assert delegate.is_state_empty() is False


def test_run_tofu_captures_output(tmp_path: Path) -> None:
    result = run_tofu(
        OperationContext(),
        ["-c", "print('ok')"],
        tmp_path,
        dict(os.environ),
        binary=sys.executable,
        deadline=30,
        grace=1,
    )
    assert result.success is True, "Command should succeed"
    assert result.stdout.strip() == "ok"


def test_run_tofu_reports_failure(tmp_path: Path) -> None:
    result = run_tofu(
        OperationContext(),
        ["-c", "import sys; sys.stderr.write('boom'); sys.exit(3)"],
        tmp_path,
        dict(os.environ),
        binary=sys.executable,
        deadline=30,
        grace=1,
    )
    assert result.success is False
    assert result.return_code == 3
    assert result.stderr == "boom"


def test_run_tofu_enforces_deadline(tmp_path: Path) -> None:
    with pytest.raises(ApplyFailedError, match="deadline"):
        run_tofu(
            OperationContext(),
            ["-c", "import time; time.sleep(30)"],
            tmp_path,
            dict(os.environ),
            binary=sys.executable,
            deadline=0.2,
            grace=2,
        )


def test_run_tofu_honours_cancellation(tmp_path: Path) -> None:
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(ApplyFailedError, match="cancelled"):
        run_tofu(
            OperationContext(cancel=cancel),
            ["-c", "import time; time.sleep(30)"],
            tmp_path,
            dict(os.environ),
            binary=sys.executable,
            deadline=60,
            grace=2,
        )


def test_run_tofu_missing_binary(tmp_path: Path) -> None:
    with pytest.raises(TofuExecutionError, match="not found"):
        run_tofu(
            OperationContext(),
            ["version"],
            tmp_path,
            binary="definitely-not-a-tofu-binary",
            deadline=1,
            grace=1,
        )


@pytest.mark.parametrize("arg", ["bad\narg", "bad\x00arg"])
def test_run_tofu_rejects_control_characters(tmp_path: Path, arg: str) -> None:
    with pytest.raises(ValueError, match="control character"):
        run_tofu(OperationContext(), [arg], tmp_path, binary="tofu", deadline=1, grace=1)
