from pathlib import Path

import pytest
from conftest import snapshot, write_crate

from contractforge.backends.inprocess import InProcessBackend
from contractforge.config import BuildOptions
from contractforge.errors import (
    EnvironmentReleaseError,
    ErrorCode,
    ExitCode,
    ForgeError,
    HarvestFailure,
    ImageNotFound,
    RuntimeUnavailable,
    StageFailure,
    StageTimeout,
)
from contractforge.models import ExecResult, MountPlan, PipelineStage, PipelineState
from contractforge.observability import StructuredLogger
from contractforge.pipeline import PipelineExecutor
from contractforge.toolchain import resolve
from contractforge.workspace import bind

SUCCESS_STATES = (
    PipelineState.PROVISIONING,
    PipelineState.COMPILING,
    PipelineState.STRIPPING,
    PipelineState.OPTIMIZING,
    PipelineState.HARVESTED,
)


def _plan(source: Path, tmp_path: Path) -> MountPlan:
    return bind(source, tmp_path / "out")


def _run(
    backend: InProcessBackend,
    plan: MountPlan,
    *,
    options: BuildOptions | None = None,
    logger: StructuredLogger | None = None,
):
    executor = PipelineExecutor(
        backend=backend,
        options=options or BuildOptions(),
        logger=logger or StructuredLogger(),
    )
    return executor.run(resolve(None), plan)


def _workspace(tmp_path: Path, *names: str) -> Path:
    root = tmp_path / "ws"
    root.mkdir()
    members = ", ".join(f'"contracts/{name}"' for name in names)
    (root / "Cargo.toml").write_text(f"[workspace]\nmembers = [{members}]\n")
    for name in names:
        write_crate(root / "contracts" / name, f'[package]\nname = "{name}"\nversion = "0.1.0"\n')
    return root


def test_successful_build_harvests_named_contract(
    contract_source: Path,
    tmp_path: Path,
    inprocess_backend: InProcessBackend,
) -> None:
    plan = _plan(contract_source, tmp_path)

    outcome = _run(inprocess_backend, plan)

    assert outcome.ok
    assert outcome.exit_code == 0
    assert outcome.produced_artifacts == ("hello_contract.wasm",)
    assert outcome.stage_failed is None
    assert outcome.states == SUCCESS_STATES
    assert sorted(path.name for path in plan.host_destination.iterdir()) == ["hello_contract.wasm"]
    data = (plan.host_destination / "hello_contract.wasm").read_bytes()
    assert data == b"\0asmhello-contract|wasm-snip|wasm-opt"
    assert outcome.artifacts[0].size == len(data)
    assert len(outcome.artifacts[0].sha256) == 64


def test_stage_commands_use_fixed_paths_and_run_in_order(
    contract_source: Path,
    tmp_path: Path,
    inprocess_backend: InProcessBackend,
) -> None:
    _run(inprocess_backend, _plan(contract_source, tmp_path))

    programs = [argv[0] for argv in inprocess_backend.executed()]
    assert programs.index("cargo") < programs.index("wasm-snip") < programs.index("wasm-opt")
    (cargo,) = inprocess_backend.executed("cargo")
    assert cargo[:5] == ("cargo", "build", "--target", "wasm32-unknown-unknown", "--release")
    assert "--locked" not in cargo
    (snip,) = inprocess_backend.executed("wasm-snip")
    assert snip == (
        "wasm-snip",
        "/build/target/wasm32-unknown-unknown/release/hello_contract.wasm",
        "--output",
        "/build/stripped/hello_contract.wasm",
        "--snip-rust-fmt-code",
        "--snip-rust-panicking-code",
    )
    (opt,) = inprocess_backend.executed("wasm-opt")
    assert opt[1:3] == ("-Oz", "--dce")


def test_locked_option_reaches_compiler(
    contract_source: Path,
    tmp_path: Path,
    inprocess_backend: InProcessBackend,
) -> None:
    _run(inprocess_backend, _plan(contract_source, tmp_path), options=BuildOptions(locked=True))

    (cargo,) = inprocess_backend.executed("cargo")
    assert "--locked" in cargo


def test_source_tree_is_unchanged_by_a_build(
    contract_source: Path,
    tmp_path: Path,
    inprocess_backend: InProcessBackend,
) -> None:
    before = snapshot(contract_source)

    outcome = _run(inprocess_backend, _plan(contract_source, tmp_path))

    assert outcome.ok
    assert snapshot(contract_source) == before


@pytest.mark.parametrize(
    ("program", "stage"),
    [
        ("cargo", PipelineStage.COMPILE),
        ("wasm-snip", PipelineStage.STRIP),
        ("mv", None),
    ],
)
def test_source_tree_is_unchanged_by_a_failed_build(
    contract_source: Path,
    tmp_path: Path,
    inprocess_backend: InProcessBackend,
    program: str,
    stage: PipelineStage | None,
) -> None:
    inprocess_backend.script(program, ExecResult(exit_code=1, output=f"{program}: failed"))
    before = snapshot(contract_source)

    outcome = _run(inprocess_backend, _plan(contract_source, tmp_path))

    assert not outcome.ok
    assert outcome.stage_failed is stage
    assert snapshot(contract_source) == before


def test_compile_failure_reports_compiler_output(
    contract_source: Path,
    tmp_path: Path,
    inprocess_backend: InProcessBackend,
) -> None:
    inprocess_backend.script(
        "cargo",
        ExecResult(exit_code=101, output="error[E0425]: cannot find value `x` in this scope"),
    )
    plan = _plan(contract_source, tmp_path)

    outcome = _run(inprocess_backend, plan)

    assert not outcome.ok
    assert outcome.stage_failed is PipelineStage.COMPILE
    assert "E0425" in outcome.diagnostic_text
    assert outcome.exit_code == ExitCode.COMPILE_FAILED
    assert outcome.final_state is PipelineState.FAILED
    assert outcome.states == (
        PipelineState.PROVISIONING,
        PipelineState.COMPILING,
        PipelineState.FAILED,
    )
    assert list(plan.host_destination.iterdir()) == []
    assert inprocess_backend.executed("wasm-snip") == []
    assert inprocess_backend.release_count == 1


def test_compile_without_artifacts_is_a_compile_failure(
    contract_source: Path,
    tmp_path: Path,
) -> None:
    backend = InProcessBackend(silent_tools=frozenset({"cargo"}))

    outcome = _run(backend, _plan(contract_source, tmp_path))

    assert outcome.stage_failed is PipelineStage.COMPILE
    assert isinstance(outcome.error, StageFailure)
    assert "no WebAssembly artifacts" in outcome.error.message
    assert backend.executed("wasm-snip") == []


def test_strip_failure_leaves_destination_empty(
    contract_source: Path,
    tmp_path: Path,
    inprocess_backend: InProcessBackend,
) -> None:
    inprocess_backend.script("wasm-snip", ExecResult(exit_code=1, output="snip: invalid module"))
    plan = _plan(contract_source, tmp_path)

    outcome = _run(inprocess_backend, plan)

    assert outcome.stage_failed is PipelineStage.STRIP
    assert outcome.exit_code == ExitCode.STRIP_FAILED
    assert "invalid module" in outcome.diagnostic_text
    assert outcome.produced_artifacts == ()
    assert list(plan.host_destination.iterdir()) == []
    assert inprocess_backend.executed("wasm-opt") == []
    assert inprocess_backend.release_count == 1


def test_optimize_failure_is_attributed_to_optimize(
    contract_source: Path,
    tmp_path: Path,
    inprocess_backend: InProcessBackend,
) -> None:
    inprocess_backend.script("wasm-opt", ExecResult(exit_code=1, output="[wasm-validator error]"))
    plan = _plan(contract_source, tmp_path)

    outcome = _run(inprocess_backend, plan)

    assert outcome.stage_failed is PipelineStage.OPTIMIZE
    assert outcome.exit_code == ExitCode.OPTIMIZE_FAILED
    assert list(plan.host_destination.iterdir()) == []


def test_timeout_fails_the_running_stage(
    contract_source: Path,
    tmp_path: Path,
    inprocess_backend: InProcessBackend,
) -> None:
    inprocess_backend.script(
        "cargo",
        ExecResult(exit_code=None, output="   Compiling hello-contract", timed_out=True),
    )

    outcome = _run(
        inprocess_backend,
        _plan(contract_source, tmp_path),
        options=BuildOptions(exec_timeout=5),
    )

    assert isinstance(outcome.error, StageTimeout)
    assert outcome.stage_failed is PipelineStage.COMPILE
    assert "timed out after 5s" in outcome.error.message
    assert outcome.diagnostic_text.startswith("timed out after 5s\n")
    assert outcome.diagnostic_text.endswith("Compiling hello-contract")
    assert inprocess_backend.release_count == 1


def test_runtime_imposed_timeout_without_configured_limit(
    contract_source: Path,
    tmp_path: Path,
    inprocess_backend: InProcessBackend,
) -> None:
    inprocess_backend.script("wasm-opt", ExecResult(exit_code=None, timed_out=True))

    outcome = _run(
        inprocess_backend,
        _plan(contract_source, tmp_path),
        options=BuildOptions(exec_timeout=None),
    )

    assert isinstance(outcome.error, StageTimeout)
    assert outcome.stage_failed is PipelineStage.OPTIMIZE
    assert outcome.final_state is PipelineState.FAILED
    assert outcome.diagnostic_text == "timed out"
    assert outcome.error.message == "The optimize stage timed out."
    assert inprocess_backend.release_count == 1



def test_long_diagnostics_keep_the_tail(
    contract_source: Path,
    tmp_path: Path,
    inprocess_backend: InProcessBackend,
) -> None:
    noise = "warning: unused variable\n" * 2000
    inprocess_backend.script(
        "cargo",
        ExecResult(exit_code=101, output=noise + "error: aborting due to previous error"),
    )

    outcome = _run(
        inprocess_backend,
        _plan(contract_source, tmp_path),
        options=BuildOptions(max_diagnostic_chars=1000),
    )

    assert outcome.diagnostic_text.startswith("[... ")
    assert outcome.diagnostic_text.endswith("error: aborting due to previous error")
    assert len(outcome.diagnostic_text) < 1100


@pytest.mark.parametrize(
    ("error", "exit_code"),
    [
        (RuntimeUnavailable("Docker daemon did not respond."), ExitCode.RUNTIME_UNAVAILABLE),
        (ImageNotFound("Toolchain image could not be found."), ExitCode.IMAGE_NOT_FOUND),
    ],
)
def test_acquisition_failure_never_releases(
    contract_source: Path,
    tmp_path: Path,
    error: Exception,
    exit_code: ExitCode,
) -> None:
    backend = InProcessBackend(acquire_error=error)  # type: ignore[arg-type]

    outcome = _run(backend, _plan(contract_source, tmp_path))

    assert outcome.exit_code == exit_code
    assert outcome.stage_failed is None
    assert outcome.states == (PipelineState.PROVISIONING, PipelineState.FAILED)
    assert backend.acquire_count == 1
    assert backend.release_count == 0
    assert backend.executed() == []


def test_silent_optimizer_is_a_harvest_failure(
    contract_source: Path,
    tmp_path: Path,
) -> None:
    backend = InProcessBackend(silent_tools=frozenset({"wasm-opt"}))

    outcome = _run(backend, _plan(contract_source, tmp_path))

    assert isinstance(outcome.error, HarvestFailure)
    assert outcome.exit_code == ExitCode.NO_ARTIFACTS
    assert outcome.stage_failed is None
    assert backend.release_count == 1


def test_release_failure_after_success_fails_the_build(
    contract_source: Path,
    tmp_path: Path,
) -> None:
    backend = InProcessBackend(
        release_error=EnvironmentReleaseError("Build container could not be removed."),
    )

    outcome = _run(backend, _plan(contract_source, tmp_path))

    assert not outcome.ok
    assert isinstance(outcome.error, EnvironmentReleaseError)
    assert outcome.exit_code == ExitCode.ENVIRONMENT
    assert outcome.produced_artifacts == ("hello_contract.wasm",)
    assert backend.release_count == 1


def test_release_failure_after_stage_failure_keeps_stage_error(
    contract_source: Path,
    tmp_path: Path,
) -> None:
    backend = InProcessBackend(
        release_error=EnvironmentReleaseError("Build container could not be removed."),
    )
    backend.script("cargo", ExecResult(exit_code=101, output="error: linking failed"))
    logger = StructuredLogger()

    outcome = _run(backend, _plan(contract_source, tmp_path), logger=logger)

    assert outcome.stage_failed is PipelineStage.COMPILE
    assert isinstance(outcome.error, StageFailure)
    release_records = logger.records_for_operation("release")
    assert [record["level"] for record in release_records] == ["error"]


def test_non_environment_release_error_never_masks_stage_error(
    contract_source: Path,
    tmp_path: Path,
) -> None:
    backend = InProcessBackend(
        release_error=ForgeError("teardown hook failed", code=ErrorCode.HARVEST),
    )
    backend.script("wasm-snip", ExecResult(exit_code=1, output="snip: invalid module"))

    outcome = _run(backend, _plan(contract_source, tmp_path))

    assert outcome.stage_failed is PipelineStage.STRIP
    assert isinstance(outcome.error, StageFailure)
    assert backend.release_count == 1


def test_non_environment_release_error_after_success_fails_the_build(
    contract_source: Path,
    tmp_path: Path,
) -> None:
    backend = InProcessBackend(
        release_error=ForgeError("teardown hook failed", code=ErrorCode.HARVEST),
    )

    outcome = _run(backend, _plan(contract_source, tmp_path))

    assert isinstance(outcome.error, EnvironmentReleaseError)
    assert outcome.error.context["error"] == "teardown hook failed"
    assert outcome.exit_code == ExitCode.ENVIRONMENT



def test_workspace_builds_every_member_concurrently(tmp_path: Path) -> None:
    backend = InProcessBackend()
    plan = bind(_workspace(tmp_path, "alpha", "beta-token"), tmp_path / "out")

    outcome = _run(backend, plan, options=BuildOptions(workers=4))

    assert outcome.ok
    assert outcome.produced_artifacts == ("alpha.wasm", "beta_token.wasm")
    (cargo,) = backend.executed("cargo")
    assert "--workspace" in cargo
    assert len(backend.executed("wasm-snip")) == 2
    assert len(backend.executed("wasm-opt")) == 2
    assert sorted(path.name for path in plan.host_destination.iterdir()) == [
        "alpha.wasm",
        "beta_token.wasm",
    ]


def test_one_failing_artifact_fails_the_whole_stage(tmp_path: Path) -> None:
    backend = InProcessBackend()
    backend.script("wasm-snip", ExecResult(exit_code=1, output="bad beta"), when="beta")
    plan = bind(_workspace(tmp_path, "alpha", "beta"), tmp_path / "out")

    outcome = _run(backend, plan, options=BuildOptions(workers=2))

    assert outcome.stage_failed is PipelineStage.STRIP
    assert outcome.error is not None
    assert outcome.error.context["artifact"] == "beta.wasm"
    assert list(plan.host_destination.iterdir()) == []
    assert backend.executed("wasm-opt") == []


def test_every_transition_is_logged(
    contract_source: Path,
    tmp_path: Path,
    inprocess_backend: InProcessBackend,
) -> None:
    logger = StructuredLogger()

    _run(inprocess_backend, _plan(contract_source, tmp_path), logger=logger)

    transitions = logger.records_for_operation("transition")
    assert [record["message"] for record in transitions] == [
        f"Entered {state}." for state in SUCCESS_STATES
    ]
    assert logger.records_for_operation("acquire")
    assert logger.records_for_operation("release")
    harvest = logger.records_for_operation("harvest")
    assert harvest[0]["extra"]["file"] == "hello_contract.wasm"
    assert logger.records_for_stage("strip")


def test_executor_can_run_again_with_fresh_environment(
    contract_source: Path,
    tmp_path: Path,
    inprocess_backend: InProcessBackend,
) -> None:
    plan = _plan(contract_source, tmp_path)

    first = _run(inprocess_backend, plan)
    second = _run(inprocess_backend, plan)

    assert first.produced_artifacts == second.produced_artifacts
    assert first.artifacts[0].sha256 == second.artifacts[0].sha256
    assert inprocess_backend.acquire_count == 2
    assert inprocess_backend.release_count == 2
