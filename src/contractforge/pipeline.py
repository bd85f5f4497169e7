"""Build pipeline state machine.

``Provisioning -> Compiling -> Stripping -> Optimizing -> Harvested``, with
``Failed`` reachable from every non-terminal state. One environment is
acquired per run and released exactly once whichever state is terminal.
"""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from contractforge.backends.base import IsolationBackend, provisioned
from contractforge.config import BuildOptions, bounded, worker_count
from contractforge.errors import EnvironmentFailure, HarvestFailure, StageFailure, StageTimeout
from contractforge.harvest import ArtifactHarvester
from contractforge.models import (
    STAGE_STATES,
    BuildOutcome,
    CommandSpec,
    EnvironmentHandle,
    ExecResult,
    HarvestedArtifact,
    MountPlan,
    PipelineStage,
    PipelineState,
    ResolvedToolchain,
)
from contractforge.observability import StructuredLogger
from contractforge.stages import (
    STAGE_SPECS,
    compile_command,
    list_command,
    make_output_dir,
    optimize_command,
    parse_listing,
    prepare_workspace_commands,
    strip_command,
)

PipelineError = EnvironmentFailure | StageFailure | HarvestFailure


@dataclass(slots=True)
class PipelineExecutor:
    backend: IsolationBackend
    options: BuildOptions = field(default_factory=BuildOptions)
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    _states: list[PipelineState] = field(default_factory=list, init=False, repr=False)

    def run(self, toolchain: ResolvedToolchain, plan: MountPlan) -> BuildOutcome:
        self._states = []
        self._enter(PipelineState.PROVISIONING)
        harvested: tuple[HarvestedArtifact, ...] = ()
        try:
            with provisioned(
                self.backend,
                toolchain.image_reference,
                plan,
                logger=self.logger,
            ) as handle:
                self._enter(PipelineState.COMPILING)
                artifacts = self._compile(handle, plan)
                self._enter(PipelineState.STRIPPING)
                self._per_artifact(handle, PipelineStage.STRIP, artifacts, strip_command)
                self._enter(PipelineState.OPTIMIZING)
                self._per_artifact(handle, PipelineStage.OPTIMIZE, artifacts, optimize_command)
                harvester = ArtifactHarvester(self.backend, self.options, self.logger)
                harvested = harvester.harvest(handle, plan)
        except (EnvironmentFailure, StageFailure, HarvestFailure) as exc:
            return self._failed(exc, toolchain, plan, harvested)

        self._enter(PipelineState.HARVESTED)
        return BuildOutcome(
            produced_artifacts=tuple(artifact.name for artifact in harvested),
            destination=plan.host_destination,
            toolchain=toolchain,
            artifacts=harvested,
            states=tuple(self._states),
        )

    def _compile(self, handle: EnvironmentHandle, plan: MountPlan) -> tuple[str, ...]:
        stage = PipelineStage.COMPILE
        for command in prepare_workspace_commands(plan):
            self._require(handle, stage, command)
        result = self._require(handle, stage, compile_command(plan, self.options))
        artifacts = self._list_outputs(handle, stage)
        if not artifacts:
            raise StageFailure(
                stage,
                bounded(result.output, self.options.max_diagnostic_chars),
                message="The compiler exited successfully but produced no WebAssembly artifacts.",
                hint="Declare `crate-type = [\"cdylib\"]` under [lib] in the contract crate.",
            )
        self.logger.log(
            operation="stage_outputs",
            stage=str(stage),
            backend=self.backend.name,
            message="Compiled artifacts found.",
            extra={"artifacts": list(artifacts)},
        )
        return artifacts

    def _per_artifact(
        self,
        handle: EnvironmentHandle,
        stage: PipelineStage,
        artifacts: tuple[str, ...],
        command_for: Callable[[str], CommandSpec],
    ) -> None:
        """Run one command per artifact; all are joined before the stage completes."""
        self._require(handle, stage, make_output_dir(stage))
        jobs = worker_count(self.options, len(artifacts))
        if jobs == 1:
            for artifact in artifacts:
                self._require(handle, stage, command_for(artifact), crate=artifact)
            return

        with ThreadPoolExecutor(max_workers=jobs, thread_name_prefix=f"cf-{stage}") as pool:
            futures = {
                artifact: pool.submit(
                    self._require, handle, stage, command_for(artifact), crate=artifact
                )
                for artifact in artifacts
            }
        for artifact in sorted(futures):
            error = futures[artifact].exception()
            if error is not None:
                raise error

    def _list_outputs(self, handle: EnvironmentHandle, stage: PipelineStage) -> tuple[str, ...]:
        spec = STAGE_SPECS[stage]
        result = self._require(handle, stage, list_command(spec.output_dir, spec.output_pattern))
        return parse_listing(result.output)

    def _require(
        self,
        handle: EnvironmentHandle,
        stage: PipelineStage,
        command: CommandSpec,
        *,
        crate: str | None = None,
    ) -> ExecResult:
        timeout = self.options.exec_timeout
        result = self.backend.exec(handle, command, timeout=timeout)
        diagnostic = bounded(result.output, self.options.max_diagnostic_chars)
        context = {"command": str(command)}
        if crate is not None:
            context["artifact"] = crate
        if result.timed_out:
            # the runtime may enforce its own limit when none is configured
            notice = "timed out" if timeout is None else f"timed out after {timeout:g}s"
            raise StageTimeout(
                stage,
                f"{notice}\n{diagnostic}" if diagnostic else notice,
                message=f"The {stage} stage {notice}.",
                hint="Raise --timeout for large contracts.",
                context=context,
            )
        if result.exit_code != 0:
            raise StageFailure(
                stage,
                diagnostic,
                context={**context, "exit_code": str(result.exit_code)},
            )
        self.logger.log(
            operation="exec",
            stage=str(stage),
            crate=crate,
            backend=self.backend.name,
            message=f"{command.argv[0]} succeeded.",
            extra={"duration_ms": round(result.duration_ms, 1)},
        )
        return result

    def _enter(self, state: PipelineState) -> None:
        self._states.append(state)
        self.logger.log(
            operation="transition",
            stage=_stage_of(state),
            backend=self.backend.name,
            message=f"Entered {state}.",
        )

    def _failed(
        self,
        error: PipelineError,
        toolchain: ResolvedToolchain,
        plan: MountPlan,
        harvested: tuple[HarvestedArtifact, ...],
    ) -> BuildOutcome:
        stage = error.stage if isinstance(error, StageFailure) else None
        diagnostic = error.diagnostic if isinstance(error, StageFailure) else str(error)
        self._enter(PipelineState.FAILED)
        self.logger.log(
            operation="failure",
            stage=str(stage) if stage is not None else None,
            backend=self.backend.name,
            level="error",
            message=error.message,
            extra={"code": error.code},
        )
        return BuildOutcome(
            produced_artifacts=tuple(artifact.name for artifact in harvested),
            stage_failed=stage,
            diagnostic_text=diagnostic,
            destination=plan.host_destination,
            toolchain=toolchain,
            artifacts=harvested,
            states=tuple(self._states),
            error=error,
        )


def _stage_of(state: PipelineState) -> str | None:
    for stage, stage_state in STAGE_STATES.items():
        if stage_state is state:
            return str(stage)
    return None
