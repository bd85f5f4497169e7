"""Artifact harvesting: final binaries from the environment into the destination."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from contractforge.backends.base import IsolationBackend
from contractforge.config import BuildOptions, bounded
from contractforge.errors import HarvestFailure
from contractforge.models import (
    OPTIMIZED_DIR,
    WASM_SUFFIX,
    CommandSpec,
    EnvironmentHandle,
    HarvestedArtifact,
    MountPlan,
)
from contractforge.observability import StructuredLogger
from contractforge.stages import list_command, parse_listing

PARTIAL_SUFFIX = ".partial"


@dataclass(slots=True)
class ArtifactHarvester:
    backend: IsolationBackend
    options: BuildOptions = field(default_factory=BuildOptions)
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def harvest(self, handle: EnvironmentHandle, plan: MountPlan) -> tuple[HarvestedArtifact, ...]:
        """Copy every optimized artifact to the destination under its contract name.

        Files are staged under a ``.partial`` name and renamed only once every
        copy succeeded; on failure everything written so far is removed.
        """
        listing = self._run(handle, list_command(OPTIMIZED_DIR), "list optimized artifacts")
        produced = parse_listing(listing)
        if not produced:
            raise HarvestFailure(
                "Every stage succeeded but no artifacts were produced.",
                hint="Check that the crate builds a `cdylib` and the toolchain image is intact.",
                context={"directory": OPTIMIZED_DIR},
            )

        targets = self._target_names(plan, produced)
        written: list[str] = []
        try:
            for artifact, target in targets.items():
                staged = f"{plan.container_destination}/{target}{PARTIAL_SUFFIX}"
                written.append(staged)
                self._run(
                    handle,
                    CommandSpec(argv=("cp", f"{OPTIMIZED_DIR}/{artifact}", staged)),
                    f"copy {artifact}",
                )
            for target in targets.values():
                final = f"{plan.container_destination}/{target}"
                written.append(final)
                self._run(
                    handle,
                    CommandSpec(argv=("mv", "-f", f"{final}{PARTIAL_SUFFIX}", final)),
                    f"publish {target}",
                )
            harvested = tuple(self._inspect(plan, target) for target in sorted(targets.values()))
        except HarvestFailure:
            self._rollback(plan, written)
            raise

        for artifact in harvested:
            self.logger.log(
                operation="harvest",
                crate=PurePosixPath(artifact.name).stem,
                backend=self.backend.name,
                message="Artifact harvested.",
                extra={"file": artifact.name, "sha256": artifact.sha256, "size": artifact.size},
            )
        return harvested

    def _target_names(self, plan: MountPlan, produced: tuple[str, ...]) -> dict[str, str]:
        targets: dict[str, str] = {}
        for artifact in produced:
            target = plan.contract_name_for(PurePosixPath(artifact).stem) + WASM_SUFFIX
            if target in targets.values():
                raise HarvestFailure(
                    "Two artifacts map onto the same contract file name.",
                    context={"file": target},
                )
            targets[artifact] = target
        return targets

    def _inspect(self, plan: MountPlan, name: str) -> HarvestedArtifact:
        host_path = plan.host_destination / name
        if not host_path.is_file():
            raise HarvestFailure(
                "Harvested artifact is not visible in the destination directory.",
                hint="Check that the destination mount is writable by the build environment.",
                context={"file": name, "destination": str(plan.host_destination)},
            )
        data = host_path.read_bytes()
        return HarvestedArtifact(
            name=name,
            path=host_path,
            sha256=hashlib.sha256(data).hexdigest(),
            size=len(data),
        )

    def _rollback(self, plan: MountPlan, written: list[str]) -> None:
        for container_file in written:
            name = PurePosixPath(container_file).name
            (plan.host_destination / name).unlink(missing_ok=True)
        self.logger.log(
            operation="harvest_rollback",
            backend=self.backend.name,
            level="warning",
            message="Removed partially harvested artifacts.",
            extra={"files": [PurePosixPath(path).name for path in written]},
        )

    def _run(self, handle: EnvironmentHandle, command: CommandSpec, action: str) -> str:
        result = self.backend.exec(handle, command, timeout=self.options.exec_timeout)
        if not result.succeeded:
            reason = "timed out" if result.timed_out else f"exited with {result.exit_code}"
            raise HarvestFailure(
                f"Harvest step failed: {action} {reason}.",
                context={
                    "command": str(command),
                    "output": bounded(result.output, self.options.max_diagnostic_chars),
                },
            )
        return result.output
