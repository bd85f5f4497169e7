"""In-environment command lines for each pipeline stage.

All paths are the fixed in-environment constants from :mod:`contractforge.models`,
so nothing here depends on the host layout.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath

from contractforge.config import BuildOptions
from contractforge.models import (
    COMPILED_DIR,
    OPTIMIZED_DIR,
    STRIPPED_DIR,
    TARGET_DIR,
    WASM_SUFFIX,
    WASM_TARGET,
    WORKSPACE_DIR,
    CommandSpec,
    MountPlan,
    PipelineStage,
    container_path,
)

SNIP_FLAGS = ("--snip-rust-fmt-code", "--snip-rust-panicking-code")
OPTIMIZE_FLAGS = ("-Oz", "--dce")


@dataclass(frozen=True, slots=True)
class StageSpec:
    stage: PipelineStage
    input_dir: str | None
    output_dir: str
    output_pattern: str = f"*{WASM_SUFFIX}"


STAGE_SPECS: dict[PipelineStage, StageSpec] = {
    PipelineStage.COMPILE: StageSpec(
        stage=PipelineStage.COMPILE,
        input_dir=None,
        output_dir=COMPILED_DIR,
    ),
    PipelineStage.STRIP: StageSpec(
        stage=PipelineStage.STRIP,
        input_dir=COMPILED_DIR,
        output_dir=STRIPPED_DIR,
    ),
    PipelineStage.OPTIMIZE: StageSpec(
        stage=PipelineStage.OPTIMIZE,
        input_dir=STRIPPED_DIR,
        output_dir=OPTIMIZED_DIR,
    ),
}


def prepare_workspace_commands(plan: MountPlan) -> list[CommandSpec]:
    """Copy the read-only source (and out-of-tree path dependencies) somewhere writable."""
    targets = [container_path(WORKSPACE_DIR, sub) for sub in plan.copy_subpaths]
    commands = [CommandSpec(argv=("mkdir", "-p", *targets))]
    for sub in plan.copy_subpaths:
        commands.append(
            CommandSpec(
                argv=(
                    "cp",
                    "-a",
                    f"{container_path(plan.container_source, sub)}/.",
                    container_path(WORKSPACE_DIR, sub),
                ),
            ),
        )
    return commands


def compile_command(plan: MountPlan, options: BuildOptions) -> CommandSpec:
    argv = [
        "cargo",
        "build",
        "--target",
        WASM_TARGET,
        "--release",
        "--quiet",
        "--target-dir",
        TARGET_DIR,
    ]
    if options.locked:
        argv.append("--locked")
    if plan.is_workspace:
        argv.append("--workspace")
    return CommandSpec(argv=tuple(argv), cwd=plan.crate_workdir)


def make_output_dir(stage: PipelineStage) -> CommandSpec:
    return CommandSpec(argv=("mkdir", "-p", STAGE_SPECS[stage].output_dir))


def strip_command(artifact: str) -> CommandSpec:
    spec = STAGE_SPECS[PipelineStage.STRIP]
    return CommandSpec(
        argv=(
            "wasm-snip",
            f"{spec.input_dir}/{artifact}",
            "--output",
            f"{spec.output_dir}/{artifact}",
            *SNIP_FLAGS,
        ),
    )


def optimize_command(artifact: str) -> CommandSpec:
    spec = STAGE_SPECS[PipelineStage.OPTIMIZE]
    return CommandSpec(
        argv=(
            "wasm-opt",
            *OPTIMIZE_FLAGS,
            f"{spec.input_dir}/{artifact}",
            "--output",
            f"{spec.output_dir}/{artifact}",
        ),
    )


def list_command(directory: str, pattern: str = f"*{WASM_SUFFIX}") -> CommandSpec:
    return CommandSpec(
        argv=("find", directory, "-maxdepth", "1", "-type", "f", "-name", pattern),
    )


def parse_listing(output: str) -> tuple[str, ...]:
    names = {
        PurePosixPath(line.strip()).name
        for line in output.splitlines()
        if line.strip().endswith(WASM_SUFFIX)
    }
    return tuple(sorted(names))
