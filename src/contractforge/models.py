"""Core typed dataclasses for build requests, mount plans, and build outcomes."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

import cbor2

if TYPE_CHECKING:
    from contractforge.errors import ForgeError

WASM_TARGET = "wasm32-unknown-unknown"
WASM_SUFFIX = ".wasm"

# Fixed in-environment paths. Stage commands are written against these only.
SOURCE_MOUNT = "/mnt/source"
OUTPUT_MOUNT = "/mnt/output"
WORKSPACE_DIR = "/workspace"
BUILD_DIR = "/build"
TARGET_DIR = f"{BUILD_DIR}/target"
COMPILED_DIR = f"{TARGET_DIR}/{WASM_TARGET}/release"
STRIPPED_DIR = f"{BUILD_DIR}/stripped"
OPTIMIZED_DIR = f"{BUILD_DIR}/optimized"

REPORT_SCHEMA_VERSION = 1


class PipelineStage(StrEnum):
    COMPILE = "compile"
    STRIP = "strip"
    OPTIMIZE = "optimize"


class PipelineState(StrEnum):
    PROVISIONING = "provisioning"
    COMPILING = "compiling"
    STRIPPING = "stripping"
    OPTIMIZING = "optimizing"
    HARVESTED = "harvested"
    FAILED = "failed"


STAGE_STATES: dict[PipelineStage, PipelineState] = {
    PipelineStage.COMPILE: PipelineState.COMPILING,
    PipelineStage.STRIP: PipelineState.STRIPPING,
    PipelineStage.OPTIMIZE: PipelineState.OPTIMIZING,
}


@dataclass(frozen=True, slots=True)
class BuildRequest:
    source_path: Path
    destination_path: Path
    toolchain_tag: str | None = None


@dataclass(frozen=True, slots=True)
class ResolvedToolchain:
    tag: str
    image_reference: str
    compiler_version: str
    stripper_version: str
    optimizer_version: str


@dataclass(frozen=True, slots=True)
class Crate:
    """A buildable package discovered from a Cargo manifest."""

    package: str
    manifest_path: Path
    lib_name: str | None = None

    @property
    def contract_name(self) -> str:
        return (self.lib_name or self.package).replace("-", "_")

    @property
    def wasm_file(self) -> str:
        return f"{self.contract_name}{WASM_SUFFIX}"


@dataclass(frozen=True, slots=True)
class MountSpec:
    source: Path
    target: str
    read_only: bool = False


@dataclass(frozen=True, slots=True)
class MountPlan:
    """Host/environment path binding for one build request.

    ``host_source`` is the mount root; it is the source directory itself unless
    path dependencies live outside of it, in which case it is their common
    ancestor and ``crate_subpath`` locates the source below it.
    """

    host_source: Path
    host_destination: Path
    crate_subpath: str = "."
    copy_subpaths: tuple[str, ...] = (".",)
    crates: tuple[Crate, ...] = ()
    container_source: str = SOURCE_MOUNT
    container_destination: str = OUTPUT_MOUNT

    @property
    def mounts(self) -> tuple[MountSpec, ...]:
        return (
            MountSpec(source=self.host_source, target=self.container_source, read_only=True),
            MountSpec(
                source=self.host_destination,
                target=self.container_destination,
                read_only=False,
            ),
        )

    @property
    def crate_workdir(self) -> str:
        return container_path(WORKSPACE_DIR, self.crate_subpath)

    @property
    def is_workspace(self) -> bool:
        return len(self.crates) > 1

    def contract_name_for(self, artifact_stem: str) -> str:
        """Map a toolchain-emitted artifact stem onto the declared contract name."""
        normalized = artifact_stem.replace("-", "_")
        for crate in self.crates:
            if normalized in (crate.contract_name, crate.package.replace("-", "_")):
                return crate.contract_name
        return normalized


@dataclass(frozen=True, slots=True)
class CommandSpec:
    argv: tuple[str, ...]
    cwd: str | None = None

    def __str__(self) -> str:
        return " ".join(self.argv)


@dataclass(frozen=True, slots=True)
class ExecResult:
    exit_code: int | None
    output: str = ""
    timed_out: bool = False
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.exit_code == 0


@dataclass(frozen=True, slots=True)
class EnvironmentHandle:
    id: str
    image_reference: str
    backend: str


@dataclass(frozen=True, slots=True)
class HarvestedArtifact:
    name: str
    path: Path
    sha256: str
    size: int


@dataclass(frozen=True, slots=True)
class BuildOutcome:
    """Terminal value of one build invocation."""

    produced_artifacts: tuple[str, ...] = ()
    stage_failed: PipelineStage | None = None
    diagnostic_text: str = ""
    destination: Path | None = None
    toolchain: ResolvedToolchain | None = None
    artifacts: tuple[HarvestedArtifact, ...] = ()
    states: tuple[PipelineState, ...] = ()
    error: ForgeError | None = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.produced_artifacts)

    @property
    def final_state(self) -> PipelineState | None:
        return self.states[-1] if self.states else None

    @property
    def exit_code(self) -> int:
        if self.error is not None:
            return int(self.error.exit_code)
        return 0

    def raise_for_failure(self) -> None:
        if self.error is not None:
            raise self.error

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(self._payload(), indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        encoded = cbor2.dumps(self._payload(), canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded

    def _payload(self) -> dict[str, object]:
        toolchain: dict[str, str] | None = None
        if self.toolchain is not None:
            toolchain = {
                "tag": self.toolchain.tag,
                "image": self.toolchain.image_reference,
                "compiler": self.toolchain.compiler_version,
                "stripper": self.toolchain.stripper_version,
                "optimizer": self.toolchain.optimizer_version,
            }
        return {
            "schema_version": REPORT_SCHEMA_VERSION,
            "ok": self.ok,
            "destination": str(self.destination) if self.destination else None,
            "toolchain": toolchain,
            "produced_artifacts": list(self.produced_artifacts),
            "artifact_digests": {artifact.name: artifact.sha256 for artifact in self.artifacts},
            "stage_failed": str(self.stage_failed) if self.stage_failed else None,
            "diagnostic": self.diagnostic_text,
            "states": [str(state) for state in self.states],
            "error": self.error.to_dict() if self.error is not None else None,
        }


def container_path(root: str, subpath: str) -> str:
    """Join a POSIX relative subpath onto a fixed in-environment root."""
    if subpath in ("", "."):
        return root
    return f"{root}/{subpath}"
