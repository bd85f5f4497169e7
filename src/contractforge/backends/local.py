"""Host build execution without a container runtime.

Runs the same stage commands directly on the host. The fixed in-environment
paths are translated onto host directories: the source and destination map to
the mount plan's host paths, the writable workspace and build paths to a
private temporary directory that is removed on release.

Toolchain versions are whatever the host provides, so builds in this mode are
not reproducible across machines.
"""

from __future__ import annotations

import shutil
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

from contractforge.errors import EnvironmentReleaseError, RuntimeUnavailable
from contractforge.models import (
    BUILD_DIR,
    WORKSPACE_DIR,
    CommandSpec,
    EnvironmentHandle,
    ExecResult,
    MountPlan,
)

REQUIRED_TOOLS = ("cargo", "wasm-snip", "wasm-opt", "find", "cp", "mkdir")


@dataclass(slots=True)
class _HostEnvironment:
    scratch: Path
    prefixes: tuple[tuple[str, Path], ...]


@dataclass(slots=True)
class LocalBackend:
    name: str = "local"
    required_tools: tuple[str, ...] = REQUIRED_TOOLS
    _environments: dict[str, _HostEnvironment] = field(default_factory=dict, repr=False)

    def acquire(self, image_reference: str, mount_plan: MountPlan) -> EnvironmentHandle:
        self._ensure_local_prerequisites()
        scratch = Path(tempfile.mkdtemp(prefix="contractforge-"))
        prefixes = (
            (mount_plan.container_source, mount_plan.host_source),
            (mount_plan.container_destination, mount_plan.host_destination),
            (WORKSPACE_DIR, scratch / "workspace"),
            (BUILD_DIR, scratch / "build"),
        )
        for _, host_dir in prefixes[2:]:
            host_dir.mkdir(parents=True, exist_ok=True)
        handle = EnvironmentHandle(
            id=scratch.name,
            image_reference=image_reference,
            backend=self.name,
        )
        self._environments[handle.id] = _HostEnvironment(scratch=scratch, prefixes=prefixes)
        return handle

    def exec(
        self,
        handle: EnvironmentHandle,
        command: CommandSpec,
        *,
        timeout: float | None = None,
    ) -> ExecResult:
        environment = self._environments[handle.id]
        argv = [self.translate(handle, arg) for arg in command.argv]
        cwd = self.translate(handle, command.cwd) if command.cwd is not None else None
        started = time.perf_counter()
        try:
            completed = subprocess.run(
                argv,
                cwd=cwd or str(environment.scratch),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            output = exc.stdout
            if isinstance(output, bytes):
                output = output.decode("utf-8", errors="replace")
            return ExecResult(
                exit_code=None,
                output=output or "",
                timed_out=True,
                duration_ms=(time.perf_counter() - started) * 1000.0,
            )
        except OSError as exc:
            return ExecResult(exit_code=127, output=f"{argv[0]}: {exc.strerror or exc}")
        return ExecResult(
            exit_code=completed.returncode,
            output=completed.stdout or "",
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )

    def release(self, handle: EnvironmentHandle) -> None:
        environment = self._environments.pop(handle.id, None)
        if environment is None:
            return
        try:
            shutil.rmtree(environment.scratch)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise EnvironmentReleaseError(
                "Temporary build directory could not be removed.",
                hint="Remove it manually.",
                context={
                    "backend": self.name,
                    "path": str(environment.scratch),
                    "error": str(exc),
                },
            ) from exc

    def translate(self, handle: EnvironmentHandle, value: str) -> str:
        """Map an in-environment path onto the host; other values pass through."""
        for prefix, host_dir in self._environments[handle.id].prefixes:
            if value == prefix:
                return str(host_dir)
            if value.startswith(prefix + "/"):
                return str(host_dir) + value[len(prefix):]
        return value

    def _ensure_local_prerequisites(self) -> None:
        if sys.platform.startswith("win"):
            raise RuntimeUnavailable(
                "Local backend requires a POSIX host.",
                hint="Use the Docker backend on Windows.",
                context={"backend": self.name, "operation": "acquire"},
            )
        missing = [tool for tool in self.required_tools if shutil.which(tool) is None]
        if missing:
            raise RuntimeUnavailable(
                "Local backend requires the wasm toolchain in PATH.",
                hint=(
                    "Install Rust with `rustup target add wasm32-unknown-unknown`, "
                    "`cargo install wasm-snip`, and binaryen's wasm-opt."
                ),
                context={"backend": self.name, "missing": ", ".join(missing)},
            )
