"""In-process build backend for testing and development.

Simulates the toolchain container without invoking Docker or any external
tool. It understands the commands the pipeline issues, keeps
environment-local files in memory, and reads/writes host files only through
the mount plan (the source mount is read-only). Every acquire/exec/release
call is recorded, and tool outcomes can be scripted, making it suitable for:
- Unit tests of the pipeline state machine
- Development environments without Docker
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Self

from contractforge.errors import ForgeError
from contractforge.models import (
    COMPILED_DIR,
    WASM_SUFFIX,
    CommandSpec,
    EnvironmentHandle,
    ExecResult,
    MountPlan,
)


@dataclass(frozen=True, slots=True)
class _Script:
    program: str
    result: ExecResult
    when: str | None = None

    def matches(self, argv: tuple[str, ...]) -> bool:
        if argv[0] != self.program:
            return False
        return self.when is None or any(self.when in arg for arg in argv[1:])


@dataclass(slots=True)
class InProcessBackend:
    """Backend that simulates the toolchain image in memory."""

    name: str = "inprocess"
    silent_tools: frozenset[str] = frozenset()
    acquire_error: ForgeError | None = None
    release_error: ForgeError | None = None
    calls: list[tuple[str, ...]] = field(default_factory=list)
    _scripts: list[_Script] = field(default_factory=list, repr=False)
    _files: dict[str, dict[str, bytes]] = field(default_factory=dict, repr=False)
    _plans: dict[str, MountPlan] = field(default_factory=dict, repr=False)
    _counter: int = field(default=0, repr=False)

    def script(self, program: str, result: ExecResult, *, when: str | None = None) -> Self:
        """Answer *program* (optionally only when an argument contains *when*) with *result*."""
        self._scripts.append(_Script(program=program, result=result, when=when))
        return self

    @property
    def acquire_count(self) -> int:
        return sum(1 for call in self.calls if call[0] == "acquire")

    @property
    def release_count(self) -> int:
        return sum(1 for call in self.calls if call[0] == "release")

    def executed(self, program: str | None = None) -> list[tuple[str, ...]]:
        """Return recorded exec argv tuples, optionally filtered by program."""
        commands = [call[2:] for call in self.calls if call[0] == "exec"]
        if program is None:
            return commands
        return [argv for argv in commands if argv[0] == program]

    def acquire(self, image_reference: str, mount_plan: MountPlan) -> EnvironmentHandle:
        self.calls.append(("acquire", image_reference))
        if self.acquire_error is not None:
            raise self.acquire_error
        self._counter += 1
        handle = EnvironmentHandle(
            id=f"inprocess-{self._counter}",
            image_reference=image_reference,
            backend=self.name,
        )
        self._files[handle.id] = {}
        self._plans[handle.id] = mount_plan
        return handle

    def exec(
        self,
        handle: EnvironmentHandle,
        command: CommandSpec,
        *,
        timeout: float | None = None,
    ) -> ExecResult:
        argv = command.argv
        self.calls.append(("exec", handle.id, *argv))
        for script in self._scripts:
            if script.matches(argv):
                return script.result
        if argv[0] in self.silent_tools:
            return ExecResult(exit_code=0)
        simulate = {
            "mkdir": self._mkdir,
            "cp": self._cp,
            "mv": self._mv,
            "rm": self._rm,
            "cargo": self._cargo,
            "find": self._find,
            "wasm-snip": self._transform,
            "wasm-opt": self._transform,
        }.get(argv[0])
        if simulate is None:
            return ExecResult(exit_code=127, output=f"{argv[0]}: command not found")
        return simulate(handle, argv)

    def release(self, handle: EnvironmentHandle) -> None:
        self.calls.append(("release", handle.id))
        if self.release_error is not None:
            error, self.release_error = self.release_error, None
            raise error
        self._files.pop(handle.id, None)
        self._plans.pop(handle.id, None)

    # -- simulated commands -------------------------------------------------

    def _mkdir(self, handle: EnvironmentHandle, argv: tuple[str, ...]) -> ExecResult:
        for path in argv[1:]:
            if not path.startswith("-") and self._is_read_only(handle, path):
                return _read_only(argv[0], path)
        return ExecResult(exit_code=0)

    def _cp(self, handle: EnvironmentHandle, argv: tuple[str, ...]) -> ExecResult:
        source, target = argv[-2], argv[-1]
        if self._is_read_only(handle, target):
            return _read_only("cp", target)
        if "-a" in argv:
            return ExecResult(exit_code=0)
        data = self._read(handle, source)
        if data is None:
            return ExecResult(exit_code=1, output=f"cp: cannot stat '{source}'")
        self._write(handle, target, data)
        return ExecResult(exit_code=0)

    def _mv(self, handle: EnvironmentHandle, argv: tuple[str, ...]) -> ExecResult:
        result = self._cp(handle, ("cp", argv[-2], argv[-1]))
        if result.succeeded:
            self._delete(handle, argv[-2])
        return result

    def _rm(self, handle: EnvironmentHandle, argv: tuple[str, ...]) -> ExecResult:
        for path in argv[1:]:
            if not path.startswith("-"):
                self._delete(handle, path)
        return ExecResult(exit_code=0)

    def _cargo(self, handle: EnvironmentHandle, argv: tuple[str, ...]) -> ExecResult:
        plan = self._plans[handle.id]
        lines = []
        for crate in plan.crates:
            payload = b"\0asm" + crate.package.encode()
            self._write(handle, f"{COMPILED_DIR}/{crate.wasm_file}", payload)
            lines.append(f"   Compiling {crate.package} v0.1.0")
        lines.append("    Finished `release` profile [optimized] target(s)")
        return ExecResult(exit_code=0, output="\n".join(lines))

    def _find(self, handle: EnvironmentHandle, argv: tuple[str, ...]) -> ExecResult:
        directory = argv[1].rstrip("/")
        names = sorted(
            path
            for path in self._list(handle, directory)
            if path.endswith(WASM_SUFFIX)
        )
        return ExecResult(exit_code=0, output="".join(f"{name}\n" for name in names))

    def _transform(self, handle: EnvironmentHandle, argv: tuple[str, ...]) -> ExecResult:
        output = argv[argv.index("--output") + 1]
        inputs = [arg for arg in argv[1:] if not arg.startswith("-") and arg != output]
        data = self._read(handle, inputs[0]) if inputs else None
        if data is None:
            return ExecResult(exit_code=1, output=f"{argv[0]}: failed to read input")
        if self._is_read_only(handle, output):
            return _read_only(argv[0], output)
        self._write(handle, output, data + f"|{argv[0]}".encode())
        return ExecResult(exit_code=0)

    # -- simulated filesystem ---------------------------------------------

    def _host_path(self, handle: EnvironmentHandle, path: str) -> Path | None:
        plan = self._plans[handle.id]
        for prefix, host_dir in (
            (plan.container_source, plan.host_source),
            (plan.container_destination, plan.host_destination),
        ):
            if path == prefix:
                return host_dir
            if path.startswith(prefix + "/"):
                return host_dir / path[len(prefix) + 1 :]
        return None

    def _is_read_only(self, handle: EnvironmentHandle, path: str) -> bool:
        plan = self._plans[handle.id]
        return path == plan.container_source or path.startswith(plan.container_source + "/")

    def _read(self, handle: EnvironmentHandle, path: str) -> bytes | None:
        host_path = self._host_path(handle, path)
        if host_path is not None:
            return host_path.read_bytes() if host_path.is_file() else None
        return self._files[handle.id].get(path)

    def _write(self, handle: EnvironmentHandle, path: str, data: bytes) -> None:
        host_path = self._host_path(handle, path)
        if host_path is not None:
            host_path.parent.mkdir(parents=True, exist_ok=True)
            host_path.write_bytes(data)
        else:
            self._files[handle.id][path] = data

    def _delete(self, handle: EnvironmentHandle, path: str) -> None:
        host_path = self._host_path(handle, path)
        if host_path is not None:
            host_path.unlink(missing_ok=True)
        else:
            self._files[handle.id].pop(path, None)

    def _list(self, handle: EnvironmentHandle, directory: str) -> list[str]:
        host_dir = self._host_path(handle, directory)
        if host_dir is not None:
            if not host_dir.is_dir():
                return []
            return [f"{directory}/{entry.name}" for entry in host_dir.iterdir() if entry.is_file()]
        return [
            path
            for path in self._files[handle.id]
            if str(PurePosixPath(path).parent) == directory
        ]


def _read_only(program: str, path: str) -> ExecResult:
    return ExecResult(
        exit_code=1,
        output=f"{program}: cannot write '{path}': Read-only file system",
    )
