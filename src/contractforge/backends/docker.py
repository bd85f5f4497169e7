"""Docker-backed build environments driven through the ``docker`` CLI.

One container is started per build request from the pinned toolchain image,
with the source bound read-only and the destination bound read-write. Stage
commands run through ``docker exec``; the container is force-removed on
release.
"""

from __future__ import annotations

import csv
import io
import os
import shutil
import subprocess
import time
import uuid
from dataclasses import dataclass, field

from contractforge.errors import EnvironmentReleaseError, ImageNotFound, RuntimeUnavailable
from contractforge.models import CommandSpec, EnvironmentHandle, ExecResult, MountPlan

_IMAGE_MISSING_MARKERS = (
    "manifest unknown",
    "not found",
    "pull access denied",
    "repository does not exist",
    "no such image",
)

_CONTAINER_GONE_MARKERS = ("no such container",)


@dataclass(slots=True)
class DockerBackend:
    name: str = "docker"
    binary: str = "docker"
    run_as_host_user: bool = True
    control_timeout: float = 120.0
    pull_timeout: float = 1800.0
    extra_run_args: list[str] = field(default_factory=list)
    _released: set[str] = field(default_factory=set, repr=False)

    def acquire(self, image_reference: str, mount_plan: MountPlan) -> EnvironmentHandle:
        self._ensure_runtime()
        self._ensure_image(image_reference)

        container_name = f"contractforge-{uuid.uuid4().hex[:8]}"
        cmd = [self.binary, "run", "--detach", "--name", container_name]
        for mount in mount_plan.mounts:
            fields = ["type=bind", f"source={mount.source}", f"target={mount.target}"]
            if mount.read_only:
                fields.append("readonly")
            cmd.extend(["--mount", _mount_spec(fields)])
        if self.run_as_host_user and hasattr(os, "getuid"):
            cmd.extend(["--user", f"{os.getuid()}:{os.getgid()}"])
        cmd.extend(self.extra_run_args)
        cmd.extend([image_reference, "tail", "-f", "/dev/null"])

        result = self._control(cmd, operation="acquire")
        if result.returncode != 0:
            # a failed run can leave a created container behind
            self._control([self.binary, "rm", "--force", container_name], operation="acquire")
            raise RuntimeUnavailable(
                "Build container could not be started.",
                hint="Check that Docker can bind-mount the source and destination paths.",
                context={
                    "backend": self.name,
                    "operation": "acquire",
                    "returncode": str(result.returncode),
                    "stderr": _stderr(result),
                    "command": " ".join(cmd),
                },
            )
        return EnvironmentHandle(
            id=container_name,
            image_reference=image_reference,
            backend=self.name,
        )

    def exec(
        self,
        handle: EnvironmentHandle,
        command: CommandSpec,
        *,
        timeout: float | None = None,
    ) -> ExecResult:
        cmd = [self.binary, "exec"]
        if command.cwd is not None:
            cmd.extend(["--workdir", command.cwd])
        cmd.extend([handle.id, *command.argv])

        started = time.perf_counter()
        try:
            completed = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            return ExecResult(
                exit_code=None,
                output=_coerce_stream(exc.stdout),
                timed_out=True,
                duration_ms=(time.perf_counter() - started) * 1000.0,
            )
        except OSError as exc:
            raise RuntimeUnavailable(
                "Docker CLI could not be executed.",
                context={"backend": self.name, "operation": "exec", "error": str(exc)},
            ) from exc
        return ExecResult(
            exit_code=completed.returncode,
            output=completed.stdout or "",
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )

    def release(self, handle: EnvironmentHandle) -> None:
        if handle.id in self._released:
            return
        cmd = [self.binary, "rm", "--force", "--volumes", handle.id]
        try:
            result = self._control(cmd, operation="release")
        except RuntimeUnavailable as exc:
            raise EnvironmentReleaseError(
                "Build container could not be removed.",
                hint=f"Remove it manually with `docker rm -f {handle.id}`.",
                context={"backend": self.name, "container": handle.id, "error": exc.message},
            ) from exc
        if result.returncode != 0 and not _mentions(result, _CONTAINER_GONE_MARKERS):
            raise EnvironmentReleaseError(
                "Build container could not be removed.",
                hint=f"Remove it manually with `docker rm -f {handle.id}`.",
                context={
                    "backend": self.name,
                    "container": handle.id,
                    "returncode": str(result.returncode),
                    "stderr": _stderr(result),
                },
            )
        self._released.add(handle.id)

    def _ensure_runtime(self) -> None:
        if shutil.which(self.binary) is None:
            raise RuntimeUnavailable(
                f"Docker backend requires `{self.binary}` in PATH.",
                hint="Install Docker, or build with --dockerless.",
                context={"backend": self.name, "operation": "acquire"},
            )
        result = self._control(
            [self.binary, "info", "--format", "{{.ServerVersion}}"],
            operation="acquire",
        )
        if result.returncode != 0:
            raise RuntimeUnavailable(
                "Docker daemon did not respond.",
                hint="Check that Docker is running and that the current user may access it.",
                context={
                    "backend": self.name,
                    "operation": "acquire",
                    "returncode": str(result.returncode),
                    "stderr": _stderr(result),
                },
            )

    def _ensure_image(self, image_reference: str) -> None:
        inspect = self._control(
            [self.binary, "image", "inspect", "--format", "{{.Id}}", image_reference],
            operation="acquire",
        )
        if inspect.returncode == 0:
            return
        pull = self._control(
            [self.binary, "pull", "--quiet", image_reference],
            operation="acquire",
            timeout=self.pull_timeout,
        )
        if pull.returncode == 0:
            return
        if _mentions(pull, _IMAGE_MISSING_MARKERS):
            raise ImageNotFound(
                "Toolchain image could not be found.",
                hint="Check the toolchain tag and that the registry is reachable.",
                context={
                    "backend": self.name,
                    "image": image_reference,
                    "stderr": _stderr(pull),
                },
            )
        raise RuntimeUnavailable(
            "Toolchain image could not be pulled.",
            hint="Check network access to the image registry.",
            context={"backend": self.name, "image": image_reference, "stderr": _stderr(pull)},
        )

    def _control(
        self,
        cmd: list[str],
        *,
        operation: str,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.control_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise RuntimeUnavailable(
                "Docker did not answer in time.",
                context={
                    "backend": self.name,
                    "operation": operation,
                    "timeout": str(exc.timeout),
                    "command": " ".join(cmd),
                },
            ) from exc
        except OSError as exc:
            raise RuntimeUnavailable(
                "Docker CLI could not be executed.",
                context={"backend": self.name, "operation": operation, "error": str(exc)},
            ) from exc


def _mount_spec(fields: list[str]) -> str:
    """Encode --mount fields the way docker parses them (one CSV record)."""
    buffer = io.StringIO()
    csv.writer(buffer, lineterminator="").writerow(fields)
    return buffer.getvalue()


def _stderr(result: subprocess.CompletedProcess[str]) -> str:
    return result.stderr[:2000] if result.stderr else ""


def _mentions(result: subprocess.CompletedProcess[str], markers: tuple[str, ...]) -> bool:
    text = f"{result.stderr or ''}\n{result.stdout or ''}".lower()
    return any(marker in text for marker in markers)


def _coerce_stream(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
