"""Protocol for isolated build environments."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Protocol

from contractforge.errors import EnvironmentReleaseError, ForgeError
from contractforge.models import CommandSpec, EnvironmentHandle, ExecResult, MountPlan
from contractforge.observability import StructuredLogger


class IsolationBackend(Protocol):
    name: str

    def acquire(self, image_reference: str, mount_plan: MountPlan) -> EnvironmentHandle:
        """Provision one environment with the mount plan applied.

        Raises ``RuntimeUnavailable`` or ``ImageNotFound``.
        """

    def exec(
        self,
        handle: EnvironmentHandle,
        command: CommandSpec,
        *,
        timeout: float | None = None,
    ) -> ExecResult:
        """Run *command* to completion inside the environment."""

    def release(self, handle: EnvironmentHandle) -> None:
        """Tear the environment down. Safe to call more than once."""


@contextmanager
def provisioned(
    backend: IsolationBackend,
    image_reference: str,
    mount_plan: MountPlan,
    *,
    logger: StructuredLogger,
) -> Iterator[EnvironmentHandle]:
    """Acquire an environment and release it exactly once on every exit path.

    A release failure after a failed body is logged and the original error
    propagates. A release failure after a successful body is raised.
    """
    handle = backend.acquire(image_reference, mount_plan)
    logger.log(
        operation="acquire",
        backend=backend.name,
        message="Environment acquired.",
        extra={"environment": handle.id, "image": image_reference},
    )
    try:
        yield handle
    except BaseException:
        try:
            backend.release(handle)
        except ForgeError as release_error:
            logger.log(
                operation="release",
                backend=backend.name,
                level="error",
                message="Environment release failed after a pipeline error.",
                extra={"environment": handle.id, "error": release_error.message},
            )
        else:
            _log_released(logger, backend, handle)
        raise
    try:
        backend.release(handle)
    except EnvironmentReleaseError:
        raise
    except ForgeError as exc:
        raise EnvironmentReleaseError(
            "Build finished but the environment could not be removed.",
            hint="Remove it manually.",
            context={"environment": handle.id, "error": exc.message},
        ) from exc
    _log_released(logger, backend, handle)


def _log_released(
    logger: StructuredLogger,
    backend: IsolationBackend,
    handle: EnvironmentHandle,
) -> None:
    logger.log(
        operation="release",
        backend=backend.name,
        message="Environment released.",
        extra={"environment": handle.id},
    )
