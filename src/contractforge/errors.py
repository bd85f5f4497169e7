"""Typed build error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import IntEnum, StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from contractforge.models import PipelineStage


class ErrorCode(StrEnum):
    """Stable error identifiers used across API surfaces."""

    CONFIGURATION = "E_CONFIGURATION"
    ENVIRONMENT = "E_ENVIRONMENT"
    STAGE = "E_STAGE"
    HARVEST = "E_HARVEST"


class ExitCode(IntEnum):
    """Process exit statuses reported by the command surface."""

    SUCCESS = 0
    CONFIGURATION = 2
    RUNTIME_UNAVAILABLE = 3
    IMAGE_NOT_FOUND = 4
    ENVIRONMENT = 5
    COMPILE_FAILED = 10
    STRIP_FAILED = 11
    OPTIMIZE_FAILED = 12
    NO_ARTIFACTS = 13


class ForgeError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]
    exit_code: ExitCode = ExitCode.ENVIRONMENT

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    @property
    def message(self) -> str:
        return super().__str__()

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": self.message,
            "exit_code": int(self.exit_code),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


# ---------------------------------------------------------------------------
# Configuration errors: raised before any environment is provisioned
# ---------------------------------------------------------------------------


class ConfigurationError(ForgeError):
    exit_code = ExitCode.CONFIGURATION

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CONFIGURATION, hint=hint, context=context)


class UnknownToolchainTag(ConfigurationError):
    def __init__(self, tag: str, *, known: tuple[str, ...] = ()) -> None:
        super().__init__(
            f"Toolchain tag {tag!r} is not recognised.",
            hint="Run `contractforge toolchains` to list the published tags.",
            context={"tag": tag, "known_tags": ", ".join(known)},
        )
        self.tag = tag


class SourceNotFound(ConfigurationError):
    pass


class SourceInvalid(ConfigurationError):
    pass


class DestinationUncreatable(ConfigurationError):
    pass


# ---------------------------------------------------------------------------
# Environment errors: runtime availability and environment lifetime
# ---------------------------------------------------------------------------


class EnvironmentFailure(ForgeError):
    exit_code = ExitCode.ENVIRONMENT

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.ENVIRONMENT, hint=hint, context=context)


class RuntimeUnavailable(EnvironmentFailure):
    exit_code = ExitCode.RUNTIME_UNAVAILABLE


class ImageNotFound(EnvironmentFailure):
    exit_code = ExitCode.IMAGE_NOT_FOUND


class EnvironmentReleaseError(EnvironmentFailure):
    pass


# ---------------------------------------------------------------------------
# Pipeline errors
# ---------------------------------------------------------------------------


_STAGE_EXIT_CODES = {
    "compile": ExitCode.COMPILE_FAILED,
    "strip": ExitCode.STRIP_FAILED,
    "optimize": ExitCode.OPTIMIZE_FAILED,
}


class StageFailure(ForgeError):
    """A tool inside the environment failed or did not produce its expected output."""

    def __init__(
        self,
        stage: PipelineStage,
        diagnostic: str,
        *,
        message: str | None = None,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            message or f"The {stage} stage failed.",
            code=ErrorCode.STAGE,
            hint=hint,
            context={"stage": str(stage), **dict(context or {})},
        )
        self.stage = stage
        self.diagnostic = diagnostic
        self.exit_code = _STAGE_EXIT_CODES[str(stage)]

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["diagnostic"] = self.diagnostic
        return payload


class StageTimeout(StageFailure):
    pass


class HarvestFailure(ForgeError):
    exit_code = ExitCode.NO_ARTIFACTS

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.HARVEST, hint=hint, context=context)


__all__ = [
    "ConfigurationError",
    "DestinationUncreatable",
    "EnvironmentFailure",
    "EnvironmentReleaseError",
    "ErrorCode",
    "ExitCode",
    "ForgeError",
    "HarvestFailure",
    "ImageNotFound",
    "RuntimeUnavailable",
    "SourceInvalid",
    "SourceNotFound",
    "StageFailure",
    "StageTimeout",
    "UnknownToolchainTag",
]
