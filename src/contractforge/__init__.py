"""Public package entrypoint for reproducible smart-contract builds."""

from .build import build_target
from .config import BuildOptions
from .errors import (
    ConfigurationError,
    DestinationUncreatable,
    EnvironmentFailure,
    EnvironmentReleaseError,
    ForgeError,
    HarvestFailure,
    ImageNotFound,
    RuntimeUnavailable,
    SourceInvalid,
    SourceNotFound,
    StageFailure,
    StageTimeout,
    UnknownToolchainTag,
)
from .models import BuildOutcome, BuildRequest, MountPlan, PipelineStage, ResolvedToolchain
from .observability import StructuredLogger
from .pipeline import PipelineExecutor
from .toolchain import PROGRAM_VERSION, resolve
from .workspace import bind

__version__ = PROGRAM_VERSION

__all__ = [
    "BuildOptions",
    "BuildOutcome",
    "BuildRequest",
    "ConfigurationError",
    "DestinationUncreatable",
    "EnvironmentFailure",
    "EnvironmentReleaseError",
    "ForgeError",
    "HarvestFailure",
    "ImageNotFound",
    "MountPlan",
    "PipelineExecutor",
    "PipelineStage",
    "ResolvedToolchain",
    "RuntimeUnavailable",
    "SourceInvalid",
    "SourceNotFound",
    "StageFailure",
    "StageTimeout",
    "StructuredLogger",
    "UnknownToolchainTag",
    "__version__",
    "bind",
    "build_target",
    "resolve",
]
