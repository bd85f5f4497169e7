"""Top-level build entrypoint: select, bind, run."""

from __future__ import annotations

from pathlib import Path

from contractforge.backends.base import IsolationBackend
from contractforge.backends.docker import DockerBackend
from contractforge.backends.local import LocalBackend
from contractforge.config import BuildOptions
from contractforge.models import BuildOutcome, BuildRequest
from contractforge.observability import StructuredLogger
from contractforge.pipeline import PipelineExecutor
from contractforge.toolchain import resolve
from contractforge.workspace import bind


def build_target(
    source: str | Path,
    destination: str | Path,
    *,
    toolchain_tag: str | None = None,
    backend: IsolationBackend | None = None,
    options: BuildOptions | None = None,
    logger: StructuredLogger | None = None,
) -> BuildOutcome:
    """Build the contract crate(s) at *source* into *destination*.

    Configuration problems (unknown tag, bad source, uncreatable destination)
    raise ``ConfigurationError`` before any environment is provisioned. Every
    later failure is reported through the returned ``BuildOutcome``.
    """
    request = BuildRequest(
        source_path=Path(source),
        destination_path=Path(destination),
        toolchain_tag=toolchain_tag,
    )
    return run_request(request, backend=backend, options=options, logger=logger)


def run_request(
    request: BuildRequest,
    *,
    backend: IsolationBackend | None = None,
    options: BuildOptions | None = None,
    logger: StructuredLogger | None = None,
) -> BuildOutcome:
    options = options or BuildOptions()
    logger = logger or StructuredLogger()
    toolchain = resolve(request.toolchain_tag)
    logger.log(
        operation="resolve",
        message="Toolchain resolved.",
        extra={"tag": toolchain.tag, "image": toolchain.image_reference},
    )
    plan = bind(request.source_path, request.destination_path)
    logger.log(
        operation="bind",
        message="Mount plan ready.",
        extra={
            "source": str(plan.host_source),
            "destination": str(plan.host_destination),
            "crates": [crate.contract_name for crate in plan.crates],
        },
    )
    if backend is None:
        backend = DockerBackend(run_as_host_user=options.run_as_host_user)
    if isinstance(backend, LocalBackend):
        logger.log(
            operation="resolve",
            backend=backend.name,
            level="warning",
            message="Building with the host toolchain; pinned versions are not enforced.",
            extra={"tag": toolchain.tag},
        )
    return PipelineExecutor(backend=backend, options=options, logger=logger).run(toolchain, plan)
