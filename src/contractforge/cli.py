"""Command-line surface: ``contractforge build`` and ``contractforge toolchains``."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any, TextIO

from contractforge.backends.base import IsolationBackend
from contractforge.backends.docker import DockerBackend
from contractforge.backends.local import LocalBackend
from contractforge.build import build_target
from contractforge.config import DEFAULT_EXEC_TIMEOUT, BuildOptions
from contractforge.errors import ConfigurationError, ExitCode
from contractforge.models import BuildOutcome
from contractforge.observability import StructuredLogger
from contractforge.toolchain import PROGRAM_VERSION, TOOLCHAINS


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="contractforge",
        description="Reproducibly build Rust smart contracts into WebAssembly.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {PROGRAM_VERSION}")
    commands = parser.add_subparsers(dest="command", required=True)

    build = commands.add_parser("build", help="Build contract source into .wasm artifacts.")
    build.add_argument("--source", required=True, help="Contract crate or workspace directory.")
    build.add_argument(
        "--destination",
        required=True,
        help="Directory to receive the .wasm files (created if missing).",
    )
    build.add_argument(
        "--toolchain-tag",
        default=None,
        help=f"Pinned toolchain tag (default: {PROGRAM_VERSION}).",
    )
    build.add_argument(
        "--dockerless",
        action="store_true",
        help="Use the host toolchain instead of a container. Not reproducible.",
    )
    build.add_argument("--locked", action="store_true", help="Require Cargo.lock to be up to date.")
    build.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_EXEC_TIMEOUT,
        help="Per-command timeout in seconds.",
    )
    build.add_argument("--workers", type=int, default=None, help="Parallel strip/optimize jobs.")
    build.add_argument(
        "--report",
        type=Path,
        default=None,
        help="Write a build report (CBOR for a .cbor suffix, JSON otherwise).",
    )
    build.add_argument("--log-file", type=Path, default=None, help="Write JSON-lines logs.")
    build.add_argument("-v", "--verbose", action="store_true", help="Echo log records to stderr.")

    commands.add_parser("toolchains", help="List published toolchain tags.")
    return parser


def main(argv: Sequence[str] | None = None, *, backend: IsolationBackend | None = None) -> int:
    args = _parser().parse_args(argv)
    if args.command == "toolchains":
        return _list_toolchains(sys.stdout)
    return _build(args, backend=backend)


def _build(args: argparse.Namespace, *, backend: IsolationBackend | None) -> int:
    logger = StructuredLogger(sink=_stderr_sink if args.verbose else None)
    try:
        options = BuildOptions(
            locked=args.locked,
            exec_timeout=args.timeout,
            workers=args.workers,
        )
        if backend is None:
            backend = (
                LocalBackend()
                if args.dockerless
                else DockerBackend(run_as_host_user=options.run_as_host_user)
            )
        outcome = build_target(
            args.source,
            args.destination,
            toolchain_tag=args.toolchain_tag,
            backend=backend,
            options=options,
            logger=logger,
        )
    except ConfigurationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        _write_logs(logger, args.log_file)
        return int(ExitCode.CONFIGURATION)

    if args.report is not None:
        if args.report.suffix == ".cbor":
            outcome.to_cbor(args.report)
        else:
            outcome.to_json(args.report)
    _write_logs(logger, args.log_file)
    _summarize(outcome)
    return outcome.exit_code


def _summarize(outcome: BuildOutcome) -> None:
    if outcome.ok:
        print(f"Built {len(outcome.produced_artifacts)} contract(s) into {outcome.destination}:")
        for artifact in outcome.artifacts:
            print(f"  {artifact.name}  sha256:{artifact.sha256}")
        return
    if outcome.stage_failed is not None and outcome.error is not None:
        print(f"error: {outcome.error.message}", file=sys.stderr)
    elif outcome.stage_failed is not None:
        print(f"error: the {outcome.stage_failed} stage failed.", file=sys.stderr)
    elif outcome.error is not None:
        print(f"error: {outcome.error}", file=sys.stderr)
    if outcome.diagnostic_text and outcome.stage_failed is not None:
        print(outcome.diagnostic_text.rstrip("\n"), file=sys.stderr)
    if outcome.error is not None and outcome.error.hint and outcome.stage_failed is not None:
        print(f"Hint: {outcome.error.hint}", file=sys.stderr)


def _list_toolchains(stream: TextIO) -> int:
    for tag, toolchain in TOOLCHAINS.items():
        marker = "*" if tag == PROGRAM_VERSION else " "
        print(
            f"{marker} {tag:<10} rustc {toolchain.compiler_version:<8} "
            f"wasm-snip {toolchain.stripper_version:<6} "
            f"binaryen {toolchain.optimizer_version:<4} {toolchain.image_reference}",
            file=stream,
        )
    return int(ExitCode.SUCCESS)


def _write_logs(logger: StructuredLogger, path: Path | None) -> None:
    if path is not None:
        logger.to_json_lines(path)


def _stderr_sink(record: dict[str, Any]) -> None:
    print(json.dumps(record, sort_keys=True), file=sys.stderr)
