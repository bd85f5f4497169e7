"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from contractforge.backends.inprocess import InProcessBackend

CONTRACT_MANIFEST = """\
[package]
name = "hello-contract"
version = "0.1.0"
edition = "2021"

[lib]
crate-type = ["cdylib"]
"""


@pytest.fixture
def inprocess_backend() -> InProcessBackend:
    """Provide an in-process backend for tests that run the pipeline."""
    return InProcessBackend()


@pytest.fixture
def contract_source(tmp_path: Path) -> Path:
    """A single-crate contract source tree named ``hello-contract``."""
    return write_crate(tmp_path / "contract", CONTRACT_MANIFEST)


def write_crate(directory: Path, manifest: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "Cargo.toml").write_text(manifest, encoding="utf-8")
    src = directory / "src"
    src.mkdir(exist_ok=True)
    (src / "lib.rs").write_text("#[no_mangle]\npub extern \"C\" fn entrypoint() {}\n")
    return directory


def snapshot(directory: Path) -> dict[str, bytes]:
    return {
        path.relative_to(directory).as_posix(): path.read_bytes()
        for path in sorted(directory.rglob("*"))
        if path.is_file()
    }
