"""Cargo manifest reading: buildable crates and local path dependencies."""

from __future__ import annotations

import tomllib
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

from contractforge.errors import SourceInvalid
from contractforge.models import Crate

MANIFEST_NAME = "Cargo.toml"

_DEPENDENCY_TABLES = ("dependencies", "build-dependencies")


def load_manifest(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise SourceInvalid(
            "Cargo manifest is not valid TOML.",
            hint="Fix the manifest syntax and build again.",
            context={"manifest": str(path), "error": str(exc)},
        ) from exc
    except OSError as exc:
        raise SourceInvalid(
            "Cargo manifest could not be read.",
            context={"manifest": str(path), "error": exc.strerror or str(exc)},
        ) from exc


def discover_crates(source: Path) -> tuple[Crate, ...]:
    """Return every buildable crate declared by the manifest at *source*.

    A root ``[package]`` counts as a crate. ``[workspace] members`` glob patterns
    are expanded relative to *source*, minus ``exclude``.
    """
    manifest_path = source / MANIFEST_NAME
    manifest = load_manifest(manifest_path)
    package = manifest.get("package")
    workspace = manifest.get("workspace")
    if not isinstance(package, Mapping) and not isinstance(workspace, Mapping):
        raise SourceInvalid(
            "Cargo manifest declares neither a [package] nor a [workspace].",
            hint="Point --source at the contract crate or workspace root.",
            context={"manifest": str(manifest_path)},
        )

    crates: dict[Path, Crate] = {}
    if isinstance(package, Mapping):
        crates[manifest_path] = _crate_from(manifest, manifest_path)
    if isinstance(workspace, Mapping):
        for member_dir in _workspace_members(source, workspace):
            member_manifest_path = member_dir / MANIFEST_NAME
            if member_manifest_path in crates:
                continue
            member_manifest = load_manifest(member_manifest_path)
            if not isinstance(member_manifest.get("package"), Mapping):
                raise SourceInvalid(
                    "Workspace member has no [package] table.",
                    context={"member": str(member_dir)},
                )
            crates[member_manifest_path] = _crate_from(member_manifest, member_manifest_path)

    if not crates:
        raise SourceInvalid(
            "Cargo manifest declares no buildable crates.",
            hint="Add workspace members or a [package] table.",
            context={"manifest": str(manifest_path)},
        )
    return tuple(sorted(crates.values(), key=lambda crate: crate.contract_name))


def dependency_paths(source: Path, crates: tuple[Crate, ...] = ()) -> tuple[Path, ...]:
    """Resolve local ``path = ...`` dependencies reachable from *source*, recursively."""
    seen: set[Path] = set()
    pending = [source.resolve()]
    pending.extend(crate.manifest_path.parent.resolve() for crate in crates)
    visited_manifests: set[Path] = set()
    while pending:
        crate_dir = pending.pop()
        manifest_path = crate_dir / MANIFEST_NAME
        if manifest_path in visited_manifests:
            continue
        visited_manifests.add(manifest_path)
        manifest = load_manifest(manifest_path)
        for raw_path in _declared_paths(manifest):
            dependency_dir = (crate_dir / raw_path).resolve()
            if not (dependency_dir / MANIFEST_NAME).is_file():
                raise SourceInvalid(
                    "Path dependency does not point at a crate.",
                    hint="Check the relative `path` of the dependency in the manifest.",
                    context={"manifest": str(manifest_path), "path": raw_path},
                )
            if dependency_dir not in seen:
                seen.add(dependency_dir)
                pending.append(dependency_dir)
    return tuple(sorted(seen))


def _crate_from(manifest: Mapping[str, Any], manifest_path: Path) -> Crate:
    package = manifest["package"]
    name = package.get("name")
    if not isinstance(name, str) or not name:
        raise SourceInvalid(
            "Cargo package has no name.",
            context={"manifest": str(manifest_path)},
        )
    lib = manifest.get("lib")
    lib_name = lib.get("name") if isinstance(lib, Mapping) else None
    return Crate(
        package=name,
        manifest_path=manifest_path,
        lib_name=lib_name if isinstance(lib_name, str) and lib_name else None,
    )


def _workspace_members(source: Path, workspace: Mapping[str, Any]) -> Iterator[Path]:
    excluded = {(source / entry).resolve() for entry in workspace.get("exclude", ())}
    for pattern in workspace.get("members", ()):
        matches = sorted(source.glob(pattern)) if _is_glob(pattern) else [source / pattern]
        if not matches:
            raise SourceInvalid(
                "Workspace member pattern matched nothing.",
                context={"pattern": pattern},
            )
        for member_dir in matches:
            if member_dir.resolve() in excluded or not member_dir.is_dir():
                continue
            if not (member_dir / MANIFEST_NAME).is_file():
                if _is_glob(pattern):
                    continue
                raise SourceInvalid(
                    "Workspace member has no Cargo manifest.",
                    context={"member": str(member_dir)},
                )
            yield member_dir


def _declared_paths(manifest: Mapping[str, Any]) -> Iterator[str]:
    tables: list[Any] = [manifest.get(name) for name in _DEPENDENCY_TABLES]
    workspace = manifest.get("workspace")
    if isinstance(workspace, Mapping):
        tables.append(workspace.get("dependencies"))
    for target in (manifest.get("target") or {}).values():
        if isinstance(target, Mapping):
            tables.extend(target.get(name) for name in _DEPENDENCY_TABLES)
    for table in tables:
        if not isinstance(table, Mapping):
            continue
        for detail in table.values():
            if isinstance(detail, Mapping) and isinstance(detail.get("path"), str):
                yield detail["path"]


def _is_glob(pattern: str) -> bool:
    return any(char in pattern for char in "*?[")
