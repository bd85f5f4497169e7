"""Source/destination validation and mount plan derivation."""

from __future__ import annotations

import os
from pathlib import Path

from contractforge.errors import DestinationUncreatable, SourceNotFound
from contractforge.manifests import MANIFEST_NAME, dependency_paths, discover_crates
from contractforge.models import MountPlan


def bind(source_path: str | Path, destination_path: str | Path) -> MountPlan:
    """Validate the source tree, ensure the destination exists, and plan the mounts.

    Never writes to the source tree. May create the destination directory.
    """
    source = _validated_source(Path(source_path))
    crates = discover_crates(source)
    dependencies = [
        path for path in dependency_paths(source, crates) if not path.is_relative_to(source)
    ]
    destination = _ensured_destination(Path(destination_path))

    mount_root = Path(os.path.commonpath([source, *dependencies])) if dependencies else source
    copy_dirs = [source, *dependencies]
    return MountPlan(
        host_source=mount_root,
        host_destination=destination,
        crate_subpath=_posix_relative(source, mount_root),
        copy_subpaths=tuple(sorted({_posix_relative(path, mount_root) for path in copy_dirs})),
        crates=crates,
    )


def _validated_source(source: Path) -> Path:
    if not source.exists():
        raise SourceNotFound(
            "Source path does not exist.",
            hint="Check that --source points at the contract source directory.",
            context={"source": str(source)},
        )
    if not source.is_dir():
        raise SourceNotFound(
            "Source path is not a directory.",
            context={"source": str(source)},
        )
    resolved = source.resolve()
    if not (resolved / MANIFEST_NAME).is_file():
        raise SourceNotFound(
            "No Cargo manifest found at the source root.",
            hint=f"The source directory must contain {MANIFEST_NAME}.",
            context={"source": str(resolved)},
        )
    return resolved


def _ensured_destination(destination: Path) -> Path:
    try:
        destination.mkdir(parents=True, exist_ok=True)
    except (FileExistsError, NotADirectoryError) as exc:
        raise DestinationUncreatable(
            "Destination path collides with an existing file.",
            hint="Choose a directory path for --destination.",
            context={"destination": str(destination), "error": str(exc)},
        ) from exc
    except OSError as exc:
        raise DestinationUncreatable(
            "Destination directory could not be created.",
            hint="Check write permissions on the destination's parent directories.",
            context={"destination": str(destination), "error": exc.strerror or str(exc)},
        ) from exc
    resolved = destination.resolve()
    if not os.access(resolved, os.W_OK | os.X_OK):
        raise DestinationUncreatable(
            "Destination directory is not writable.",
            hint="Grant write access or choose another destination.",
            context={"destination": str(resolved)},
        )
    return resolved


def _posix_relative(path: Path, root: Path) -> str:
    relative = path.relative_to(root).as_posix()
    return relative or "."
