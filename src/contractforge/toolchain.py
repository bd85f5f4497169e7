"""Pinned toolchain registry and tag resolution.

Every published tag maps to exactly one image and one set of component
versions. Entries are only ever appended; a tag is never reassigned, so
historical builds stay reproducible.
"""

from __future__ import annotations

from types import MappingProxyType

from contractforge.errors import UnknownToolchainTag
from contractforge.models import ResolvedToolchain

PROGRAM_VERSION = "0.5.0"

IMAGE_REPOSITORY = "docker.io/contractforge/wasm-toolchain"


def _entry(tag: str, *, rustc: str, wasm_snip: str, binaryen: str) -> ResolvedToolchain:
    return ResolvedToolchain(
        tag=tag,
        image_reference=f"{IMAGE_REPOSITORY}:{tag}",
        compiler_version=rustc,
        stripper_version=wasm_snip,
        optimizer_version=binaryen,
    )


TOOLCHAINS: MappingProxyType[str, ResolvedToolchain] = MappingProxyType(
    {
        entry.tag: entry
        for entry in (
            _entry("mainnet01", rustc="1.71.0", wasm_snip="0.4.0", binaryen="112"),
            _entry("0.4.2", rustc="1.74.0", wasm_snip="0.4.0", binaryen="114"),
            _entry("0.4.3", rustc="1.77.1", wasm_snip="0.4.0", binaryen="114"),
            _entry("0.5.0", rustc="1.77.1", wasm_snip="0.4.0", binaryen="116"),
        )
    }
)


def resolve(tag: str | None, program_version: str = PROGRAM_VERSION) -> ResolvedToolchain:
    """Resolve *tag* (default: the program version) to its pinned toolchain."""
    selected = program_version if tag is None else tag.strip()
    try:
        return TOOLCHAINS[selected]
    except KeyError:
        raise UnknownToolchainTag(selected, known=published_tags()) from None


def published_tags() -> tuple[str, ...]:
    return tuple(TOOLCHAINS)
