"""Variant container format.

A container bundles every compiled variant of one binary declaration::

    header   : magic b"FSLV", u32 version, u32 count
    directory: count x { u32 platform, u32 reserved, u64 feature bits,
                         u64 offset, u64 size }
    payloads : concatenated variant bytes

All integers are little endian, offsets are relative to the start of the
file, and the directory is sorted by (platform, feature bits). Lookup is by
exact key only.
"""

import struct
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from fslc.build.artifacts import atomic_write
from fslc.compiler.errors import ContainerFormatError, VariantNotFoundError
from fslc.compiler.models import Feature, Platform, ShaderVariant, feature_names

MAGIC = b"FSLV"
VERSION = 1
CONTAINER_EXTENSION = ".fslv"

HEADER = struct.Struct("<4sII")
ENTRY = struct.Struct("<IIQQQ")


def _describe(platform: Platform, features: Feature) -> str:
    names = ", ".join(feature_names(features)) or "no features"
    return f"{platform.name} ({names})"


@dataclass
class VariantContainer:
    """All compiled variants of one binary, keyed by (platform, features)."""

    name: str
    variants: list[ShaderVariant] = field(default_factory=list)

    def add(self, variant: ShaderVariant) -> None:
        """Add a variant.

        Raises:
            ContainerFormatError: If a variant with the same key is present
        """
        if any(v.key == variant.key for v in self.variants):
            raise ContainerFormatError(
                f"container '{self.name}' already holds variant "
                f"{_describe(variant.platform, variant.features)}"
            )
        self.variants.append(variant)

    def sorted_variants(self) -> list[ShaderVariant]:
        return sorted(self.variants, key=lambda v: (v.platform.value, v.features.value))

    def lookup(self, platform: Platform, features: Feature) -> ShaderVariant:
        """Variant whose key equals (platform, features).

        Raises:
            VariantNotFoundError: If no variant matches exactly
        """
        for variant in self.variants:
            if variant.key == (platform, features):
                return variant
        raise VariantNotFoundError(
            f"no matching variant {_describe(platform, features)} in '{self.name}'"
        )


def pack(container: VariantContainer) -> bytes:
    """Serialize a container."""
    variants = container.sorted_variants()
    offset = HEADER.size + ENTRY.size * len(variants)

    directory = bytearray()
    for variant in variants:
        directory += ENTRY.pack(
            variant.platform.value, 0, variant.features.value, offset, len(variant.data)
        )
        offset += len(variant.data)

    payload = b"".join(v.data for v in variants)
    return HEADER.pack(MAGIC, VERSION, len(variants)) + bytes(directory) + payload


def _read_directory(data: bytes) -> list[tuple[Platform, Feature, int, int]]:
    if len(data) < HEADER.size:
        raise ContainerFormatError("container is shorter than its header")
    magic, version, count = HEADER.unpack_from(data, 0)
    if magic != MAGIC:
        raise ContainerFormatError(f"bad container magic {magic!r}")
    if version != VERSION:
        raise ContainerFormatError(f"unsupported container version {version}")
    if len(data) < HEADER.size + ENTRY.size * count:
        raise ContainerFormatError("container directory is truncated")

    entries = []
    seen = set()
    for i in range(count):
        platform_value, _, bits, offset, size = ENTRY.unpack_from(
            data, HEADER.size + ENTRY.size * i
        )
        try:
            platform = Platform(platform_value)
            features = Feature(bits)
        except ValueError as e:
            raise ContainerFormatError(f"directory entry {i}: {e}") from e
        if offset + size > len(data):
            raise ContainerFormatError(f"directory entry {i} points past the end of the file")
        if (platform, features) in seen:
            raise ContainerFormatError(
                f"duplicate variant {_describe(platform, features)} in container"
            )
        seen.add((platform, features))
        entries.append((platform, features, offset, size))
    return entries


def unpack(data: bytes, name: str = "") -> VariantContainer:
    """Parse a serialized container.

    Raises:
        ContainerFormatError: If the data is malformed or holds duplicate keys
    """
    container = VariantContainer(name)
    for platform, features, offset, size in _read_directory(data):
        container.variants.append(
            ShaderVariant(platform, features, bytes(data[offset : offset + size]))
        )
    return container


def lookup(data: bytes, platform: Platform, features: Feature) -> bytes:
    """Payload of the variant matching (platform, features) exactly.

    Raises:
        ContainerFormatError: If the data is malformed
        VariantNotFoundError: If no variant matches exactly
    """
    for entry_platform, entry_features, offset, size in _read_directory(data):
        if entry_platform == platform and entry_features == features:
            return bytes(data[offset : offset + size])
    raise VariantNotFoundError(f"no matching variant {_describe(platform, features)}")


def enumerate_variants(data: bytes) -> list[tuple[Platform, Feature, int]]:
    """Directory of a container as (platform, features, size) in stored order."""
    return [(p, f, size) for p, f, _, size in _read_directory(data)]


def write_container(path: str | Path, container: VariantContainer) -> Path:
    data = pack(container)
    logger.info(f"Packed {len(container.variants)} variants into {path}")
    return atomic_write(path, data)


def read_container(path: str | Path) -> VariantContainer:
    path = Path(path)
    return unpack(path.read_bytes(), path.stem)
