"""
Data models shared by every stage of the translator.

This module contains the enums and dataclasses describing platforms, feature
flags, resource declarations and resource tables. Resource kinds are a small
tagged variant dispatched with ``match`` by the resolver and the generators.
"""

from dataclasses import dataclass, field
from enum import Enum, Flag, auto


class Platform(Enum):
    """Supported target platforms. Values are stored in variant containers."""

    DIRECT3D12 = 1
    VULKAN = 2
    MACOS = 3
    IOS = 4
    ANDROID_VULKAN = 11


class Language(Enum):
    """Native shading languages produced by the generators."""

    HLSL = auto()
    GLSL = auto()
    MSL = auto()


class Stage(Enum):
    """Shader pipeline stage."""

    VERTEX = auto()
    FRAGMENT = auto()
    COMPUTE = auto()


class Feature(Flag):
    """Named capability flags attached to binary outputs.

    Bit positions are stable: they are written into variant containers and
    matched by the runtime loader.
    """

    PRIM_ID = 1 << 0
    RAYTRACING = 1 << 1
    VRS = 1 << 2
    MULTIVIEW = 1 << 3
    NO_AB = 1 << 5
    ICB = 1 << 6
    VDP = 1 << 7
    INVARIANT = 1 << 8
    ATOMICS_64 = 1 << 9
    DYNAMIC_RESOURCES = 1 << 10


NO_FEATURES = Feature(0)


def parse_feature(name: str) -> Feature:
    """Parse a single feature name, with or without the ``FT_`` prefix.

    Args:
        name: Feature name such as ``FT_PRIM_ID`` or ``PRIM_ID``

    Returns:
        The matching feature flag

    Raises:
        ValueError: If the name is not a known feature
    """
    key = name.strip()
    if key.startswith("FT_"):
        key = key[3:]
    try:
        return Feature[key]
    except KeyError:
        raise ValueError(f"Unknown feature flag: {name}") from None


def parse_features(names: list[str] | tuple[str, ...]) -> Feature:
    """Combine a list of feature names into one flag set."""
    flags = NO_FEATURES
    for name in names:
        if name.strip():
            flags |= parse_feature(name)
    return flags


def feature_names(flags: Feature) -> list[str]:
    """List the member names of a flag set in bit order."""
    return [f.name for f in Feature if f.value and f in flags]


def feature_suffix(flags: Feature) -> str:
    """File-name suffix for a flag set; empty for the empty set."""
    return "_".join(feature_names(flags))


class UpdateFrequency(Enum):
    """Frequency classes a resource set may be named after."""

    Persistent = 0
    PerFrame = 1
    PerBatch = 2
    PerDraw = 3


# Resource kinds


@dataclass(frozen=True)
class SamplerKind:
    """Sampler state."""

    comparison: bool = False

    @property
    def read_write(self) -> bool:
        return False


@dataclass(frozen=True)
class TextureKind:
    """Sampled or storage texture.

    Attributes:
        shape: One of ``1D``, ``2D``, ``2DArray``, ``3D``, ``Cube``, ``Depth2D``
        element_type: Texel type (e.g. ``float4``)
        read_write: True for storage (RW) textures
    """

    shape: str
    element_type: str
    read_write: bool = False


@dataclass(frozen=True)
class BufferKind:
    """Structured buffer of ``element_type``."""

    element_type: str
    read_write: bool = False


@dataclass(frozen=True)
class ConstantBufferKind:
    """Constant buffer whose layout is the struct ``struct_name``."""

    struct_name: str

    @property
    def read_write(self) -> bool:
        return False


ResourceKind = SamplerKind | TextureKind | BufferKind | ConstantBufferKind


def kind_label(kind: ResourceKind) -> str:
    """Short stable label for a resource kind, used in reflection output."""
    match kind:
        case SamplerKind(comparison=True):
            return "comparison_sampler"
        case SamplerKind():
            return "sampler"
        case TextureKind(read_write=True):
            return "rw_texture"
        case TextureKind():
            return "texture"
        case BufferKind(read_write=True):
            return "rw_buffer"
        case BufferKind():
            return "buffer"
        case ConstantBufferKind():
            return "cbuffer"
    raise ValueError(f"Unknown resource kind: {kind!r}")


# Declarations


@dataclass(frozen=True)
class ResourceDeclaration:
    """A single bindable resource inside a resource set.

    Attributes:
        name: Name, unique within its table
        kind: Tagged resource kind
        frequency: Name of the set the declaration appeared in
        array_length: Number of elements (1 for scalars); the raw size text
            when it is neither an integer literal nor a numeric #define
        is_array: True when declared with brackets, even for length 1
        file: Source file of the declaration
        line: Source line of the declaration
    """

    name: str
    kind: ResourceKind
    frequency: str
    array_length: int | str = 1
    is_array: bool = False
    file: str | None = None
    line: int | None = None

    @property
    def read_write(self) -> bool:
        return self.kind.read_write


@dataclass
class ResourceSet:
    """Ordered group of declarations sharing an update frequency."""

    name: str
    declarations: list[ResourceDeclaration] = field(default_factory=list)
    is_fragment: bool = False
    file: str | None = None
    line: int | None = None


@dataclass
class SetReference:
    """Use of a shared set fragment inside a table."""

    name: str
    file: str | None = None
    line: int | None = None


@dataclass
class ShaderResourceTable:
    """Named ordered sequence of inline sets and fragment references."""

    name: str
    items: list[ResourceSet | SetReference] = field(default_factory=list)
    file: str | None = None
    line: int | None = None


# Resolution results


@dataclass(frozen=True)
class ResolvedResource:
    """A declaration annotated with its set placement and index."""

    declaration: ResourceDeclaration
    set_name: str
    set_ordinal: int
    index: int

    @property
    def name(self) -> str:
        return self.declaration.name

    @property
    def kind(self) -> ResourceKind:
        return self.declaration.kind

    @property
    def count(self) -> int:
        return self.declaration.array_length


@dataclass(frozen=True)
class ResolvedSet:
    """A set inside a resolved table."""

    name: str
    ordinal: int
    resources: tuple[ResolvedResource, ...]
    base_index: int
    is_fragment: bool = False

    @property
    def element_count(self) -> int:
        return sum(r.count for r in self.resources)


@dataclass
class ResolvedTable:
    """A resource table with stable indices assigned."""

    name: str
    sets: list[ResolvedSet] = field(default_factory=list)

    @property
    def resources(self) -> list[ResolvedResource]:
        return [r for s in self.sets for r in s.resources]

    @property
    def by_name(self) -> dict[str, ResolvedResource]:
        return {r.name: r for r in self.resources}

    def lookup(self, name: str) -> ResolvedResource | None:
        return self.by_name.get(name)

    def cross_reference(self) -> dict[str, tuple[str, int]]:
        """Map every resource name to its (set, index) pair."""
        return {r.name: (r.set_name, r.index) for r in self.resources}


@dataclass(frozen=True)
class ShaderVariant:
    """One compiled binary for a (platform, feature set) pair."""

    platform: Platform
    features: Feature
    data: bytes

    @property
    def key(self) -> tuple[Platform, Feature]:
        return (self.platform, self.features)
