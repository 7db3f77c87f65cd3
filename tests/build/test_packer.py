"""Tests for the variant container format."""

import struct

import pytest

from fslc.build.packer import (
    HEADER,
    VariantContainer,
    enumerate_variants,
    lookup,
    pack,
    read_container,
    unpack,
    write_container,
)
from fslc.compiler.errors import ContainerFormatError, VariantNotFoundError
from fslc.compiler.models import NO_FEATURES, Feature, Platform, ShaderVariant


@pytest.fixture
def container() -> VariantContainer:
    container = VariantContainer("lit")
    container.add(ShaderVariant(Platform.MACOS, Feature.VRS, b"metal-vrs"))
    container.add(ShaderVariant(Platform.VULKAN, NO_FEATURES, b"spirv"))
    container.add(ShaderVariant(Platform.VULKAN, Feature.PRIM_ID, b"spirv-prim"))
    return container


def test_header(container):
    data = pack(container)
    magic, version, count = HEADER.unpack_from(data, 0)

    assert (magic, version, count) == (b"FSLV", 1, 3)


def test_directory_is_sorted(container):
    """Test that entries are stored by (platform, feature bits)."""
    entries = enumerate_variants(pack(container))

    assert [(p, f) for p, f, _ in entries] == [
        (Platform.VULKAN, NO_FEATURES),
        (Platform.VULKAN, Feature.PRIM_ID),
        (Platform.MACOS, Feature.VRS),
    ]
    assert [size for _, _, size in entries] == [5, 10, 9]


def test_lookup_exact_key(container):
    data = pack(container)

    assert lookup(data, Platform.VULKAN, Feature.PRIM_ID) == b"spirv-prim"
    assert lookup(data, Platform.VULKAN, NO_FEATURES) == b"spirv"


def test_lookup_has_no_partial_match(container):
    """Test that a superset of a stored flag set does not match it."""
    data = pack(container)

    with pytest.raises(VariantNotFoundError, match="no matching variant"):
        lookup(data, Platform.VULKAN, Feature.PRIM_ID | Feature.VRS)
    with pytest.raises(VariantNotFoundError):
        lookup(data, Platform.DIRECT3D12, NO_FEATURES)


def test_unpack(container):
    unpacked = unpack(pack(container), "lit")

    assert unpacked.lookup(Platform.MACOS, Feature.VRS).data == b"metal-vrs"
    assert len(unpacked.variants) == 3


def test_packing_is_deterministic(container):
    reordered = VariantContainer("lit", list(reversed(container.variants)))
    assert pack(reordered) == pack(container)


def test_duplicate_add(container):
    with pytest.raises(ContainerFormatError, match="already holds variant"):
        container.add(ShaderVariant(Platform.VULKAN, NO_FEATURES, b"other"))


def test_duplicate_in_data(container):
    """Test that a directory holding the same key twice is rejected."""
    duplicate = VariantContainer("dup")
    duplicate.variants = [
        ShaderVariant(Platform.VULKAN, NO_FEATURES, b"a"),
        ShaderVariant(Platform.VULKAN, NO_FEATURES, b"b"),
    ]

    with pytest.raises(ContainerFormatError, match="duplicate variant"):
        unpack(pack(duplicate))


@pytest.mark.parametrize(
    "data,message",
    [
        (b"FSL", "shorter than its header"),
        (struct.pack("<4sII", b"NOPE", 1, 0), "bad container magic"),
        (struct.pack("<4sII", b"FSLV", 9, 0), "unsupported container version"),
        (struct.pack("<4sII", b"FSLV", 1, 2), "truncated"),
    ],
)
def test_malformed(data, message):
    with pytest.raises(ContainerFormatError, match=message):
        enumerate_variants(data)


def test_payload_out_of_range(container):
    data = pack(container)
    with pytest.raises(ContainerFormatError, match="past the end"):
        enumerate_variants(data[:-4])


def test_write_and_read(tmp_path, container):
    path = write_container(tmp_path / "out" / "lit.fslv", container)
    loaded = read_container(path)

    assert loaded.name == "lit"
    assert loaded.lookup(Platform.VULKAN, NO_FEATURES).data == b"spirv"
    assert not list(path.parent.glob("*.tmp"))


def test_lookup_among_all_flag_combinations():
    """Test exact lookup in a container holding every subset of two flags."""
    container = VariantContainer("lit")
    combinations = [
        NO_FEATURES,
        Feature.PRIM_ID,
        Feature.VRS,
        Feature.PRIM_ID | Feature.VRS,
    ]
    for flags in combinations:
        payload = f"variant-{int(flags)}".encode()
        container.add(ShaderVariant(Platform.VULKAN, flags, payload))
    data = pack(container)

    assert lookup(data, Platform.VULKAN, Feature.PRIM_ID) == b"variant-1"
    assert lookup(data, Platform.VULKAN, Feature.PRIM_ID | Feature.VRS) == b"variant-5"
    with pytest.raises(VariantNotFoundError, match="no matching variant"):
        lookup(data, Platform.VULKAN, Feature.MULTIVIEW)
