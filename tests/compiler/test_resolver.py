"""Tests for resource table resolution."""

import pytest

from fslc.compiler import parse_source, resolve_tables
from fslc.compiler.errors import SemanticError
from fslc.compiler.models import NO_FEATURES, Feature, Platform
from fslc.compiler.resolver import (
    check_binding_ceilings,
    is_argument_buffer_member,
    resolve_table,
)

FRAGMENT_SOURCE = """\
BEGIN_SRT_SET(Persistent)
    DECL_SAMPLER(Persistent, SamplerState, pointSampler);
    DECL_TEXTURE(Persistent, Tex2D(float4), noise);
END_SRT_SET(Persistent)

BEGIN_SRT(Lighting)
    USE_SRT_SET(Persistent)
    BEGIN_SRT_SET(PerDraw)
        DECL_BUFFER(PerDraw, Buffer(float4), lights);
    END_SRT_SET(PerDraw)
END_SRT(Lighting)

BEGIN_SRT(Shadow)
    USE_SRT_SET(Persistent)
    BEGIN_SRT_SET(PerFrame)
        DECL_TEXTURE(PerFrame, Tex2D(float), shadowMap);
    END_SRT_SET(PerFrame)
END_SRT(Shadow)
"""


def _table(body: str, name: str = "Table") -> str:
    return f"BEGIN_SRT({name})\n{body}END_SRT({name})\n"


def _resolve_one(body: str):
    module = parse_source(_table(body))
    return resolve_table(module.tables[0], module.fragments)


class TestIndexAssignment:
    """Test the running index counter."""

    def test_indices(self, basic_source):
        """Test that arrays advance the counter by their length."""
        table = resolve_tables(parse_source(basic_source)).tables["MainSRT"]

        assert table.cross_reference() == {
            "linearSampler": ("Persistent", 0),
            "albedo": ("Persistent", 1),
            "frame": ("PerFrame", 2),
            "layers": ("PerFrame", 3),
        }
        assert [s.ordinal for s in table.sets] == [0, 1]
        assert [s.element_count for s in table.sets] == [2, 5]

    def test_indices_are_stable(self, basic_source):
        first = resolve_tables(parse_source(basic_source)).tables["MainSRT"]
        second = resolve_tables(parse_source(basic_source)).tables["MainSRT"]
        assert first.cross_reference() == second.cross_reference()

    def test_append_keeps_existing_indices(self, basic_source):
        """Test that a declaration appended to a set leaves every index in place."""
        before = resolve_tables(parse_source(basic_source)).tables["MainSRT"]
        source = basic_source.replace(
            "layers[4]);\n",
            "layers[4]);\n        DECL_BUFFER(PerFrame, Buffer(float4), extra);\n",
        )
        after = resolve_tables(parse_source(source)).tables["MainSRT"]

        for name, slot in before.cross_reference().items():
            assert after.cross_reference()[name] == slot
        assert after.lookup("extra").index == 7

    def test_insert_shifts_only_later_indices(self, basic_source):
        before = resolve_tables(parse_source(basic_source)).tables["MainSRT"]
        source = basic_source.replace(
            "        DECL_CBUFFER(PerFrame",
            "        DECL_TEXTURE(PerFrame, Tex2D(float4), inserted);\n"
            "        DECL_CBUFFER(PerFrame",
        )
        after = resolve_tables(parse_source(source)).tables["MainSRT"]

        assert after.lookup("inserted").index == 2
        for name in ("linearSampler", "albedo"):
            assert after.lookup(name).index == before.lookup(name).index
        for name in ("frame", "layers"):
            assert after.lookup(name).index == before.lookup(name).index + 1

    def test_indices_are_unique(self, basic_source):
        table = resolve_tables(parse_source(basic_source)).tables["MainSRT"]
        occupied = [r.index + i for r in table.resources for i in range(r.count)]
        assert len(occupied) == len(set(occupied))


class TestFragments:
    """Test shared set fragments."""

    def test_fragment_resolved_once(self):
        """Test that every table including a fragment reuses its resolution."""
        resolution = resolve_tables(parse_source(FRAGMENT_SOURCE))
        lighting = resolution.tables["Lighting"]
        shadow = resolution.tables["Shadow"]

        assert lighting.sets[0] is shadow.sets[0]
        assert lighting.sets[0].is_fragment
        assert lighting.lookup("noise").index == shadow.lookup("noise").index == 1
        assert lighting.lookup("lights").index == 2
        assert shadow.lookup("shadowMap").index == 2

    def test_fragment_at_different_offset(self):
        """Test that a fragment cannot be placed at two different base indices."""
        source = """\
BEGIN_SRT_SET(PerFrame)
    DECL_TEXTURE(PerFrame, Tex2D(float4), sharedTexture);
END_SRT_SET(PerFrame)

BEGIN_SRT(First)
    USE_SRT_SET(PerFrame)
END_SRT(First)

BEGIN_SRT(Second)
    BEGIN_SRT_SET(Persistent)
        DECL_TEXTURE(Persistent, Tex2D(float4), extra);
    END_SRT_SET(Persistent)
    USE_SRT_SET(PerFrame)
END_SRT(Second)
"""
        resolution = resolve_tables(parse_source(source))

        assert "First" in resolution.tables
        assert "Second" in resolution.errors
        assert "resolved at index 0 by table 'First'" in str(resolution.errors["Second"])

    def test_undefined_fragment(self):
        with pytest.raises(SemanticError, match="undefined set fragment 'PerDraw'"):
            _resolve_one("    USE_SRT_SET(PerDraw)\n")


class TestPlacementRules:
    """Test the semantic rules enforced during resolution."""

    def test_sampler_outside_first_set(self):
        body = """\
    BEGIN_SRT_SET(Persistent)
        DECL_TEXTURE(Persistent, Tex2D(float4), albedo);
    END_SRT_SET(Persistent)
    BEGIN_SRT_SET(PerFrame)
        DECL_SAMPLER(PerFrame, SamplerState, lateSampler);
    END_SRT_SET(PerFrame)
"""
        with pytest.raises(SemanticError, match="must be declared in the first set"):
            _resolve_one(body)

    def test_sets_out_of_order(self):
        body = """\
    BEGIN_SRT_SET(PerDraw)
        DECL_TEXTURE(PerDraw, Tex2D(float4), a);
    END_SRT_SET(PerDraw)
    BEGIN_SRT_SET(PerFrame)
        DECL_TEXTURE(PerFrame, Tex2D(float4), b);
    END_SRT_SET(PerFrame)
"""
        with pytest.raises(SemanticError, match="out of frequency order"):
            _resolve_one(body)

    def test_unknown_frequency(self):
        body = """\
    BEGIN_SRT_SET(PerPixel)
        DECL_TEXTURE(PerPixel, Tex2D(float4), a);
    END_SRT_SET(PerPixel)
"""
        with pytest.raises(SemanticError, match="unknown update frequency 'PerPixel'"):
            _resolve_one(body)

    def test_frequency_mismatch(self):
        body = """\
    BEGIN_SRT_SET(PerFrame)
        DECL_TEXTURE(PerDraw, Tex2D(float4), a);
    END_SRT_SET(PerFrame)
"""
        with pytest.raises(SemanticError, match="names frequency 'PerDraw'"):
            _resolve_one(body)

    def test_duplicate_name(self):
        body = """\
    BEGIN_SRT_SET(PerFrame)
        DECL_TEXTURE(PerFrame, Tex2D(float4), a);
        DECL_BUFFER(PerFrame, Buffer(uint), a);
    END_SRT_SET(PerFrame)
"""
        with pytest.raises(SemanticError, match="duplicate declaration 'a'"):
            _resolve_one(body)

    def test_unresolved_array_size(self):
        body = """\
    BEGIN_SRT_SET(PerFrame)
        DECL_TEXTURE(PerFrame, Tex2D(float4), maps[MAP_COUNT]);
    END_SRT_SET(PerFrame)
"""
        with pytest.raises(SemanticError, match="must be a positive integer"):
            _resolve_one(body)

    def test_failure_isolated_per_table(self):
        source = _table(
            "    BEGIN_SRT_SET(Unknown)\n    END_SRT_SET(Unknown)\n", "Broken"
        ) + _table(
            "    BEGIN_SRT_SET(PerDraw)\n"
            "        DECL_BUFFER(PerDraw, Buffer(uint), ids);\n"
            "    END_SRT_SET(PerDraw)\n",
            "Working",
        )
        resolution = resolve_tables(parse_source(source))

        assert list(resolution.errors) == ["Broken"]
        assert list(resolution.tables) == ["Working"]


class TestBindingCeilings:
    """Test per-platform binding ceilings."""

    STORAGE_TEXTURES = """\
    BEGIN_SRT_SET(PerFrame)
        DECL_RWTEXTURE(PerFrame, RWTex2D(float4), images[40]);
    END_SRT_SET(PerFrame)
"""

    def test_android_read_write_ceiling(self):
        table = _resolve_one(self.STORAGE_TEXTURES)

        with pytest.raises(SemanticError, match=r"read_write binding ceiling \(40 > 8\)"):
            check_binding_ceilings(table, Platform.ANDROID_VULKAN, NO_FEATURES)
        check_binding_ceilings(table, Platform.VULKAN, NO_FEATURES)

    def test_metal_argument_buffer_promotion(self):
        """Test that ICB moves storage textures into argument buffers on iOS."""
        table = _resolve_one(self.STORAGE_TEXTURES)

        with pytest.raises(SemanticError, match="declare FT_ICB or FT_RAYTRACING"):
            check_binding_ceilings(table, Platform.IOS, NO_FEATURES)
        check_binding_ceilings(table, Platform.IOS, Feature.ICB)

    def test_argument_buffer_membership(self, basic_source):
        table = resolve_tables(parse_source(basic_source)).tables["MainSRT"]
        sampler = table.lookup("linearSampler").declaration
        albedo = table.lookup("albedo").declaration

        assert not is_argument_buffer_member(sampler, Feature.ICB)
        assert is_argument_buffer_member(albedo, NO_FEATURES)
        assert not is_argument_buffer_member(albedo, Feature.NO_AB)
