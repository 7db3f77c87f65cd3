"""Tests for entry-point lowering and validation."""

import pytest

from fslc.compiler import declared_resources, generate, parse_source, resolve_tables
from fslc.compiler.conditions import specialize
from fslc.compiler.errors import SemanticError
from fslc.compiler.lowering import RootSignatures, lower, param_convention
from fslc.compiler.models import NO_FEATURES, Platform, Stage

HELPER_SOURCE = """\
BEGIN_SRT(HelperSRT)
    BEGIN_SRT_SET(PerFrame)
        DECL_BUFFER(PerFrame, Buffer(float4), weights);
        DECL_BUFFER(PerFrame, Buffer(float4), offsets);
    END_SRT_SET(PerFrame)
END_SRT(HelperSRT)

float4 weight(uint i)
{
    return weights[i];
}

void accumulate(inout(float4) total, uint i)
{
    total += weight(i);
}

#frag helper.frag
float4 PS_MAIN()
{
    INIT_MAIN;
    float4 total = float4(0.0, 0.0, 0.0, 0.0);
    accumulate(total, 0u);
    RETURN(total);
}
#end
"""


def _fragment(body: str, preamble: str = "", signature: str = "float4 PS_MAIN()") -> str:
    return f"{preamble}#frag test.frag\n{signature}\n{{\n{body}}}\n#end\n"


def _generate(source: str, platform: Platform = Platform.VULKAN, **kwargs):
    module = parse_source(source, "test.fsl")
    return generate(module, module.binaries[0], platform, NO_FEATURES, **kwargs)


def _lower(source: str):
    module = parse_source(source, "test.fsl")
    resolution = resolve_tables(module)
    shader = specialize(module, module.binaries[0], Platform.VULKAN, NO_FEATURES)
    return lower(
        shader,
        resolution.tables,
        table_errors=resolution.errors,
        declared_resources=declared_resources(module),
    )


class TestMarkers:
    """Test the INIT_MAIN and RETURN rules."""

    def test_init_main_first(self):
        source = _fragment(
            "    float4 c = float4(1.0, 1.0, 1.0, 1.0);\n    INIT_MAIN;\n    RETURN(c);\n"
        )
        with pytest.raises(SemanticError, match="INIT_MAIN must be the first statement"):
            _generate(source)

    def test_plain_return(self):
        source = _fragment("    INIT_MAIN;\n    return float4(1.0, 1.0, 1.0, 1.0);\n")
        with pytest.raises(SemanticError, match="plain 'return' is not allowed"):
            _generate(source)

    def test_missing_return(self):
        source = _fragment("    INIT_MAIN;\n")
        with pytest.raises(SemanticError, match=r"must return with RETURN\(value\)"):
            _generate(source)

    def test_void_return_value(self):
        source = """\
#comp c.comp
NUM_THREADS(1, 1, 1)
void CS_MAIN()
{
    INIT_MAIN;
    RETURN(1);
}
#end
"""
        with pytest.raises(SemanticError, match=r"returns void and must use RETURN\(\)"):
            _generate(source)

    def test_return_marker_in_helper(self):
        preamble = "float helper()\n{\n    RETURN(1.0);\n}\n\n"
        source = _fragment(
            "    INIT_MAIN;\n    RETURN(float4(helper(), 0.0, 0.0, 1.0));\n", preamble
        )
        with pytest.raises(SemanticError, match="RETURN is only allowed in entry points"):
            _generate(source)


class TestEntryPoint:
    """Test entry-point level validation."""

    def test_wrong_entry_for_stage(self):
        source = (
            "#vert v.vert\nfloat4 PS_MAIN()\n{\n    INIT_MAIN;\n"
            "    RETURN(float4(0.0, 0.0, 0.0, 0.0));\n}\n#end\n"
        )
        with pytest.raises(SemanticError, match="must declare VS_MAIN, not PS_MAIN"):
            _generate(source)

    def test_root_signature_mismatch(self):
        source = _fragment(
            "    INIT_MAIN;\n    RETURN(float4(0.0, 0.0, 0.0, 0.0));\n",
            signature="ROOT_SIGNATURE(CustomRootSignature)\nfloat4 PS_MAIN()",
        )
        with pytest.raises(
            SemanticError,
            match="uses root signature 'CustomRootSignature' but every graphics "
            "shader binds through 'DefaultRootSignature'",
        ):
            _generate(source)

    def test_configured_root_signature(self):
        source = _fragment(
            "    INIT_MAIN;\n    RETURN(float4(0.0, 0.0, 0.0, 0.0));\n",
            signature="ROOT_SIGNATURE(CustomRootSignature)\nfloat4 PS_MAIN()",
        )
        generated = _generate(
            source,
            Platform.DIRECT3D12,
            root_signatures=RootSignatures(graphics="CustomRootSignature"),
        )
        assert "[RootSignature(CustomRootSignature)]" in generated.source

    def test_num_threads_required(self):
        source = "#comp c.comp\nvoid CS_MAIN()\n{\n    INIT_MAIN;\n    RETURN();\n}\n#end\n"
        with pytest.raises(SemanticError, match=r"requires NUM_THREADS\(x, y, z\)"):
            _generate(source)

    def test_num_threads_outside_compute(self):
        source = _fragment(
            "    INIT_MAIN;\n    RETURN(float4(0.0, 0.0, 0.0, 0.0));\n",
            signature="NUM_THREADS(8, 8, 1)\nfloat4 PS_MAIN()",
        )
        with pytest.raises(SemanticError, match="only allowed on compute entry points"):
            _generate(source)

    def test_system_value_stage(self):
        source = _fragment(
            "    INIT_MAIN;\n    RETURN(float4(0.0, 0.0, 0.0, 0.0));\n",
            signature="float4 PS_MAIN(SV_DispatchThreadID(uint3) tid)",
        )
        with pytest.raises(SemanticError, match="is not available in fragment entry points"):
            _generate(source)

    def test_unknown_input_struct(self):
        source = _fragment(
            "    INIT_MAIN;\n    RETURN(float4(0.0, 0.0, 0.0, 0.0));\n",
            signature="float4 PS_MAIN(Missing In)",
        )
        with pytest.raises(SemanticError, match="has unknown struct type 'Missing'"):
            _generate(source)


class TestHelpers:
    """Test helper analysis."""

    def test_recursive_helper(self):
        preamble = "float fall(float x)\n{\n    return fall(x - 1.0);\n}\n\n"
        source = _fragment(
            "    INIT_MAIN;\n    RETURN(float4(fall(1.0), 0.0, 0.0, 1.0));\n", preamble
        )
        with pytest.raises(SemanticError, match="helper 'fall' is recursive"):
            _generate(source)

    def test_mutual_recursion(self):
        preamble = (
            "float ping(float x)\n{\n    return pong(x);\n}\n\n"
            "float pong(float x)\n{\n    return ping(x);\n}\n\n"
        )
        source = _fragment(
            "    INIT_MAIN;\n    RETURN(float4(ping(1.0), 0.0, 0.0, 1.0));\n", preamble
        )
        with pytest.raises(SemanticError, match="is recursive"):
            _generate(source)

    def test_helpers_and_resources(self):
        """Test that helpers come callees first and carry their resources."""
        convention = _lower(HELPER_SOURCE)

        assert [h.name for h in convention.helpers] == ["weight", "accumulate"]
        assert [r.name for r in convention.resources] == ["weights"]
        assert [r.name for r in convention.helper_resources["accumulate"]] == ["weights"]
        assert [c.obligation for c in convention.helper_conventions["accumulate"]] == [
            "read_write_reference",
            "value",
        ]
        assert convention.table.name == "HelperSRT"
        assert convention.stage == Stage.FRAGMENT

    def test_param_convention(self):
        func = parse_source(
            "void f(out(float) a, float b)\n{\n    a = b;\n}\n"
        ).items[0]
        out_param, in_param = (param_convention(p) for p in func.params)

        assert (out_param.direction, out_param.obligation) == ("out", "write_reference")
        assert out_param.by_reference
        assert not in_param.by_reference


class TestTableSelection:
    """Test how an entry point finds its resource table."""

    TWO_TABLES = """\
BEGIN_SRT(First)
    BEGIN_SRT_SET(PerFrame)
        DECL_BUFFER(PerFrame, Buffer(float4), firstData);
    END_SRT_SET(PerFrame)
END_SRT(First)

BEGIN_SRT(Second)
    BEGIN_SRT_SET(PerFrame)
        DECL_BUFFER(PerFrame, Buffer(float4), secondData);
    END_SRT_SET(PerFrame)
END_SRT(Second)

"""

    def test_ambiguous_table(self):
        source = _fragment(
            "    INIT_MAIN;\n    RETURN(firstData[0]);\n", self.TWO_TABLES
        )
        with pytest.raises(SemanticError, match="must select one of the tables"):
            _generate(source)

    def test_resource_from_other_table(self):
        source = _fragment(
            "    INIT_MAIN;\n    RETURN(secondData[0]);\n",
            self.TWO_TABLES,
            signature="USE_SRT(First)\nfloat4 PS_MAIN()",
        )
        with pytest.raises(
            SemanticError, match="resource 'secondData' used by PS_MAIN is not declared in"
        ):
            _generate(source)

    def test_unknown_table(self):
        source = _fragment(
            "    INIT_MAIN;\n    RETURN(float4(0.0, 0.0, 0.0, 0.0));\n",
            signature="USE_SRT(Missing)\nfloat4 PS_MAIN()",
        )
        with pytest.raises(SemanticError, match="uses unknown SRT 'Missing'"):
            _generate(source)

    def test_failed_table_error_propagates(self):
        preamble = (
            "BEGIN_SRT(Broken)\n    BEGIN_SRT_SET(Sometimes)\n"
            "    END_SRT_SET(Sometimes)\nEND_SRT(Broken)\n\n"
        )
        source = _fragment(
            "    INIT_MAIN;\n    RETURN(float4(0.0, 0.0, 0.0, 0.0));\n", preamble
        )
        with pytest.raises(SemanticError, match="unknown update frequency 'Sometimes'"):
            _generate(source)

    def test_single_table_selected_implicitly(self):
        convention = _lower(HELPER_SOURCE)
        assert convention.table is not None
