"""Tests for HLSL, GLSL and MSL generation."""

import pytest

from fslc.compiler import binary_variants, generate, parse_source
from fslc.compiler.errors import SemanticError, UnsupportedOperationError
from fslc.compiler.models import NO_FEATURES, Feature, Platform

NONUNIFORM_FRAGMENT = """
#frag layered.frag
USE_SRT(MainSRT)
float4 PS_MAIN(VSOut In)
{
    INIT_MAIN;
    uint layer = uint(In.uv.x * 4.0);
    float4 color = SampleTex2D(layers[NonUniformResourceIndex(layer)], linearSampler, In.uv);
    RETURN(color);
}
#end
"""

HELPER_FRAGMENT = """
float4 fetch(float2 uv)
{
    return SampleTex2D(albedo, linearSampler, uv);
}

void darken(inout(float4) color)
{
    color *= 0.5;
}

#frag helper.frag
USE_SRT(MainSRT)
float4 PS_MAIN(VSOut In)
{
    INIT_MAIN;
    float4 color = fetch(In.uv);
    darken(color);
    RETURN(color);
}
#end
"""


def _generate(source, name, platform, features=NO_FEATURES):
    module = parse_source(source, "test.fsl")
    binary = next(b for b in module.binaries if b.output_name == name)
    return generate(module, binary, platform, features)


class TestHLSL:
    """Test HLSL generation for DIRECT3D12."""

    def test_fragment(self, basic_source):
        source = _generate(basic_source, "basic.frag", Platform.DIRECT3D12).source

        assert "SamplerState linearSampler : register(s0, space0);" in source
        assert "Texture2D<float4> albedo : register(t0, space0);" in source
        assert "ConstantBuffer<FrameData> frame : register(b0, space1);" in source
        assert "Texture2D<float4> layers[4] : register(t0, space1);" in source
        assert "[RootSignature(DefaultRootSignature)]" in source
        assert "float4 main(VSOut In) : SV_Target {" in source
        assert "albedo.Sample(linearSampler, In.uv)" in source

    def test_vertex(self, basic_source):
        generated = _generate(basic_source, "basic.vert", Platform.DIRECT3D12)
        source = generated.source

        assert "VSOut main(VSIn In, uint vid : SV_VertexID) {" in source
        assert "mul(frame.viewProj, float4(In.position, 1.0))" in source
        assert "    float3 position : POSITION;" in source
        assert generated.entry_name == "main"

    def test_root_signature(self, basic_source):
        """Test one descriptor table per set with samplers in their own table."""
        source = _generate(basic_source, "basic.vert", Platform.DIRECT3D12).source
        define = next(line for line in source.splitlines() if "#define Default" in line)

        assert "RootFlags(ALLOW_INPUT_ASSEMBLER_INPUT_LAYOUT)" in define
        assert (
            "DescriptorTable(CBV(b0, space = 1, numDescriptors = 1), "
            "SRV(t0, space = 1, numDescriptors = 4))"
        ) in define
        assert "DescriptorTable(Sampler(s0, space = 0, numDescriptors = 1))" in define

    def test_compute(self, compute_source):
        source = _generate(compute_source, "update.comp", Platform.DIRECT3D12).source

        assert "[numthreads(64, 1, 1)]" in source
        assert "void main(uint3 tid : SV_DispatchThreadID) {" in source
        assert "RWStructuredBuffer<Particle> particles : register(u0, space1);" in source
        assert "RWStructuredBuffer<uint> counter : register(u1, space1);" in source
        assert "InterlockedAdd(counter[0], 1u);" in source
        assert "groupshared uint tileCount;" in source

    def test_atomic_load_unsupported(self, compute_source):
        source = compute_source.replace(
            "AtomicAdd(counter[0], 1u);",
            "uint value = 0u;\n    AtomicLoad(counter[0], value);",
        )
        with pytest.raises(UnsupportedOperationError, match="AtomicLoad"):
            _generate(source, "update.comp", Platform.DIRECT3D12)


class TestGLSL:
    """Test GLSL generation for VULKAN and ANDROID_VULKAN."""

    def test_fragment(self, basic_source):
        generated = _generate(basic_source, "basic.frag", Platform.VULKAN)
        source = generated.source
        lines = source.splitlines()

        assert lines[0] == "#version 450"
        assert lines[1] == (
            "// basic.frag for VULKAN (fragment), generated by fslc. "
            "Non-uniform indexing tier: qualifier."
        )
        assert "layout(set = 0, binding = 0) uniform sampler linearSampler;" in lines
        assert "layout(set = 0, binding = 1) uniform texture2D albedo;" in lines
        assert "texture(sampler2D(albedo, linearSampler), In.uv)" in source
        assert "    In.position = vec4(gl_FragCoord);" in lines
        assert "layout(location = 0) in vec2 v_uv;" in lines
        assert "layout(location = 0) out vec4 out_Target0;" in lines
        assert "    out_Target0 = PS_MAIN(In);" in lines

    def test_only_used_resources_declared(self, basic_source):
        source = _generate(basic_source, "basic.frag", Platform.VULKAN).source

        assert "frame_Block" not in source
        assert "layers" not in source

    def test_vertex(self, basic_source):
        source = _generate(basic_source, "basic.vert", Platform.VULKAN).source
        lines = source.splitlines()

        assert (
            "layout(std140, column_major, set = 1, binding = 2) uniform "
            "frame_Block { FrameData frame; };"
        ) in lines
        assert "(frame.viewProj * vec4(In.position, 1.0))" in source
        assert "    mat4 viewProj;" in lines
        assert "layout(location = 0) in vec3 in_position;" in lines
        assert "    VSOut result = VS_MAIN(In, uint(gl_VertexIndex));" in lines
        assert "    gl_Position = result.position;" in lines
        assert "layout(location = 0) out vec2 v_uv;" in lines

    def test_compute(self, compute_source):
        source = _generate(compute_source, "update.comp", Platform.VULKAN).source
        lines = source.splitlines()

        assert "layout(local_size_x = 64, local_size_y = 1, local_size_z = 1) in;" in lines
        assert (
            "layout(std430, column_major, set = 1, binding = 0) buffer "
            "particles_Block { Particle particles[]; };"
        ) in lines
        assert "    atomicAdd(counter[0], 1u);" in lines
        assert "shared uint tileCount;" in lines
        assert "    CS_MAIN(uvec3(gl_GlobalInvocationID));" in lines

    def test_helper_reference_parameter(self, basic_source):
        source = _generate(
            basic_source + HELPER_FRAGMENT, "helper.frag", Platform.VULKAN
        ).source

        assert "void darken(inout vec4 color) {" in source
        assert "    return texture(sampler2D(albedo, linearSampler), uv);" in source


class TestMSL:
    """Test MSL generation for MACOS and IOS."""

    def test_argument_buffers(self, basic_source):
        source = _generate(basic_source, "basic.frag", Platform.MACOS).source
        lines = source.splitlines()

        persistent = lines.index("struct SRTSetPersistent {")
        assert lines[persistent + 1] == "    texture2d<float> albedo [[id(1)]];"
        per_frame = lines.index("struct SRTSetPerFrame {")
        assert lines[per_frame + 1] == "    constant FrameData* frame [[id(0)]];"
        assert lines[per_frame + 2] == "    array<texture2d<float>, 4> layers [[id(1)]];"

    def test_fragment(self, basic_source):
        generated = _generate(basic_source, "basic.frag", Platform.MACOS)
        source = generated.source

        assert (
            "fragment float4 stageMain(VSOut In [[stage_in]], "
            "constant SRTSetPersistent& srtPersistent [[buffer(2)]], "
            "constant SRTSetPerFrame& srtPerFrame [[buffer(3)]], "
            "sampler linearSampler [[sampler(0)]]) {"
        ) in source
        assert "srtPersistent.albedo.sample(linearSampler, In.uv)" in source
        assert "    return color;" in source
        assert generated.entry_name == "stageMain"
        assert generated.metadata["argument_buffers"] == {"Persistent": 2, "PerFrame": 3}
        assert generated.metadata["loose_resources"] == {"linearSampler": "sampler(0)"}

    def test_vertex(self, basic_source):
        source = _generate(basic_source, "basic.vert", Platform.IOS).source

        assert "vertex VSOut stageMain(VSIn In [[stage_in]], uint vid [[vertex_id]]" in source
        assert "((*srtPerFrame.frame).viewProj * float4(In.position, 1.0))" in source
        assert "    float3 position [[attribute(0)]];" in source
        assert "    float4 position [[position]];" in source

    def test_compute(self, compute_source):
        source = _generate(compute_source, "update.comp", Platform.MACOS).source

        assert (
            "kernel void stageMain(uint3 tid [[thread_position_in_grid]], "
            "device Particle* particles [[buffer(6)]], "
            "device atomic_uint* counter [[buffer(7)]]) {"
        ) in source
        assert "atomic_fetch_add_explicit(&counter[0], 1u, memory_order_relaxed);" in source
        assert "    threadgroup uint tileCount;" in source.splitlines()

    def test_indirect_command_buffers_promote_resources(self, compute_source):
        """Test that FT_ICB moves read-write buffers into the argument buffer."""
        source = _generate(
            compute_source, "update.comp", Platform.MACOS, Feature.ICB
        ).source

        assert "struct SRTSetPerFrame {" in source
        assert "    device Particle* particles [[id(0)]];" in source
        assert "constant SRTSetPerFrame& srtPerFrame [[buffer(3)]]" in source
        assert "srtPerFrame.particles[tid.x].position" in source

    def test_no_argument_buffers(self, basic_source):
        source = _generate(
            basic_source, "basic.frag", Platform.MACOS, Feature.NO_AB
        ).source

        assert "struct SRTSet" not in source
        assert "texture2d<float> albedo [[texture(0)]]" in source

    def test_helper_resources(self, basic_source):
        """Test that helpers receive the resources they use as parameters."""
        source = _generate(
            basic_source + HELPER_FRAGMENT, "helper.frag", Platform.MACOS
        ).source

        assert (
            "float4 fetch(float2 uv, constant SRTSetPersistent& srtPersistent, "
            "sampler linearSampler) {"
        ) in source
        assert "fetch(In.uv, srtPersistent, linearSampler)" in source
        assert "void darken(thread float4& color) {" in source

    def test_multiple_stage_inputs(self, basic_source):
        source = basic_source.replace(
            "VS_MAIN(VSIn In, SV_VertexID(uint) vid)", "VS_MAIN(VSIn In, VSIn Extra)"
        )
        with pytest.raises(UnsupportedOperationError, match="more than one stage_in"):
            _generate(source, "basic.vert", Platform.MACOS)


class TestNonUniformIndexing:
    """Test the three non-uniform indexing tiers."""

    def test_qualifier_hlsl(self, basic_source):
        source = _generate(
            basic_source + NONUNIFORM_FRAGMENT, "layered.frag", Platform.DIRECT3D12
        ).source
        assert "layers[NonUniformResourceIndex(layer)].Sample(linearSampler, In.uv)" in source

    def test_qualifier_vulkan(self, basic_source):
        generated = _generate(
            basic_source + NONUNIFORM_FRAGMENT, "layered.frag", Platform.VULKAN
        )

        assert "#extension GL_EXT_nonuniform_qualifier : require" in generated.source
        assert "layers[nonuniformEXT(layer)]" in generated.source
        assert generated.metadata["nonuniform_tier"] == "qualifier"
        assert generated.metadata["nonuniform_indexing"] is True

    def test_scan_android(self, basic_source):
        """Test that the divergent index becomes a loop over candidate indices."""
        generated = _generate(
            basic_source + NONUNIFORM_FRAGMENT, "layered.frag", Platform.ANDROID_VULKAN
        )
        lines = [line.strip() for line in generated.source.splitlines()]

        start = lines.index("vec4 color;")
        assert lines[start + 1 : start + 6] == [
            "{",
            "uint _nu_index = uint(layer);",
            "for (uint _nu_i = 0u; _nu_i < 4u; ++_nu_i) {",
            "if (_nu_i == _nu_index) {",
            "color = texture(sampler2D(layers[_nu_i], linearSampler), In.uv);",
        ]
        assert "nonuniformEXT" not in generated.source
        assert generated.metadata["nonuniform_tier"] == "scan"

    def test_native_metal(self, basic_source):
        source = _generate(
            basic_source + NONUNIFORM_FRAGMENT, "layered.frag", Platform.MACOS
        ).source
        assert "srtPerFrame.layers[layer].sample(linearSampler, In.uv)" in source


class TestGeneration:
    """Test properties shared by every target."""

    @pytest.mark.parametrize("platform", list(Platform))
    def test_deterministic(self, basic_source, platform):
        first = _generate(basic_source, "basic.frag", platform).source
        second = _generate(basic_source, "basic.frag", platform).source
        assert first == second

    @pytest.mark.parametrize("platform", list(Platform))
    def test_raw_matrix_constructor(self, basic_source, platform):
        source = basic_source.replace(
            "VSOut Out;",
            "VSOut Out;\n    float4x4 m = float4x4(In.position.xxxx, In.position.yyyy, "
            "In.position.zzzz, float4(0.0, 0.0, 0.0, 1.0));",
        )
        with pytest.raises(UnsupportedOperationError, match="raw matrix constructor"):
            _generate(source, "basic.vert", platform)

    def test_binding_ceiling_checked(self):
        source = """\
BEGIN_SRT(Images)
    BEGIN_SRT_SET(PerFrame)
        DECL_RWTEXTURE(PerFrame, RWTex2D(float4), images[9]);
    END_SRT_SET(PerFrame)
END_SRT(Images)

#comp clear.comp
NUM_THREADS(8, 8, 1)
void CS_MAIN(SV_DispatchThreadID(uint3) tid)
{
    INIT_MAIN;
    RETURN();
}
#end
"""
        with pytest.raises(
            SemanticError,
            match=r"exceeds the ANDROID_VULKAN read_write binding ceiling \(9 > 8\)",
        ):
            _generate(source, "clear.comp", Platform.ANDROID_VULKAN)
        _generate(source, "clear.comp", Platform.VULKAN)

    def test_duplicate_variant(self):
        module = parse_source("#frag twice.frag\n#variant FT_VRS\n#variant FT_VRS\n#end\n")

        with pytest.raises(SemanticError, match="declares variant .* twice"):
            binary_variants(module.binaries[0])

    def test_variants(self):
        module = parse_source("#frag FT_PRIM_ID v.frag\n#variant FT_VRS\n#end\n")
        assert binary_variants(module.binaries[0]) == [Feature.PRIM_ID | Feature.VRS]
