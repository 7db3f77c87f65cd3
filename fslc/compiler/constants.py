"""
Constants and predefined tables for the shader translator.

This module contains the per-platform capability tables, the dialect's builtin
types and intrinsics, and operator precedence used by the parser and emitters.
"""

from fslc.compiler.models import Feature, Language, Platform, Stage

# Operator precedence shared by the parser and the emitter. Higher binds
# tighter.
OPERATOR_PRECEDENCE: dict[str, int] = {
    # Ternary conditional
    "?": 1,
    # Logical operators
    "||": 2,
    "&&": 3,
    # Bitwise operators
    "|": 4,
    "^": 5,
    "&": 6,
    # Equality operators
    "==": 7,
    "!=": 7,
    # Relational operators
    "<": 8,
    ">": 8,
    "<=": 8,
    ">=": 8,
    # Shifts
    "<<": 9,
    ">>": 9,
    # Additive operators
    "+": 10,
    "-": 10,
    # Multiplicative operators
    "*": 11,
    "/": 11,
    "%": 11,
    # Unary operators
    "unary": 12,
    # Function calls and member access
    "call": 13,
    "member": 14,
}

ASSIGNMENT_OPERATORS = ("=", "+=", "-=", "*=", "/=", "%=", "&=", "|=", "^=", "<<=", ">>=")

# Builtin value types of the dialect


def _vector_family(scalar: str) -> list[str]:
    return [scalar] + [f"{scalar}{n}" for n in (2, 3, 4)]


BUILTIN_TYPES: set[str] = {
    "void",
    "atomic_uint",
    "atomic_int",
    *_vector_family("float"),
    *_vector_family("half"),
    *_vector_family("int"),
    *_vector_family("uint"),
    *_vector_family("bool"),
    "float2x2",
    "float3x3",
    "float4x4",
}

MATRIX_TYPES: dict[str, int] = {"float2x2": 2, "float3x3": 3, "float4x4": 4}

# make_f4x4_cols / make_f4x4_rows and friends
MATRIX_CONSTRUCTORS: dict[str, tuple[str, str]] = {
    f"make_f{n}x{n}_{order}": (f"float{n}x{n}", order)
    for n in (2, 3, 4)
    for order in ("cols", "rows")
}

# Resource declarations

RESOURCE_MARKERS = (
    "DECL_SAMPLER",
    "DECL_TEXTURE",
    "DECL_RWTEXTURE",
    "DECL_BUFFER",
    "DECL_RWBUFFER",
    "DECL_CBUFFER",
)

TEXTURE_SHAPES: dict[str, str] = {
    "Tex1D": "1D",
    "Tex2D": "2D",
    "Tex2DArray": "2DArray",
    "Tex3D": "3D",
    "TexCube": "Cube",
    "Depth2D": "Depth2D",
}

RW_TEXTURE_SHAPES: dict[str, str] = {
    "RWTex1D": "1D",
    "RWTex2D": "2D",
    "RWTex2DArray": "2DArray",
    "RWTex3D": "3D",
}

SAMPLER_TYPES = {"SamplerState": False, "SamplerComparisonState": True}

# Entry points

ENTRY_NAMES: dict[str, Stage] = {
    "VS_MAIN": Stage.VERTEX,
    "PS_MAIN": Stage.FRAGMENT,
    "CS_MAIN": Stage.COMPUTE,
}

STAGE_DIRECTIVES: dict[str, Stage] = {
    "vert": Stage.VERTEX,
    "frag": Stage.FRAGMENT,
    "comp": Stage.COMPUTE,
}

STAGE_MACROS: dict[Stage, str] = {
    Stage.VERTEX: "STAGE_VERT",
    Stage.FRAGMENT: "STAGE_FRAG",
    Stage.COMPUTE: "STAGE_COMP",
}

# Entry-point system values: canonical key -> (default type, stages)
SYSTEM_VALUES: dict[str, tuple[str, set[Stage]]] = {
    "SV_VERTEXID": ("uint", {Stage.VERTEX}),
    "SV_INSTANCEID": ("uint", {Stage.VERTEX}),
    "SV_POSITION": ("float4", {Stage.FRAGMENT}),
    "SV_ISFRONTFACE": ("bool", {Stage.FRAGMENT}),
    "SV_PRIMITIVEID": ("uint", {Stage.FRAGMENT}),
    "SV_SAMPLEINDEX": ("uint", {Stage.FRAGMENT}),
    "SV_DISPATCHTHREADID": ("uint3", {Stage.COMPUTE}),
    "SV_GROUPID": ("uint3", {Stage.COMPUTE}),
    "SV_GROUPTHREADID": ("uint3", {Stage.COMPUTE}),
    "SV_GROUPINDEX": ("uint", {Stage.COMPUTE}),
}

# Platforms

PLATFORM_LANGUAGE: dict[Platform, Language] = {
    Platform.DIRECT3D12: Language.HLSL,
    Platform.VULKAN: Language.GLSL,
    Platform.ANDROID_VULKAN: Language.GLSL,
    Platform.MACOS: Language.MSL,
    Platform.IOS: Language.MSL,
}

LANGUAGE_MACROS: dict[Language, str] = {
    Language.HLSL: "DIRECT3D12",
    Language.GLSL: "VULKAN",
    Language.MSL: "METAL",
}

BINDING_MODELS: dict[Language, str] = {
    Language.HLSL: "descriptor_table",
    Language.GLSL: "descriptor_set",
    Language.MSL: "argument_buffer",
}

# How divergent resource-array indexing is lowered on each platform
NONUNIFORM_TIERS: dict[Platform, str] = {
    Platform.DIRECT3D12: "qualifier",
    Platform.VULKAN: "qualifier",
    Platform.ANDROID_VULKAN: "scan",
    Platform.MACOS: "native",
    Platform.IOS: "native",
}

# Features whose FT_ macro is only defined on some platforms
FEATURE_PLATFORMS: dict[Feature, set[Platform]] = {
    Feature.MULTIVIEW: {Platform.VULKAN, Platform.ANDROID_VULKAN},
}

# Features that force Metal resources into argument buffers
ARGUMENT_BUFFER_PROMOTING_FEATURES = Feature.ICB | Feature.RAYTRACING

GENERATED_EXTENSIONS: dict[Language, str] = {
    Language.HLSL: ".hlsl",
    Language.GLSL: ".glsl",
    Language.MSL: ".metal",
}

BINARY_EXTENSIONS: dict[Language, str] = {
    Language.HLSL: ".dxil",
    Language.GLSL: ".spv",
    Language.MSL: ".metallib",
}

# Hard per-stage binding ceilings by slot class. Metal counts only loose
# (non argument-buffer) resources.
BINDING_CEILINGS: dict[Platform, dict[str, int]] = {
    Platform.DIRECT3D12: {
        "cbuffer": 14,
        "read_only": 1_000_000,
        "read_write": 64,
        "sampler": 2048,
    },
    Platform.VULKAN: {
        "cbuffer": 15,
        "read_only": 1_048_576,
        "read_write": 1_048_576,
        "sampler": 1_048_576,
    },
    Platform.ANDROID_VULKAN: {
        "cbuffer": 12,
        "read_only": 128,
        "read_write": 8,
        "sampler": 16,
    },
    Platform.MACOS: {"buffer": 25, "texture": 128, "sampler": 16},
    Platform.IOS: {"buffer": 25, "texture": 31, "sampler": 16},
}

# Metal buffer slots: 0 and 1 are reserved, 2..5 hold argument buffers
METAL_ARGUMENT_BUFFER_START = 2
METAL_LOOSE_BUFFER_START = 6

# Intrinsics

# Dialect name -> per-language name; names not listed pass through unchanged
INTRINSIC_RENAMES: dict[str, dict[Language, str]] = {
    "lerp": {Language.HLSL: "lerp", Language.GLSL: "mix", Language.MSL: "mix"},
    "frac": {Language.HLSL: "frac", Language.GLSL: "fract", Language.MSL: "fract"},
    "rsqrt": {
        Language.HLSL: "rsqrt",
        Language.GLSL: "inversesqrt",
        Language.MSL: "rsqrt",
    },
    "ddx": {Language.HLSL: "ddx", Language.GLSL: "dFdx", Language.MSL: "dfdx"},
    "ddy": {Language.HLSL: "ddy", Language.GLSL: "dFdy", Language.MSL: "dfdy"},
    "atan2": {Language.HLSL: "atan2", Language.GLSL: "atan", Language.MSL: "atan2"},
    "asuint": {
        Language.HLSL: "asuint",
        Language.GLSL: "floatBitsToUint",
        Language.MSL: "as_type<uint>",
    },
    "asint": {
        Language.HLSL: "asint",
        Language.GLSL: "floatBitsToInt",
        Language.MSL: "as_type<int>",
    },
    "asfloat": {
        Language.HLSL: "asfloat",
        Language.GLSL: "uintBitsToFloat",
        Language.MSL: "as_type<float>",
    },
    "countbits": {
        Language.HLSL: "countbits",
        Language.GLSL: "bitCount",
        Language.MSL: "popcount",
    },
    "reversebits": {
        Language.HLSL: "reversebits",
        Language.GLSL: "bitfieldReverse",
        Language.MSL: "reverse_bits",
    },
}

ATOMIC_OPERATIONS: dict[str, tuple[int, int]] = {
    # name: (min args, max args)
    "AtomicAdd": (2, 3),
    "AtomicOr": (2, 3),
    "AtomicAnd": (2, 3),
    "AtomicXor": (2, 3),
    "AtomicMin": (2, 3),
    "AtomicMax": (2, 3),
    "AtomicExchange": (3, 3),
    "AtomicCompareExchange": (4, 4),
    "AtomicLoad": (2, 2),
    "AtomicStore": (2, 2),
}

SAMPLE_INTRINSICS = {
    "SampleTex1D",
    "SampleTex2D",
    "SampleTex2DArray",
    "SampleTex3D",
    "SampleTexCube",
}

SAMPLE_LEVEL_INTRINSICS = {
    "SampleLvlTex2D",
    "SampleLvlTex2DArray",
    "SampleLvlTex3D",
    "SampleLvlTexCube",
}

LOAD_INTRINSICS = {"LoadTex2D", "LoadTex3D"}
LOAD_RW_INTRINSICS = {"LoadRWTex2D", "LoadRWTex3D"}
WRITE_INTRINSICS = {"Write2D", "Write3D"}

BARRIER_INTRINSICS = {"GroupMemoryBarrierWithGroupSync", "AllMemoryBarrierWithGroupSync"}

NONUNIFORM_INTRINSIC = "NonUniformResourceIndex"
