"""GLSL 450 target for VULKAN and ANDROID_VULKAN.

Resources use ``layout(set = ordinal, binding = index)``. The dialect entry
point becomes a regular function called from a generated ``void main()``
that moves stage inputs and outputs through ``in``/``out`` variables and
``gl_*`` builtins.
"""

from fslc.compiler.constants import (
    LOAD_INTRINSICS,
    LOAD_RW_INTRINSICS,
    MATRIX_CONSTRUCTORS,
    MATRIX_TYPES,
    SAMPLE_INTRINSICS,
    SAMPLE_LEVEL_INTRINSICS,
)
from fslc.compiler.ir import IRParameter, IRStructField, IRType
from fslc.compiler.models import (
    BufferKind,
    ConstantBufferKind,
    Feature,
    Language,
    ResolvedResource,
    SamplerKind,
    Stage,
    TextureKind,
)
from fslc.compiler.target.base import (
    Target,
    expect_args,
    intrinsic_shape,
    scalar_type,
    struct_fields,
    target_index,
    texel_swizzle,
    texel_type,
    widen_texel,
)

_SCALAR_PREFIXES = {"float": "", "half": "", "int": "i", "uint": "u", "bool": "b"}

TYPE_NAMES: dict[str, str] = {
    "half": "float",
    "atomic_uint": "uint",
    "atomic_int": "int",
    **{f"{s}{n}": f"{p}vec{n}" for s, p in _SCALAR_PREFIXES.items() for n in (2, 3, 4)},
    **{name: f"mat{n}" for name, n in MATRIX_TYPES.items()},
}

TEXTURE_TYPES = {
    "1D": "texture1D",
    "2D": "texture2D",
    "2DArray": "texture2DArray",
    "3D": "texture3D",
    "Cube": "textureCube",
    "Depth2D": "texture2D",
}

SAMPLER_TYPES = {
    "1D": "sampler1D",
    "2D": "sampler2D",
    "2DArray": "sampler2DArray",
    "3D": "sampler3D",
    "Cube": "samplerCube",
    "Depth2D": "sampler2D",
}

IMAGE_TYPES = {"1D": "image1D", "2D": "image2D", "2DArray": "image2DArray", "3D": "image3D"}

COORD_TYPES = {"1D": "int", "2D": "ivec2", "2DArray": "ivec3", "3D": "ivec3"}

IMAGE_FORMATS = {
    "float": "r32f",
    "float2": "rg32f",
    "float4": "rgba32f",
    "half": "r16f",
    "half2": "rg16f",
    "half4": "rgba16f",
    "uint": "r32ui",
    "uint2": "rg32ui",
    "uint4": "rgba32ui",
    "int": "r32i",
    "int2": "rg32i",
    "int4": "rgba32i",
}

BUILTIN_INPUTS = {
    "SV_VERTEXID": "gl_VertexIndex",
    "SV_INSTANCEID": "gl_InstanceIndex",
    "SV_POSITION": "gl_FragCoord",
    "SV_ISFRONTFACE": "gl_FrontFacing",
    "SV_PRIMITIVEID": "gl_PrimitiveID",
    "SV_SAMPLEINDEX": "gl_SampleID",
    "SV_DISPATCHTHREADID": "gl_GlobalInvocationID",
    "SV_GROUPID": "gl_WorkGroupID",
    "SV_GROUPTHREADID": "gl_LocalInvocationID",
    "SV_GROUPINDEX": "gl_LocalInvocationIndex",
}

BUILTIN_OUTPUTS = {
    "SV_POSITION": "gl_Position",
    "SV_DEPTH": "gl_FragDepth",
}

EXT_SAMPLERLESS = "GL_EXT_samplerless_texture_functions"
EXT_NONUNIFORM = "GL_EXT_nonuniform_qualifier"
EXT_MEMORY_SCOPE = "GL_KHR_memory_scope_semantics"
EXT_MULTIVIEW = "GL_EXT_multiview"

_ATOMIC_FUNCTIONS = {
    "AtomicAdd": "atomicAdd",
    "AtomicOr": "atomicOr",
    "AtomicAnd": "atomicAnd",
    "AtomicXor": "atomicXor",
    "AtomicMin": "atomicMin",
    "AtomicMax": "atomicMax",
}


def _prefix(element_type: str | None) -> str:
    return _SCALAR_PREFIXES.get(scalar_type(element_type or "float"), "")


def _is_integer(ir_type: IRType) -> bool:
    return scalar_type(ir_type.base) in ("int", "uint", "bool")


def _locations(ir_type: IRType) -> int:
    """Interface locations taken by a stage variable."""
    count = MATRIX_TYPES.get(ir_type.base, 1)
    if isinstance(ir_type.array_size, int):
        count *= ir_type.array_size
    return count


class GLSLTarget(Target):
    """Vulkan GLSL consumed by glslangValidator."""

    language = Language.GLSL
    entry_name = "main"
    groupshared_qualifier = "shared"

    # --- Syntax ---

    def type_name(self, ir_type: IRType | str) -> str:
        base = super().type_name(ir_type)
        return TYPE_NAMES.get(base, base)

    def array_initializer(self, ir_type: IRType, args: list[str]) -> str:
        return f"{self.type_name(ir_type)}[{ir_type.array_size}]({', '.join(args)})"

    def nonuniform_index(self, index: str) -> str:
        self.require_extension(EXT_NONUNIFORM)
        return f"nonuniformEXT({index})"

    def intrinsic(self, name: str, args: list[str]) -> str | None:
        if name == "saturate":
            (value,) = expect_args(name, args, 1)
            return f"clamp({value}, 0.0, 1.0)"
        return None

    def texture_intrinsic(
        self, name: str, args: list[str], resource: ResolvedResource | None
    ) -> str:
        shape = intrinsic_shape(name)
        prefix = _prefix(texel_type(resource))
        swizzle = texel_swizzle(resource)
        if name in SAMPLE_INTRINSICS:
            texture, sampler, uv = expect_args(name, args, 3)
            combined = f"{prefix}{SAMPLER_TYPES[shape]}({texture}, {sampler})"
            return f"texture({combined}, {uv}){swizzle}"
        if name in SAMPLE_LEVEL_INTRINSICS:
            texture, sampler, uv, lod = expect_args(name, args, 4)
            combined = f"{prefix}{SAMPLER_TYPES[shape]}({texture}, {sampler})"
            return f"textureLod({combined}, {uv}, {lod}){swizzle}"
        if name in LOAD_INTRINSICS:
            texture, coord, lod = expect_args(name, args, 3)
            self.require_extension(EXT_SAMPLERLESS)
            return f"texelFetch({texture}, {COORD_TYPES[shape]}({coord}), int({lod})){swizzle}"
        if name in LOAD_RW_INTRINSICS:
            texture, coord = expect_args(name, args, 2)
            return f"imageLoad({texture}, {COORD_TYPES[shape]}({coord})){swizzle}"
        raise self.unsupported(name)

    def texture_write(
        self, name: str, args: list[str], resource: ResolvedResource | None
    ) -> str:
        texture, coord, value = expect_args(name, args, 3)
        shape = intrinsic_shape(name)
        vec4_type = f"{_prefix(texel_type(resource))}vec4"
        texel = widen_texel(value, resource, vec4_type)
        return f"imageStore({texture}, {COORD_TYPES[shape]}({coord}), {texel});"

    def matrix_intrinsic(self, name: str, args: list[str]) -> str:
        # GLSL matrix constructors take columns
        if name in MATRIX_CONSTRUCTORS:
            matrix_type, order = MATRIX_CONSTRUCTORS[name]
            expect_args(name, args, int(matrix_type[-1]))
            built = f"{self.type_name(matrix_type)}({', '.join(args)})"
            return built if order == "cols" else f"transpose({built})"
        first, second = expect_args(name, args, 2)
        match name:
            case "getCol":
                return f"{first}[{second}]"
            case "getRow":
                return f"transpose({first})[{second}]"
        return f"({first} * {second})"

    def atomic(self, name: str, args: list[str], dest_root: str | None) -> list[str]:
        if dest_root in self.groupshared:
            scope, storage = "gl_ScopeWorkgroup", "gl_StorageSemanticsShared"
        else:
            scope, storage = "gl_ScopeDevice", "gl_StorageSemanticsBuffer"
        semantics = f"{scope}, {storage}, gl_SemanticsRelaxed"
        match name:
            case "AtomicLoad":
                self.require_extension(EXT_MEMORY_SCOPE)
                dest, original = args
                return [f"{original} = atomicLoad({dest}, {semantics});"]
            case "AtomicStore":
                self.require_extension(EXT_MEMORY_SCOPE)
                dest, value = args
                return [f"atomicStore({dest}, {value}, {semantics});"]
            case "AtomicExchange":
                dest, value, original = args
                return [f"{original} = atomicExchange({dest}, {value});"]
            case "AtomicCompareExchange":
                dest, compare, value, original = args
                return [f"{original} = atomicCompSwap({dest}, {compare}, {value});"]
        call = f"{_ATOMIC_FUNCTIONS[name]}({args[0]}, {args[1]})"
        if len(args) == 3:
            return [f"{args[2]} = {call};"]
        return [f"{call};"]

    def barrier(self, name: str) -> list[str]:
        if name == "AllMemoryBarrierWithGroupSync":
            return ["memoryBarrier();", "barrier();"]
        return ["memoryBarrierShared();", "barrier();"]

    # --- Declarations ---

    def header_lines(self) -> list[str]:
        convention = self.convention
        if Feature.MULTIVIEW in self.features and convention.stage != Stage.COMPUTE:
            self.require_extension(EXT_MULTIVIEW)
        lines = ["#version 450", self.banner()]
        lines.extend(f"#extension {ext} : require" for ext in self.extensions)
        if convention.num_threads:
            x, y, z = convention.num_threads
            lines.append(
                f"layout(local_size_x = {x}, local_size_y = {y}, local_size_z = {z}) in;"
            )
        return lines

    def resource_line(self, resource: ResolvedResource) -> str:
        declaration = resource.declaration
        layout = f"set = {resource.set_ordinal}, binding = {resource.index}"
        name = resource.name
        if declaration.is_array:
            name = f"{name}[{resource.count}]"
        match declaration.kind:
            case SamplerKind(comparison=comparison):
                sampler = "samplerShadow" if comparison else "sampler"
                return f"layout({layout}) uniform {sampler} {name};"
            case TextureKind(shape=shape, element_type=element, read_write=True):
                image_format = IMAGE_FORMATS.get(element)
                if image_format is None:
                    raise self.unsupported(f"storage texture element type '{element}'")
                image = f"{_prefix(element)}{IMAGE_TYPES[shape]}"
                return f"layout({layout}, {image_format}) uniform {image} {name};"
            case TextureKind(shape=shape, element_type=element):
                return f"layout({layout}) uniform {_prefix(element)}{TEXTURE_TYPES[shape]} {name};"
            case BufferKind(element_type=element, read_write=read_write):
                if declaration.is_array:
                    raise self.unsupported(f"buffer array '{resource.name}'")
                access = "" if read_write else "readonly "
                member = f"{self.type_name(element)} {resource.name}[];"
                return (
                    f"layout(std430, column_major, {layout}) {access}buffer "
                    f"{resource.name}_Block {{ {member} }};"
                )
            case ConstantBufferKind(struct_name=struct_name):
                if declaration.is_array:
                    raise self.unsupported(f"constant buffer array '{resource.name}'")
                return (
                    f"layout(std140, column_major, {layout}) uniform "
                    f"{resource.name}_Block {{ {struct_name} {resource.name}; }};"
                )
        raise self.unsupported(f"resource kind {declaration.kind!r}")

    def resource_lines(self) -> list[str]:
        return [self.resource_line(r) for r in self.convention.resources]

    # --- Entry Point ---

    def entry_signature(self) -> list[str]:
        convention = self.convention
        returns = (
            self.type_name(convention.return_type) if convention.return_type else "void"
        )
        params = [self.declarator(p.type, p.name) for p, _ in convention.params]
        return [f"{returns} {convention.entry_name}({', '.join(params)}) {{"]

    def _struct(self, name: str) -> list[IRStructField]:
        struct = next(s for s in self.shader.structs if s.name == name)
        return struct_fields(struct)

    def _system_value(self, param: IRParameter) -> str:
        builtin = BUILTIN_INPUTS[param.system_value]
        return f"{self.type_name(param.type)}({builtin})"

    def _input_lines(self, globals_: list[str], body: list[str]) -> list[str]:
        """Declare stage inputs and rebuild the entry arguments from them."""
        convention = self.convention
        location = 0
        args = []
        for param, _ in convention.params:
            if param.system_value:
                args.append(self._system_value(param))
                continue
            body.append(f"    {self.declarator(param.type, param.name)};")
            for item in self._struct(param.type.base):
                builtin = BUILTIN_INPUTS.get(item.semantic_key or "")
                if convention.stage == Stage.FRAGMENT and builtin:
                    value = f"{self.type_name(item.type)}({builtin})"
                else:
                    prefix = "in" if convention.stage == Stage.VERTEX else "v"
                    variable = f"{prefix}_{item.name}"
                    flat = (
                        "flat "
                        if convention.stage == Stage.FRAGMENT and _is_integer(item.type)
                        else ""
                    )
                    globals_.append(
                        f"layout(location = {location}) {flat}in "
                        f"{self.declarator(item.type, variable)};"
                    )
                    location += _locations(item.type)
                    value = variable
                body.append(f"    {param.name}.{item.name} = {value};")
            args.append(param.name)
        return args

    def _output_lines(self, globals_: list[str], body: list[str], call: str) -> None:
        convention = self.convention
        return_type = convention.return_type
        stage = convention.stage
        if return_type is None:
            body.append(f"    {call};")
            return
        struct_names = {s.name for s in self.shader.structs}
        if return_type.base not in struct_names:
            if stage == Stage.VERTEX:
                body.append(f"    gl_Position = {call};")
            else:
                globals_.append(
                    f"layout(location = 0) out {self.declarator(return_type, 'out_Target0')};"
                )
                body.append(f"    out_Target0 = {call};")
            return

        body.append(f"    {self.declarator(return_type, 'result')} = {call};")
        location = 0
        for index, item in enumerate(self._struct(return_type.base)):
            key = item.semantic_key or ""
            if key in BUILTIN_OUTPUTS:
                body.append(f"    {BUILTIN_OUTPUTS[key]} = result.{item.name};")
                continue
            if stage == Stage.FRAGMENT:
                target = target_index(key)
                slot = index if target is None else target
                variable = f"out_Target{slot}"
                globals_.append(
                    f"layout(location = {slot}) out {self.declarator(item.type, variable)};"
                )
            else:
                variable = f"v_{item.name}"
                flat = "flat " if _is_integer(item.type) else ""
                globals_.append(
                    f"layout(location = {location}) {flat}out "
                    f"{self.declarator(item.type, variable)};"
                )
                location += _locations(item.type)
            body.append(f"    {variable} = result.{item.name};")

    def entry_point_wrapper(self) -> list[str]:
        """Generate the ``void main()`` wrapper around the dialect entry point."""
        convention = self.convention
        globals_: list[str] = []
        body: list[str] = []
        if convention.stage == Stage.VERTEX and Feature.INVARIANT in self.features:
            globals_.append("invariant gl_Position;")

        args = self._input_lines(globals_, body)
        call = f"{convention.entry_name}({', '.join(args)})"
        self._output_lines(globals_, body, call)

        lines = list(globals_)
        if globals_:
            lines.append("")
        lines.append("void main() {")
        lines.extend(body)
        lines.append("}")
        return lines
