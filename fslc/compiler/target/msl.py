"""Metal Shading Language target for MACOS and IOS.

Each resource set becomes an argument-buffer struct ``SRTSet<Freq>`` bound at
``[[buffer(2 + ordinal)]]``. Samplers and read-write resources stay loose
(``[[texture(n)]]``, ``[[buffer(6 + n)]]``, ``[[sampler(n)]]``); ``NO_AB``
makes everything loose and ``ICB``/``RAYTRACING`` promote everything except
samplers into the argument buffers. Helpers reach resources through extra
parameters appended to their signatures and call sites.
"""

from typing import Any

from fslc.compiler.constants import (
    LOAD_INTRINSICS,
    LOAD_RW_INTRINSICS,
    MATRIX_CONSTRUCTORS,
    METAL_ARGUMENT_BUFFER_START,
    METAL_LOOSE_BUFFER_START,
    SAMPLE_INTRINSICS,
    SAMPLE_LEVEL_INTRINSICS,
)
from fslc.compiler.ir import IRParameter, IRStruct, ShaderIR
from fslc.compiler.lowering import EntryConvention, ParamConvention
from fslc.compiler.models import (
    BufferKind,
    ConstantBufferKind,
    Language,
    ResolvedResource,
    ResolvedSet,
    SamplerKind,
    Stage,
    TextureKind,
)
from fslc.compiler.resolver import is_argument_buffer_member
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

TEXTURE_TYPES = {
    "1D": "texture1d",
    "2D": "texture2d",
    "2DArray": "texture2d_array",
    "3D": "texture3d",
    "Cube": "texturecube",
    "Depth2D": "depth2d",
}

COORD_TYPES = {"1D": "uint", "2D": "uint2", "2DArray": "uint2", "3D": "uint3"}

SYSTEM_VALUE_ATTRIBUTES = {
    "SV_VERTEXID": "vertex_id",
    "SV_INSTANCEID": "instance_id",
    "SV_POSITION": "position",
    "SV_ISFRONTFACE": "front_facing",
    "SV_PRIMITIVEID": "primitive_id",
    "SV_SAMPLEINDEX": "sample_id",
    "SV_DISPATCHTHREADID": "thread_position_in_grid",
    "SV_GROUPID": "threadgroup_position_in_grid",
    "SV_GROUPTHREADID": "thread_position_in_threadgroup",
    "SV_GROUPINDEX": "thread_index_in_threadgroup",
}

STAGE_QUALIFIERS = {
    Stage.VERTEX: "vertex",
    Stage.FRAGMENT: "fragment",
    Stage.COMPUTE: "kernel",
}

_ATOMIC_FUNCTIONS = {
    "AtomicAdd": "atomic_fetch_add_explicit",
    "AtomicOr": "atomic_fetch_or_explicit",
    "AtomicAnd": "atomic_fetch_and_explicit",
    "AtomicXor": "atomic_fetch_xor_explicit",
    "AtomicMin": "atomic_fetch_min_explicit",
    "AtomicMax": "atomic_fetch_max_explicit",
}

_RELAXED = "memory_order_relaxed"


def set_struct_name(resolved_set: ResolvedSet | str) -> str:
    name = resolved_set if isinstance(resolved_set, str) else resolved_set.name
    return f"SRTSet{name}"


def set_param_name(resolved_set: ResolvedSet | str) -> str:
    name = resolved_set if isinstance(resolved_set, str) else resolved_set.name
    return f"srt{name}"


class MSLTarget(Target):
    """Metal Shading Language consumed by the xcrun metal compiler."""

    language = Language.MSL
    entry_name = "stageMain"
    groupshared_qualifier = ""

    def begin(self, shader: ShaderIR, convention: EntryConvention) -> None:
        super().begin(shader, convention)
        self.members: dict[str, ResolvedSet] = {}
        self.argument_sets: list[ResolvedSet] = []
        # name -> (attribute, slot) of loose resources
        self.loose: dict[str, tuple[str, int]] = {}
        counters = {"texture": 0, "sampler": 0, "buffer": METAL_LOOSE_BUFFER_START}
        table = convention.table
        for resolved_set in table.sets if table else []:
            in_buffer = False
            for resource in resolved_set.resources:
                if is_argument_buffer_member(resource.declaration, self.features):
                    self.members[resource.name] = resolved_set
                    in_buffer = True
                    continue
                match resource.kind:
                    case SamplerKind():
                        attribute = "sampler"
                    case TextureKind():
                        attribute = "texture"
                    case _:
                        attribute = "buffer"
                self.loose[resource.name] = (attribute, counters[attribute])
                counters[attribute] += resource.count
            if in_buffer:
                self.argument_sets.append(resolved_set)

    # --- Syntax ---

    def resource_reference(self, resource: ResolvedResource) -> str:
        resolved_set = self.members.get(resource.name)
        if resolved_set is None:
            return resource.name
        reference = f"{set_param_name(resolved_set)}.{resource.name}"
        # Argument buffers hold constant buffers by pointer
        if isinstance(resource.kind, ConstantBufferKind):
            return f"(*{reference})"
        return reference

    def param_decl(self, param: IRParameter, convention: ParamConvention) -> str:
        if not convention.by_reference:
            return self.declarator(param.type, param.name)
        base = self.type_name(param.type)
        if param.type.array_size is not None:
            return f"thread {base} (&{param.name})[{param.type.array_size}]"
        return f"thread {base}& {param.name}"

    def _loose_param(self, resource: ResolvedResource) -> str:
        return f"{self.resource_type(resource, in_buffer=False)} {resource.name}"

    def helper_extra_params(self, resources: list[ResolvedResource]) -> list[str]:
        sets: list[str] = []
        loose: list[str] = []
        for resource in resources:
            resolved_set = self.members.get(resource.name)
            if resolved_set is None:
                loose.append(self._loose_param(resource))
                continue
            param = f"constant {set_struct_name(resolved_set)}& {set_param_name(resolved_set)}"
            if param not in sets:
                sets.append(param)
        return sets + loose

    def helper_extra_args(self, resources: list[ResolvedResource]) -> list[str]:
        sets: list[str] = []
        loose: list[str] = []
        for resource in resources:
            resolved_set = self.members.get(resource.name)
            if resolved_set is None:
                loose.append(resource.name)
            elif set_param_name(resolved_set) not in sets:
                sets.append(set_param_name(resolved_set))
        return sets + loose

    def discard(self) -> str:
        return "discard_fragment();"

    def texture_intrinsic(
        self, name: str, args: list[str], resource: ResolvedResource | None
    ) -> str:
        shape = intrinsic_shape(name)
        depth = resource is not None and getattr(resource.kind, "shape", None) == "Depth2D"
        swizzle = "" if depth else texel_swizzle(resource)
        if name in SAMPLE_INTRINSICS or name in SAMPLE_LEVEL_INTRINSICS:
            count = 3 if name in SAMPLE_INTRINSICS else 4
            texture, sampler, uv, *lod = expect_args(name, args, count)
            coords = f"({uv}).xy, uint(({uv}).z)" if shape == "2DArray" else uv
            level = f", level({lod[0]})" if lod else ""
            return f"{texture}.sample({sampler}, {coords}{level}){swizzle}"
        if name in LOAD_INTRINSICS:
            texture, coord, lod = expect_args(name, args, 3)
            return f"{texture}.read({COORD_TYPES[shape]}({coord}), uint({lod})){swizzle}"
        if name in LOAD_RW_INTRINSICS:
            texture, coord = expect_args(name, args, 2)
            return f"{texture}.read({COORD_TYPES[shape]}({coord})){swizzle}"
        raise self.unsupported(name)

    def texture_write(
        self, name: str, args: list[str], resource: ResolvedResource | None
    ) -> str:
        texture, coord, value = expect_args(name, args, 3)
        vec4_type = f"{scalar_type(texel_type(resource) or 'float')}4"
        texel = widen_texel(value, resource, vec4_type)
        return f"{texture}.write({texel}, {COORD_TYPES[intrinsic_shape(name)]}({coord}));"

    def matrix_intrinsic(self, name: str, args: list[str]) -> str:
        # Metal matrix constructors take columns
        if name in MATRIX_CONSTRUCTORS:
            matrix_type, order = MATRIX_CONSTRUCTORS[name]
            expect_args(name, args, int(matrix_type[-1]))
            built = f"{matrix_type}({', '.join(args)})"
            return built if order == "cols" else f"transpose({built})"
        first, second = expect_args(name, args, 2)
        match name:
            case "getCol":
                return f"{first}[{second}]"
            case "getRow":
                return f"transpose({first})[{second}]"
        return f"({first} * {second})"

    def atomic(self, name: str, args: list[str], dest_root: str | None) -> list[str]:
        dest = f"&{args[0]}"
        match name:
            case "AtomicLoad":
                _, original = args
                return [f"{original} = atomic_load_explicit({dest}, {_RELAXED});"]
            case "AtomicStore":
                _, value = args
                return [f"atomic_store_explicit({dest}, {value}, {_RELAXED});"]
            case "AtomicExchange":
                _, value, original = args
                return [f"{original} = atomic_exchange_explicit({dest}, {value}, {_RELAXED});"]
            case "AtomicCompareExchange":
                _, compare, value, original = args
                value_type = self.atomic_value_type(dest_root)
                return [
                    "{",
                    f"    {value_type} _expected = {compare};",
                    f"    atomic_compare_exchange_weak_explicit({dest}, &_expected, {value}, "
                    f"{_RELAXED}, {_RELAXED});",
                    f"    {original} = _expected;",
                    "}",
                ]
        call = f"{_ATOMIC_FUNCTIONS[name]}({dest}, {args[1]}, {_RELAXED})"
        if len(args) == 3:
            return [f"{args[2]} = {call};"]
        return [f"{call};"]

    def barrier(self, name: str) -> list[str]:
        if name == "AllMemoryBarrierWithGroupSync":
            return ["threadgroup_barrier(mem_flags::mem_device | mem_flags::mem_threadgroup);"]
        return ["threadgroup_barrier(mem_flags::mem_threadgroup);"]

    # --- Declarations ---

    def header_lines(self) -> list[str]:
        return [self.banner(), "#include <metal_stdlib>", "using namespace metal;"]

    def struct_lines(self, struct: IRStruct, role: str | None) -> list[str]:
        if role is None:
            return super().struct_lines(struct, role)
        lines = [f"struct {struct.name} {{"]
        for index, item in enumerate(struct_fields(struct)):
            key = item.semantic_key or ""
            attribute = None
            if role == "vertex_input":
                attribute = f"attribute({index})"
            elif role == "fragment_output" and key == "SV_DEPTH":
                attribute = "depth(any)"
            elif role == "fragment_output":
                target = target_index(key)
                attribute = f"color({index if target is None else target})"
            elif key == "SV_POSITION":
                attribute = "position"
            elif scalar_type(item.type.base) in ("int", "uint"):
                attribute = "flat"
            decl = self.declarator(item.type, item.name)
            lines.append(f"    {decl} [[{attribute}]];" if attribute else f"    {decl};")
        lines.append("};")
        return lines

    def resource_type(self, resource: ResolvedResource, in_buffer: bool) -> str:
        declaration = resource.declaration
        array = declaration.is_array
        match declaration.kind:
            case SamplerKind():
                base = "sampler"
            case TextureKind(shape=shape, element_type=element, read_write=read_write):
                access = ", access::read_write" if read_write else ""
                base = f"{TEXTURE_TYPES[shape]}<{scalar_type(element)}{access}>"
            case BufferKind(element_type=element, read_write=read_write):
                space = "device" if read_write else "const device"
                if array:
                    raise self.unsupported(f"buffer array '{resource.name}'")
                return f"{space} {self.type_name(element)}*"
            case ConstantBufferKind(struct_name=struct_name):
                if array:
                    raise self.unsupported(f"constant buffer array '{resource.name}'")
                return f"constant {struct_name}*" if in_buffer else f"constant {struct_name}&"
            case _:
                raise self.unsupported(f"resource kind {declaration.kind!r}")
        if array:
            return f"array<{base}, {resource.count}>"
        return base

    def resource_lines(self) -> list[str]:
        lines = []
        for resolved_set in self.argument_sets:
            lines.append(f"struct {set_struct_name(resolved_set)} {{")
            for resource in resolved_set.resources:
                if resource.name not in self.members:
                    continue
                member_id = resource.index - resolved_set.base_index
                lines.append(
                    f"    {self.resource_type(resource, in_buffer=True)} "
                    f"{resource.name} [[id({member_id})]];"
                )
            lines.append("};")
            lines.append("")
        return lines[:-1]

    # --- Entry Point ---

    def init_main(self) -> list[str]:
        if self.convention.stage != Stage.COMPUTE:
            return []
        return [
            f"threadgroup {self.declarator(g.type, g.name)};"
            for g in self.shader.groupshared
        ]

    def entry_signature(self) -> list[str]:
        convention = self.convention
        if len(convention.inputs) > 1:
            raise self.unsupported("more than one stage_in struct")
        params = []
        for param, _ in convention.params:
            decl = self.declarator(param.type, param.name)
            if param.system_value:
                params.append(f"{decl} [[{SYSTEM_VALUE_ATTRIBUTES[param.system_value]}]]")
            else:
                params.append(f"{decl} [[stage_in]]")
        for resolved_set in self.argument_sets:
            slot = METAL_ARGUMENT_BUFFER_START + resolved_set.ordinal
            params.append(
                f"constant {set_struct_name(resolved_set)}& "
                f"{set_param_name(resolved_set)} [[buffer({slot})]]"
            )
        for resource in convention.resources:
            if resource.name in self.loose:
                attribute, slot = self.loose[resource.name]
                params.append(f"{self._loose_param(resource)} [[{attribute}({slot})]]")

        returns = (
            self.type_name(convention.return_type) if convention.return_type else "void"
        )
        qualifier = STAGE_QUALIFIERS[convention.stage]
        return [f"{qualifier} {returns} {self.entry_name}({', '.join(params)}) {{"]

    def metadata(self) -> dict[str, Any]:
        metadata = super().metadata()
        metadata["argument_buffers"] = {
            s.name: METAL_ARGUMENT_BUFFER_START + s.ordinal for s in self.argument_sets
        }
        metadata["loose_resources"] = {
            name: f"{attribute}({slot})" for name, (attribute, slot) in self.loose.items()
        }
        return metadata
