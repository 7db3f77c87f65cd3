"""HLSL target for DIRECT3D12.

Resources are bound through registers (``t``/``s``/``u``/``b``) with
``space = set ordinal`` and a root signature generated from the table: one
descriptor table per set, samplers in a table of their own.
"""

from collections import defaultdict

from fslc.compiler.constants import (
    LOAD_INTRINSICS,
    LOAD_RW_INTRINSICS,
    MATRIX_CONSTRUCTORS,
    SAMPLE_INTRINSICS,
    SAMPLE_LEVEL_INTRINSICS,
)
from fslc.compiler.ir import IRStruct, IRType, ShaderIR
from fslc.compiler.lowering import EntryConvention
from fslc.compiler.models import (
    BufferKind,
    ConstantBufferKind,
    Language,
    ResolvedResource,
    ResourceDeclaration,
    SamplerKind,
    Stage,
    TextureKind,
)
from fslc.compiler.target.base import (
    Target,
    expect_args,
    intrinsic_shape,
    struct_fields,
)

TEXTURE_TYPES = {
    "1D": "Texture1D",
    "2D": "Texture2D",
    "2DArray": "Texture2DArray",
    "3D": "Texture3D",
    "Cube": "TextureCube",
    "Depth2D": "Texture2D",
}

SYSTEM_VALUE_SEMANTICS = {
    "SV_VERTEXID": "SV_VertexID",
    "SV_INSTANCEID": "SV_InstanceID",
    "SV_POSITION": "SV_Position",
    "SV_ISFRONTFACE": "SV_IsFrontFace",
    "SV_PRIMITIVEID": "SV_PrimitiveID",
    "SV_SAMPLEINDEX": "SV_SampleIndex",
    "SV_DISPATCHTHREADID": "SV_DispatchThreadID",
    "SV_GROUPID": "SV_GroupID",
    "SV_GROUPTHREADID": "SV_GroupThreadID",
    "SV_GROUPINDEX": "SV_GroupIndex",
}

_RANGE_TYPES = {"t": "SRV", "u": "UAV", "b": "CBV"}


def register_class(declaration: ResourceDeclaration) -> str:
    """HLSL register class of a resource."""
    match declaration.kind:
        case SamplerKind():
            return "s"
        case ConstantBufferKind():
            return "b"
    return "u" if declaration.read_write else "t"


class HLSLTarget(Target):
    """Shader Model 6 HLSL consumed by dxc."""

    language = Language.HLSL
    entry_name = "main"

    def begin(self, shader: ShaderIR, convention: EntryConvention) -> None:
        super().begin(shader, convention)
        # name -> (register class, register, space)
        self.registers: dict[str, tuple[str, int, int]] = {}
        counters: dict[tuple[int, str], int] = defaultdict(int)
        table = convention.table
        for resource in table.resources if table else []:
            cls = register_class(resource.declaration)
            key = (resource.set_ordinal, cls)
            self.registers[resource.name] = (cls, counters[key], resource.set_ordinal)
            counters[key] += resource.count

    # --- Syntax ---

    def type_name(self, ir_type: IRType | str) -> str:
        base = super().type_name(ir_type)
        return {"atomic_uint": "uint", "atomic_int": "int"}.get(base, base)

    def nonuniform_index(self, index: str) -> str:
        return f"NonUniformResourceIndex({index})"

    def texture_intrinsic(
        self, name: str, args: list[str], resource: ResolvedResource | None
    ) -> str:
        if name in SAMPLE_INTRINSICS:
            texture, sampler, uv = expect_args(name, args, 3)
            return f"{texture}.Sample({sampler}, {uv})"
        if name in SAMPLE_LEVEL_INTRINSICS:
            texture, sampler, uv, lod = expect_args(name, args, 4)
            return f"{texture}.SampleLevel({sampler}, {uv}, {lod})"
        if name in LOAD_INTRINSICS:
            texture, coord, lod = expect_args(name, args, 3)
            location = "int4" if intrinsic_shape(name) == "3D" else "int3"
            return f"{texture}.Load({location}({coord}, {lod}))"
        if name in LOAD_RW_INTRINSICS:
            texture, coord = expect_args(name, args, 2)
            return f"{texture}[{coord}]"
        raise self.unsupported(name)

    def matrix_intrinsic(self, name: str, args: list[str]) -> str:
        # HLSL matrix constructors take rows
        if name in MATRIX_CONSTRUCTORS:
            matrix_type, order = MATRIX_CONSTRUCTORS[name]
            expect_args(name, args, int(matrix_type[-1]))
            built = f"{matrix_type}({', '.join(args)})"
            return f"transpose({built})" if order == "cols" else built
        first, second = expect_args(name, args, 2)
        match name:
            case "getCol":
                return f"transpose({first})[{second}]"
            case "getRow":
                return f"{first}[{second}]"
        return f"mul({first}, {second})"

    def atomic(self, name: str, args: list[str], dest_root: str | None) -> list[str]:
        match name:
            case "AtomicLoad" | "AtomicStore":
                raise self.unsupported(f"{name} (HLSL has no native atomic load/store)")
            case "AtomicCompareExchange":
                return [f"InterlockedCompareExchange({', '.join(args)});"]
        return [f"Interlocked{name[len('Atomic'):]}({', '.join(args)});"]

    def texture_write(
        self, name: str, args: list[str], resource: ResolvedResource | None
    ) -> str:
        texture, coord, value = expect_args(name, args, 3)
        return f"{texture}[{coord}] = {value};"

    def barrier(self, name: str) -> list[str]:
        return [f"{name}();"]

    # --- Declarations ---

    def root_signature(self) -> str:
        """Root signature string: one descriptor table per set."""
        parts = []
        if self.convention.stage != Stage.COMPUTE:
            parts.append("RootFlags(ALLOW_INPUT_ASSEMBLER_INPUT_LAYOUT)")
        samplers = []
        table = self.convention.table
        for resolved_set in table.sets if table else []:
            ranges = []
            for resource in resolved_set.resources:
                cls, register, space = self.registers[resource.name]
                entry = f"{cls}{register}, space = {space}, numDescriptors = {resource.count}"
                if cls == "s":
                    samplers.append(f"Sampler({entry})")
                else:
                    ranges.append(f"{_RANGE_TYPES[cls]}({entry})")
            if ranges:
                parts.append(f"DescriptorTable({', '.join(ranges)})")
        if samplers:
            parts.append(f"DescriptorTable({', '.join(samplers)})")
        return ", ".join(parts) or "RootFlags(0)"

    def header_lines(self) -> list[str]:
        return [
            self.banner(),
            "#pragma pack_matrix(column_major)",
            "",
            f'#define {self.convention.root_signature} "{self.root_signature()}"',
        ]

    def struct_lines(self, struct: IRStruct, role: str | None) -> list[str]:
        if role is None:
            return super().struct_lines(struct, role)
        lines = [f"struct {struct.name} {{"]
        auto = 0
        for index, item in enumerate(struct_fields(struct)):
            semantic = item.semantic
            if semantic is None and role == "fragment_output":
                semantic = f"SV_Target{index}"
            elif semantic is None:
                semantic = f"TEXCOORD{auto}"
                auto += 1
            lines.append(f"    {self.declarator(item.type, item.name)} : {semantic};")
        lines.append("};")
        return lines

    def resource_type(self, declaration: ResourceDeclaration) -> str:
        match declaration.kind:
            case SamplerKind(comparison=comparison):
                return "SamplerComparisonState" if comparison else "SamplerState"
            case TextureKind(shape=shape, element_type=element, read_write=True):
                return f"RW{TEXTURE_TYPES[shape]}<{element}>"
            case TextureKind(shape=shape, element_type=element):
                return f"{TEXTURE_TYPES[shape]}<{element}>"
            case BufferKind(element_type=element, read_write=read_write):
                prefix = "RW" if read_write else ""
                return f"{prefix}StructuredBuffer<{self.type_name(element)}>"
            case ConstantBufferKind(struct_name=struct_name):
                return f"ConstantBuffer<{struct_name}>"
        raise self.unsupported(f"resource kind {declaration.kind!r}")

    def resource_lines(self) -> list[str]:
        table = self.convention.table
        if table is None:
            return []
        lines = []
        for resource in table.resources:
            cls, register, space = self.registers[resource.name]
            name = resource.name
            if resource.declaration.is_array:
                name = f"{name}[{resource.count}]"
            lines.append(
                f"{self.resource_type(resource.declaration)} {name} : "
                f"register({cls}{register}, space{space});"
            )
        return lines

    # --- Entry Point ---

    def entry_signature(self) -> list[str]:
        convention = self.convention
        lines = [f"[RootSignature({convention.root_signature})]"]
        if convention.num_threads:
            x, y, z = convention.num_threads
            lines.append(f"[numthreads({x}, {y}, {z})]")

        params = []
        for param, _ in convention.params:
            decl = self.declarator(param.type, param.name)
            if param.system_value:
                decl = f"{decl} : {SYSTEM_VALUE_SEMANTICS[param.system_value]}"
            params.append(decl)

        return_type = convention.return_type
        suffix = ""
        if return_type is None:
            returns = "void"
        else:
            returns = self.type_name(return_type)
            struct_names = {s.name for s in self.shader.structs}
            if return_type.base not in struct_names:
                suffix = " : SV_Position" if convention.stage == Stage.VERTEX else " : SV_Target"
        lines.append(f"{returns} {self.entry_name}({', '.join(params)}){suffix} {{")
        return lines
