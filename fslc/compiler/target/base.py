"""Target abstraction for shader generation.

A Target encapsulates everything needed to generate native code for one
platform:
- Syntax rules (type names, literals, intrinsic mapping)
- Resource binding declarations for the platform's binding model
- Entry point signature, prologue/epilogue and wrapper
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from fslc.compiler.constants import (
    ATOMIC_OPERATIONS,
    BARRIER_INTRINSICS,
    BINDING_MODELS,
    INTRINSIC_RENAMES,
    NONUNIFORM_TIERS,
    PLATFORM_LANGUAGE,
    WRITE_INTRINSICS,
)
from fslc.compiler.errors import SemanticError, UnsupportedOperationError
from fslc.compiler.ir import (
    IRDefine,
    IRGroupShared,
    IRParameter,
    IRStruct,
    IRStructField,
    IRType,
    ShaderIR,
)
from fslc.compiler.lowering import EntryConvention, ParamConvention
from fslc.compiler.models import (
    NO_FEATURES,
    Feature,
    Language,
    Platform,
    ResolvedResource,
    Stage,
    feature_names,
)

# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class GeneratedShader:
    """Result of generating one (binary, platform, variant).

    Attributes:
        platform: Target platform
        stage: Pipeline stage
        source: Native source text
        entry_name: Name of the native entry function
        metadata: Binding model, non-uniform tier, features, thread-group size
    """

    platform: Platform
    stage: Stage
    source: str
    entry_name: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def language(self) -> Language:
        return PLATFORM_LANGUAGE[self.platform]


# =============================================================================
# Helpers shared by the targets
# =============================================================================


def scalar_type(type_name: str) -> str:
    """Scalar component type of a vector type (``uint4`` -> ``uint``)."""
    return type_name.rstrip("234")


def vector_size(type_name: str) -> int:
    """Component count of a vector type (1 for scalars)."""
    last = type_name[-1:]
    return int(last) if last in ("2", "3", "4") else 1


def intrinsic_shape(name: str) -> str:
    """Texture shape encoded in a texture intrinsic name."""
    for prefix in ("SampleLvlTex", "SampleTex", "LoadRWTex", "LoadTex", "Write"):
        if name.startswith(prefix):
            return name[len(prefix):]
    return "2D"


def expect_args(name: str, args: list[str], count: int) -> list[str]:
    """Check the argument count of an intrinsic call."""
    if len(args) != count:
        raise SemanticError(f"{name} expects {count} arguments, got {len(args)}")
    return args


def texel_type(resource: ResolvedResource | None) -> str | None:
    """Element type of a texture or buffer resource, if known."""
    if resource is None:
        return None
    return getattr(resource.kind, "element_type", None)


def texel_swizzle(resource: ResolvedResource | None) -> str:
    """Swizzle narrowing a four-component texel to the declared element type."""
    element = texel_type(resource)
    if element is None:
        return ""
    return {1: ".x", 2: ".xy", 3: ".xyz"}.get(vector_size(element), "")


def widen_texel(value: str, resource: ResolvedResource | None, vec4_type: str) -> str:
    """Widen a texel value to four components for storage writes."""
    element = texel_type(resource)
    size = vector_size(element) if element else 4
    if size == 4:
        return value
    if size == 1:
        return f"{vec4_type}({value})"
    return f"{vec4_type}({value}{', 0' * (4 - size)})"


def struct_fields(struct: IRStruct) -> list[IRStructField]:
    """Fields of a specialised struct (conditional blocks already resolved)."""
    return [f for f in struct.fields if isinstance(f, IRStructField)]


def io_struct_roles(convention: EntryConvention) -> dict[str, str]:
    """Map stage input/output struct names to their interface role.

    Roles are ``vertex_input``, ``vertex_output``, ``fragment_input`` and
    ``fragment_output``. Compute entries have no interface structs.
    """
    prefix = {Stage.VERTEX: "vertex", Stage.FRAGMENT: "fragment"}.get(convention.stage)
    if prefix is None:
        return {}
    roles = {p.type.base: f"{prefix}_input" for p in convention.inputs}
    if convention.return_type is not None:
        roles[convention.return_type.base] = f"{prefix}_output"
    return roles


def target_index(semantic_key: str | None) -> int | None:
    """Render-target index of an ``SV_Target<n>`` semantic."""
    if semantic_key and semantic_key.startswith("SV_TARGET"):
        suffix = semantic_key[len("SV_TARGET"):]
        return int(suffix) if suffix.isdigit() else 0
    return None


# =============================================================================
# Target ABC
# =============================================================================


class Target(ABC):
    """Base class for all generation targets.

    A Target instance is created per generated shader; ``begin`` binds it to
    the shader and its entry convention before any code is emitted, so hooks
    may record state (required extensions, non-uniform usage).
    """

    language: Language
    entry_name: str = "main"
    groupshared_qualifier: str = "groupshared"

    def __init__(self, platform: Platform, features: Feature = NO_FEATURES):
        self.platform = platform
        self.features = features
        self.extensions: list[str] = []
        self.uses_nonuniform = False
        self.shader: ShaderIR | None = None
        self.convention: EntryConvention | None = None

    def begin(self, shader: ShaderIR, convention: EntryConvention) -> None:
        """Bind the target to the shader being generated."""
        self.shader = shader
        self.convention = convention

    @property
    def nonuniform_tier(self) -> str:
        return NONUNIFORM_TIERS[self.platform]

    @property
    def resources(self) -> dict[str, ResolvedResource]:
        table = self.convention.table if self.convention else None
        return table.by_name if table else {}

    @property
    def groupshared(self) -> dict[str, IRGroupShared]:
        return {g.name: g for g in self.shader.groupshared} if self.shader else {}

    def require_extension(self, name: str) -> None:
        if name not in self.extensions:
            self.extensions.append(name)

    def unsupported(self, what: str) -> UnsupportedOperationError:
        return UnsupportedOperationError(f"{what} is not supported on {self.platform.name}")

    # --- Code Generation: Syntax ---

    def type_name(self, ir_type: IRType | str) -> str:
        """Map IR type to target type name. Default: pass-through."""
        if isinstance(ir_type, IRType):
            return ir_type.base
        return ir_type

    def declarator(self, ir_type: IRType, name: str) -> str:
        """Declare ``name`` with ``ir_type`` (C-style array suffix)."""
        base = self.type_name(ir_type)
        if ir_type.array_size is not None:
            return f"{base} {name}[{ir_type.array_size}]"
        return f"{base} {name}"

    def literal(self, value: str, kind: str) -> str:
        """Format a literal value. Default: C-like formatting."""
        if kind == "uint":
            return f"{value}u"
        return value

    def builtin_function(self, name: str) -> str | None:
        """Rename of a math intrinsic for this language, if it differs."""
        renames = INTRINSIC_RENAMES.get(name)
        return renames[self.language] if renames else None

    def intrinsic(self, name: str, args: list[str]) -> str | None:
        """Expression form of a target-specific intrinsic, or None."""
        return None

    @abstractmethod
    def texture_intrinsic(
        self, name: str, args: list[str], resource: ResolvedResource | None
    ) -> str:
        """Expression form of a sample or load intrinsic."""
        ...

    @abstractmethod
    def matrix_intrinsic(self, name: str, args: list[str]) -> str:
        """Expression form of a matrix construction or access intrinsic."""
        ...

    def nonuniform_index(self, index: str) -> str:
        """Mark a resource-array index as divergent. Default: untouched."""
        return index

    def array_initializer(self, ir_type: IRType, args: list[str]) -> str:
        return "{" + ", ".join(args) + "}"

    def discard(self) -> str:
        return "discard;"

    def resource_reference(self, resource: ResolvedResource) -> str:
        """Expression naming a bound resource inside a function body."""
        return resource.name

    def param_decl(self, param: IRParameter, convention: ParamConvention) -> str:
        decl = self.declarator(param.type, param.name)
        if convention.by_reference:
            return f"{convention.direction} {decl}"
        return decl

    def helper_extra_params(self, resources: list[ResolvedResource]) -> list[str]:
        """Extra parameters a helper needs to reach its resources."""
        return []

    def helper_extra_args(self, resources: list[ResolvedResource]) -> list[str]:
        """Arguments matching ``helper_extra_params`` at a call site."""
        return []

    # --- Code Generation: Statement intrinsics ---

    def statement_call(
        self, name: str, args: list[str], dest_root: str | None
    ) -> list[str] | None:
        """Lines for a call that must stand as its own statement, or None."""
        if name in ATOMIC_OPERATIONS:
            return self.atomic(name, args, dest_root)
        if name in WRITE_INTRINSICS:
            return [self.texture_write(name, args, self.resources.get(dest_root or ""))]
        if name in BARRIER_INTRINSICS:
            return self.barrier(name)
        return None

    @abstractmethod
    def atomic(self, name: str, args: list[str], dest_root: str | None) -> list[str]:
        """Lines for an atomic operation on ``args[0]``."""
        ...

    @abstractmethod
    def texture_write(
        self, name: str, args: list[str], resource: ResolvedResource | None
    ) -> str:
        """Statement writing one texel of a storage texture."""
        ...

    @abstractmethod
    def barrier(self, name: str) -> list[str]:
        ...

    def atomic_value_type(self, dest_root: str | None) -> str:
        """Integer type held by the atomic destination."""
        resource = self.resources.get(dest_root or "")
        element = getattr(resource.kind, "element_type", "") if resource else ""
        if not element and dest_root in self.groupshared:
            element = self.groupshared[dest_root].type.base
        return "int" if element in ("atomic_int", "int") else "uint"

    # --- Code Generation: Declarations ---

    @abstractmethod
    def header_lines(self) -> list[str]:
        """Lines opening the file (version, extensions, banner comment)."""
        ...

    def banner(self) -> str:
        shader = self.shader
        return (
            f"// {shader.output_name} for {self.platform.name} "
            f"({shader.stage.name.lower()}), generated by fslc. "
            f"Non-uniform indexing tier: {self.nonuniform_tier}."
        )

    def define_lines(self, defines: list[IRDefine]) -> list[str]:
        return [f"#define {d.name} {d.value}".rstrip() for d in defines]

    def struct_lines(self, struct: IRStruct, role: str | None) -> list[str]:
        """Struct definition; ``role`` names its stage-interface role, if any."""
        lines = [f"struct {struct.name} {{"]
        for item in struct_fields(struct):
            lines.append(f"    {self.declarator(item.type, item.name)};")
        lines.append("};")
        return lines

    @abstractmethod
    def resource_lines(self) -> list[str]:
        """Declarations binding the entry's resource table."""
        ...

    def groupshared_lines(self, items: list[IRGroupShared]) -> list[str]:
        return [
            f"{self.groupshared_qualifier} {self.declarator(g.type, g.name)};"
            for g in items
        ]

    # --- Code Generation: Entry Point ---

    def init_main(self) -> list[str]:
        """Lines emitted where INIT_MAIN stands. Default: none."""
        return []

    def entry_return(self, value: str | None) -> list[str]:
        return [f"return {value};" if value is not None else "return;"]

    @abstractmethod
    def entry_signature(self) -> list[str]:
        """Lines up to and including the opening brace of the entry body."""
        ...

    def entry_point_wrapper(self) -> list[str]:
        """Native entry wrapping the dialect entry point. Default: none."""
        return []

    def metadata(self) -> dict[str, Any]:
        convention = self.convention
        return {
            "language": self.language.name,
            "binding_model": BINDING_MODELS[self.language],
            "nonuniform_tier": self.nonuniform_tier,
            "nonuniform_indexing": self.uses_nonuniform,
            "features": feature_names(self.features),
            "table": convention.table.name if convention.table else None,
            "root_signature": convention.root_signature,
            "num_threads": list(convention.num_threads) if convention.num_threads else None,
            "extensions": list(self.extensions),
        }
