"""Intermediate Representation for shader translation."""

from dataclasses import dataclass, field
from typing import Union

from fslc.compiler.models import (
    Feature,
    NO_FEATURES,
    ResourceSet,
    ShaderResourceTable,
    Stage,
)

# Types


@dataclass(frozen=True)
class IRType:
    """Type in the IR."""

    base: str
    array_size: int | str | None = None

    def __str__(self) -> str:
        if self.array_size is not None:
            return f"{self.base}[{self.array_size}]"
        return self.base


# Expressions


@dataclass
class IRExpr:
    """Base for all expressions."""

    pass


@dataclass
class IRLiteral(IRExpr):
    """Literal value, kept in normalised source form."""

    value: str
    kind: str  # int, uint, float, bool


@dataclass
class IRName(IRExpr):
    """Variable reference."""

    name: str


@dataclass
class IRBinOp(IRExpr):
    """Binary operation."""

    op: str
    left: IRExpr
    right: IRExpr


@dataclass
class IRUnaryOp(IRExpr):
    """Unary operation."""

    op: str
    operand: IRExpr
    postfix: bool = False


@dataclass
class IRCall(IRExpr):
    """Function or intrinsic call."""

    func: str
    args: list[IRExpr]


@dataclass
class IRConstruct(IRExpr):
    """Type constructor (e.g., float3(1.0, 2.0, 3.0))."""

    type: IRType
    args: list[IRExpr]


@dataclass
class IRFieldAccess(IRExpr):
    """Struct field access or swizzle."""

    base: IRExpr
    field: str


@dataclass
class IRSubscript(IRExpr):
    """Array subscript."""

    base: IRExpr
    index: IRExpr


@dataclass
class IRTernary(IRExpr):
    """Ternary conditional."""

    condition: IRExpr
    true_expr: IRExpr
    false_expr: IRExpr


# Statements


@dataclass
class IRStmt:
    """Base for all statements."""

    line: int = field(default=0, kw_only=True)


@dataclass
class IRVariable:
    """A local variable declaration."""

    name: str
    type: IRType
    const: bool = False


@dataclass
class IRDeclare(IRStmt):
    """Variable declaration."""

    var: IRVariable
    init: IRExpr | None = None


@dataclass
class IRAssign(IRStmt):
    """Assignment."""

    target: IRExpr
    value: IRExpr


@dataclass
class IRAugmentedAssign(IRStmt):
    """Augmented assignment (+=, -=, etc.)."""

    target: IRExpr
    op: str
    value: IRExpr


@dataclass
class IRReturn(IRStmt):
    """Return statement in a helper function."""

    value: IRExpr | None = None


@dataclass
class IRIf(IRStmt):
    """If statement."""

    condition: IRExpr
    then_body: list[IRStmt] = field(default_factory=list)
    else_body: list[IRStmt] = field(default_factory=list)


@dataclass
class IRFor(IRStmt):
    """For loop."""

    init: IRStmt | None
    condition: IRExpr | None
    update: IRStmt | None
    body: list[IRStmt] = field(default_factory=list)


@dataclass
class IRWhile(IRStmt):
    """While loop."""

    condition: IRExpr
    body: list[IRStmt] = field(default_factory=list)


@dataclass
class IRBlock(IRStmt):
    """Nested block."""

    body: list[IRStmt] = field(default_factory=list)


@dataclass
class IRExprStmt(IRStmt):
    """Expression as statement."""

    expr: IRExpr


@dataclass
class IRBreak(IRStmt):
    """Break statement."""

    pass


@dataclass
class IRContinue(IRStmt):
    """Continue statement."""

    pass


@dataclass
class IRDiscard(IRStmt):
    """Fragment discard."""

    pass


@dataclass
class IRInitMain(IRStmt):
    """Begin-body marker of an entry point (INIT_MAIN)."""

    pass


@dataclass
class IREntryReturn(IRStmt):
    """Return marker of an entry point (RETURN(...))."""

    values: list[IRExpr] = field(default_factory=list)


@dataclass
class IRBranch:
    """One arm of a conditional block; ``condition`` is None for #else."""

    condition: str | None
    body: list = field(default_factory=list)
    line: int = 0


@dataclass
class IRConditional(IRStmt):
    """Conditional block evaluated per (platform, variant).

    Used both for statements inside bodies and for top-level items.
    """

    branches: list[IRBranch] = field(default_factory=list)
    file: str | None = None


# Top-level items


@dataclass
class IRStructField:
    """Field of a struct: type, name and optional semantic."""

    type: IRType
    name: str
    semantic: str | None = None

    @property
    def semantic_key(self) -> str | None:
        """Semantic normalised for case-insensitive matching."""
        return self.semantic.upper() if self.semantic else None


@dataclass
class IRStruct:
    """Struct definition. Fields may be wrapped in conditional blocks."""

    name: str
    fields: list["IRStructField | IRConditional"]
    file: str | None = None
    line: int = 0


@dataclass
class IRParameter:
    """Function parameter.

    ``qualifier`` is one of ``in``, ``out``, ``inout`` (empty means ``in``).
    ``system_value`` is set for entry-point parameters such as SV_VertexID.
    """

    name: str
    type: IRType
    qualifier: str = ""
    system_value: str | None = None


@dataclass
class IRFunction:
    """Helper function definition."""

    name: str
    params: list[IRParameter]
    return_type: IRType | None
    body: list[IRStmt] = field(default_factory=list)
    file: str | None = None
    line: int = 0


@dataclass
class IREntryPoint:
    """Entry point (VS_MAIN, PS_MAIN or CS_MAIN) with its attributes."""

    name: str
    stage: Stage
    params: list[IRParameter]
    return_type: IRType | None
    body: list[IRStmt] = field(default_factory=list)
    num_threads: tuple[int | str, int | str, int | str] | None = None
    root_signature: str | None = None
    table_name: str | None = None
    file: str | None = None
    line: int = 0


@dataclass
class IRGroupShared:
    """Group-shared (threadgroup) memory declaration."""

    type: IRType
    name: str
    file: str | None = None
    line: int = 0


@dataclass
class IRDefine:
    """Object-like #define."""

    name: str
    value: str
    file: str | None = None
    line: int = 0


IRItem = Union[
    IRStruct, IRFunction, IREntryPoint, IRGroupShared, IRDefine, IRConditional
]


@dataclass
class IRBinary:
    """A binary-output declaration (#vert/#frag/#comp ... #end)."""

    stage: Stage
    output_name: str
    features: Feature = NO_FEATURES
    variants: list[Feature] = field(default_factory=list)
    items: list[IRItem] = field(default_factory=list)
    file: str | None = None
    line: int = 0

    def variant_sets(self) -> list[Feature]:
        """Explicit flag combinations, each combined with the binary flags."""
        if not self.variants:
            return [self.features]
        return [self.features | v for v in self.variants]


@dataclass
class Module:
    """Parsed translation unit (a source file plus its includes)."""

    file: str
    items: list[IRItem] = field(default_factory=list)
    tables: list[ShaderResourceTable] = field(default_factory=list)
    fragments: dict[str, ResourceSet] = field(default_factory=dict)
    binaries: list[IRBinary] = field(default_factory=list)
    includes: list[str] = field(default_factory=list)

    @property
    def defines(self) -> dict[str, str]:
        return {
            item.name: item.value for item in self.items if isinstance(item, IRDefine)
        }


# Complete shader


@dataclass
class ShaderIR:
    """Specialised shader for one binary, platform and variant."""

    stage: Stage
    entry: IREntryPoint
    structs: list[IRStruct] = field(default_factory=list)
    functions: list[IRFunction] = field(default_factory=list)
    groupshared: list[IRGroupShared] = field(default_factory=list)
    defines: list[IRDefine] = field(default_factory=list)
    output_name: str = ""
    features: Feature = NO_FEATURES
