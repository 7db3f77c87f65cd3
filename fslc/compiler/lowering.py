"""Entry-point lowering.

Normalises the INIT_MAIN / RETURN markers and parameter modifiers into an
``EntryConvention`` that every backend generator consumes, and validates the
entry point against its binary, its resource table and the project-wide root
signature association.
"""

from dataclasses import dataclass, field

from loguru import logger

from fslc.compiler.constants import ENTRY_NAMES, SYSTEM_VALUES
from fslc.compiler.errors import SemanticError
from fslc.compiler.ir import (
    IREntryPoint,
    IREntryReturn,
    IRFunction,
    IRInitMain,
    IRParameter,
    IRReturn,
    IRType,
    ShaderIR,
)
from fslc.compiler.ir_analysis import (
    find_called_functions,
    iter_stmts,
    reachable_functions,
    referenced_names,
    topological_sort,
    transitive_names,
)
from fslc.compiler.models import ResolvedResource, ResolvedTable, Stage

_OBLIGATIONS = {
    "in": "value",
    "out": "write_reference",
    "inout": "read_write_reference",
}


@dataclass(frozen=True)
class ParamConvention:
    """How a parameter is passed.

    Attributes:
        direction: ``in``, ``out`` or ``inout``
        obligation: ``value``, ``write_reference`` or ``read_write_reference``;
            targets without reference parameters must still honour it
    """

    direction: str
    obligation: str

    @property
    def by_reference(self) -> bool:
        return self.obligation != "value"


def param_convention(param: IRParameter) -> ParamConvention:
    """Calling convention of a parameter from its modifier."""
    direction = param.qualifier or "in"
    return ParamConvention(direction, _OBLIGATIONS[direction])


@dataclass
class RootSignatures:
    """Project-wide resource-binding associations (one graphics, one compute)."""

    graphics: str = "DefaultRootSignature"
    compute: str = "ComputeRootSignature"

    def for_stage(self, stage: Stage) -> str:
        return self.compute if stage == Stage.COMPUTE else self.graphics


@dataclass
class EntryConvention:
    """Lowered prologue/epilogue description of one entry point.

    Attributes:
        stage: Pipeline stage
        entry: The entry point being lowered
        returns_value: True when the entry returns through RETURN(value)
        return_type: Declared return type (None for void)
        params: Every entry parameter with its convention
        inputs: Struct stage inputs, in declaration order
        system_values: System-value parameters, in declaration order
        num_threads: Thread-group size (compute only)
        root_signature: Root signature the entry binds through
        table: Resource table of the entry, if any
        resources: Resources the entry uses (directly or through helpers)
        helpers: Helpers reachable from the entry, callees first
        helper_conventions: Parameter conventions of each reachable helper
        helper_resources: Resources each reachable helper uses transitively
        helper_names: Every name each reachable helper references transitively
    """

    stage: Stage
    entry: IREntryPoint
    returns_value: bool
    return_type: IRType | None
    params: list[tuple[IRParameter, ParamConvention]]
    inputs: list[IRParameter]
    system_values: list[IRParameter]
    num_threads: tuple[int, int, int] | None
    root_signature: str
    table: ResolvedTable | None
    resources: list[ResolvedResource] = field(default_factory=list)
    helpers: list[IRFunction] = field(default_factory=list)
    helper_conventions: dict[str, list[ParamConvention]] = field(default_factory=dict)
    helper_resources: dict[str, list[ResolvedResource]] = field(default_factory=dict)
    helper_names: dict[str, set[str]] = field(default_factory=dict)

    @property
    def entry_name(self) -> str:
        return self.entry.name


def _error(message: str, item: IREntryPoint | IRFunction, line: int | None = None):
    return SemanticError(message, item.file, line or item.line)


def _check_markers(entry: IREntryPoint, returns_value: bool) -> None:
    stmts = list(iter_stmts(entry.body))
    init_mains = [s for s in stmts if isinstance(s, IRInitMain)]
    if not entry.body or not isinstance(entry.body[0], IRInitMain):
        raise _error(f"INIT_MAIN must be the first statement of {entry.name}", entry)
    if len(init_mains) > 1:
        raise _error(
            f"INIT_MAIN appears more than once in {entry.name}", entry, init_mains[1].line
        )

    returns = 0
    for stmt in stmts:
        match stmt:
            case IRReturn():
                raise _error(
                    f"plain 'return' is not allowed in {entry.name}; use RETURN(...)",
                    entry,
                    stmt.line,
                )
            case IREntryReturn(values=values):
                returns += 1
                if returns_value and len(values) != 1:
                    raise _error(
                        f"{entry.name} returns a value and must use RETURN(value) "
                        f"with exactly one value",
                        entry,
                        stmt.line,
                    )
                if not returns_value and values:
                    raise _error(
                        f"{entry.name} returns void and must use RETURN()",
                        entry,
                        stmt.line,
                    )
    if not returns:
        marker = "RETURN(value)" if returns_value else "RETURN()"
        raise _error(f"{entry.name} must return with {marker}", entry)


def _check_helper(func: IRFunction) -> None:
    for stmt in iter_stmts(func.body):
        if isinstance(stmt, IREntryReturn):
            raise _error(
                f"RETURN is only allowed in entry points; helper '{func.name}' "
                f"must use 'return'",
                func,
                stmt.line,
            )
        if isinstance(stmt, IRInitMain):
            raise _error(
                f"INIT_MAIN is only allowed in entry points (found in '{func.name}')",
                func,
                stmt.line,
            )


def _check_recursion(helpers: list[IRFunction]) -> None:
    names = {f.name for f in helpers}
    calls = {f.name: find_called_functions(f, names) for f in helpers}
    for func in helpers:
        reached: set[str] = set()
        pending = list(calls[func.name])
        while pending:
            name = pending.pop()
            if name == func.name:
                raise _error(f"helper '{func.name}' is recursive", func)
            if name not in reached:
                reached.add(name)
                pending.extend(calls[name])


def _select_table(
    entry: IREntryPoint,
    tables: dict[str, ResolvedTable],
    table_errors: dict[str, SemanticError],
) -> ResolvedTable | None:
    name = entry.table_name
    if name is None:
        candidates = sorted(set(tables) | set(table_errors))
        if not candidates:
            return None
        if len(candidates) > 1:
            raise _error(
                f"{entry.name} must select one of the tables "
                f"({', '.join(candidates)}) with USE_SRT",
                entry,
            )
        name = candidates[0]
    if name in table_errors:
        raise table_errors[name]
    if name not in tables:
        raise _error(f"{entry.name} uses unknown SRT '{name}'", entry)
    return tables[name]


def _check_params(
    entry: IREntryPoint, stage: Stage, struct_names: set[str]
) -> tuple[list[IRParameter], list[IRParameter]]:
    inputs: list[IRParameter] = []
    system_values: list[IRParameter] = []
    for param in entry.params:
        if param.system_value:
            _, stages = SYSTEM_VALUES[param.system_value]
            if stage not in stages:
                raise _error(
                    f"system value {param.system_value} is not available in "
                    f"{stage.name.lower()} entry points",
                    entry,
                )
            system_values.append(param)
            continue
        if stage == Stage.COMPUTE:
            raise _error(
                f"compute entry points only take system values; '{param.name}' is not one",
                entry,
            )
        if param.type.base not in struct_names:
            raise _error(
                f"input '{param.name}' of {entry.name} has unknown struct type "
                f"'{param.type.base}'",
                entry,
            )
        inputs.append(param)
    return inputs, system_values


def _num_threads(entry: IREntryPoint, stage: Stage) -> tuple[int, int, int] | None:
    if stage != Stage.COMPUTE:
        if entry.num_threads is not None:
            raise _error("NUM_THREADS is only allowed on compute entry points", entry)
        return None
    if entry.num_threads is None:
        raise _error(f"{entry.name} requires NUM_THREADS(x, y, z)", entry)
    dims = entry.num_threads
    if not all(isinstance(d, int) and d > 0 for d in dims):
        raise _error(
            f"NUM_THREADS dimensions must be positive integers, got {dims}", entry
        )
    return (int(dims[0]), int(dims[1]), int(dims[2]))


def lower(
    shader: ShaderIR,
    tables: dict[str, ResolvedTable],
    *,
    table_errors: dict[str, SemanticError] | None = None,
    declared_resources: set[str] | None = None,
    root_signatures: RootSignatures | None = None,
) -> EntryConvention:
    """Lower and validate the entry point of a specialised shader.

    Args:
        shader: Specialised shader IR
        tables: Successfully resolved tables of the module, by name
        table_errors: Semantic errors of tables that failed to resolve
        declared_resources: Every resource name declared anywhere in the
            module, used to catch resources from a table the entry cannot reach
        root_signatures: Project-wide graphics/compute associations

    Returns:
        The entry convention consumed by the generators

    Raises:
        SemanticError: If the entry point or its helpers are invalid
    """
    entry = shader.entry
    table_errors = table_errors or {}
    root_signatures = root_signatures or RootSignatures()
    stage = shader.stage

    if entry.stage != stage:
        expected = next(name for name, s in ENTRY_NAMES.items() if s == stage)
        raise _error(
            f"binary '{shader.output_name}' is a {stage.name.lower()} binary and must "
            f"declare {expected}, not {entry.name}",
            entry,
        )

    returns_value = entry.return_type is not None
    if stage == Stage.COMPUTE and returns_value:
        raise _error(f"{entry.name} must return void", entry)
    _check_markers(entry, returns_value)
    num_threads = _num_threads(entry, stage)

    struct_names = {s.name for s in shader.structs}
    inputs, system_values = _check_params(entry, stage, struct_names)

    expected_root = root_signatures.for_stage(stage)
    if entry.root_signature and entry.root_signature != expected_root:
        kind = "compute" if stage == Stage.COMPUTE else "graphics"
        raise _error(
            f"{entry.name} uses root signature '{entry.root_signature}' but every "
            f"{kind} shader binds through '{expected_root}'",
            entry,
        )

    table = _select_table(entry, tables, table_errors)
    available = table.by_name if table else {}

    helpers = topological_sort(reachable_functions(entry, shader.functions))
    for helper in helpers:
        _check_helper(helper)
    _check_recursion(helpers)
    helper_names = transitive_names(helpers)

    used = set(referenced_names(entry))
    for helper in helpers:
        used |= helper_names[helper.name]

    foreign = sorted(
        name
        for name in used
        if name not in available and name in (declared_resources or set())
    )
    if foreign:
        where = f"table '{table.name}'" if table else "any table bound to it"
        raise _error(
            f"resource '{foreign[0]}' used by {entry.name} is not declared in {where}",
            entry,
        )

    groupshared = {g.name for g in shader.groupshared}
    if stage != Stage.COMPUTE and used & groupshared:
        name = sorted(used & groupshared)[0]
        raise _error(
            f"group-shared '{name}' can only be used by compute entry points", entry
        )

    def resources_for(names: set[str]) -> list[ResolvedResource]:
        return sorted(
            (available[n] for n in names if n in available), key=lambda r: r.index
        )

    convention = EntryConvention(
        stage=stage,
        entry=entry,
        returns_value=returns_value,
        return_type=entry.return_type,
        params=[(p, param_convention(p)) for p in entry.params],
        inputs=inputs,
        system_values=system_values,
        num_threads=num_threads,
        root_signature=expected_root,
        table=table,
        resources=resources_for(used),
        helpers=helpers,
        helper_conventions={
            h.name: [param_convention(p) for p in h.params] for h in helpers
        },
        helper_resources={h.name: resources_for(helper_names[h.name]) for h in helpers},
        helper_names=helper_names,
    )
    logger.debug(
        f"Lowered {entry.name} of '{shader.output_name}': {len(helpers)} helpers, "
        f"{len(convention.resources)} resources"
    )
    return convention
