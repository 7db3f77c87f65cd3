"""IR analysis utilities for dependency tracking and ordering.

Provides functions for walking IR bodies, finding dependencies between
functions, collecting the names a function references, and topological
sorting.
"""

from collections import defaultdict
from collections.abc import Callable, Iterator
from dataclasses import replace

from fslc.compiler.ir import (
    IRAssign,
    IRAugmentedAssign,
    IRBinOp,
    IRBlock,
    IRCall,
    IRConditional,
    IRConstruct,
    IRDeclare,
    IREntryPoint,
    IREntryReturn,
    IRExpr,
    IRExprStmt,
    IRFieldAccess,
    IRFor,
    IRFunction,
    IRIf,
    IRName,
    IRReturn,
    IRStmt,
    IRSubscript,
    IRTernary,
    IRUnaryOp,
    IRWhile,
)


def iter_stmts(stmts: list[IRStmt]) -> Iterator[IRStmt]:
    """Yield every statement in ``stmts``, including nested ones, in order."""
    for stmt in stmts:
        yield stmt
        match stmt:
            case IRIf(then_body=then_b, else_body=else_b):
                yield from iter_stmts(then_b)
                yield from iter_stmts(else_b)
            case IRFor(init=init, update=update, body=body):
                if init:
                    yield from iter_stmts([init])
                if update:
                    yield from iter_stmts([update])
                yield from iter_stmts(body)
            case IRWhile(body=body) | IRBlock(body=body):
                yield from iter_stmts(body)
            case IRConditional(branches=branches):
                for branch in branches:
                    yield from iter_stmts(branch.body)


def stmt_exprs(stmt: IRStmt) -> list[IRExpr]:
    """Expressions owned directly by a statement (not by nested statements)."""
    match stmt:
        case IRDeclare(init=init):
            return [init] if init else []
        case IRAssign(target=target, value=value):
            return [target, value]
        case IRAugmentedAssign(target=target, value=value):
            return [target, value]
        case IRReturn(value=value):
            return [value] if value else []
        case IRIf(condition=cond) | IRWhile(condition=cond):
            return [cond]
        case IRFor(condition=cond):
            return [cond] if cond else []
        case IRExprStmt(expr=expr):
            return [expr]
        case IREntryReturn(values=values):
            return list(values)
    return []


def iter_exprs(expr: IRExpr) -> Iterator[IRExpr]:
    """Yield ``expr`` and all of its sub-expressions, depth first."""
    yield expr
    match expr:
        case IRCall(args=args) | IRConstruct(args=args):
            for arg in args:
                yield from iter_exprs(arg)
        case IRBinOp(left=left, right=right):
            yield from iter_exprs(left)
            yield from iter_exprs(right)
        case IRUnaryOp(operand=operand):
            yield from iter_exprs(operand)
        case IRFieldAccess(base=base):
            yield from iter_exprs(base)
        case IRSubscript(base=base, index=index):
            yield from iter_exprs(base)
            yield from iter_exprs(index)
        case IRTernary(condition=cond, true_expr=t, false_expr=f):
            yield from iter_exprs(cond)
            yield from iter_exprs(t)
            yield from iter_exprs(f)


def iter_body_exprs(stmts: list[IRStmt]) -> Iterator[IRExpr]:
    """Yield every expression in a body, including nested sub-expressions."""
    for stmt in iter_stmts(stmts):
        for expr in stmt_exprs(stmt):
            yield from iter_exprs(expr)


def contains_call(expr: IRExpr, names: set[str] | str) -> bool:
    """True if ``expr`` calls any function in ``names``."""
    if isinstance(names, str):
        names = {names}
    return any(isinstance(e, IRCall) and e.func in names for e in iter_exprs(expr))


def find_called_functions(
    func: IRFunction | IREntryPoint, all_func_names: set[str]
) -> set[str]:
    """Find all user-defined functions called by this function.

    Args:
        func: The function to analyze.
        all_func_names: Set of all user-defined function names.

    Returns:
        Set of function names called by the given function.
    """
    return {
        e.func
        for e in iter_body_exprs(func.body)
        if isinstance(e, IRCall) and e.func in all_func_names
    }


def referenced_names(func: IRFunction | IREntryPoint) -> set[str]:
    """Find every plain name referenced in a function body."""
    return {e.name for e in iter_body_exprs(func.body) if isinstance(e, IRName)}


def reachable_functions(
    entry: IREntryPoint, functions: list[IRFunction]
) -> list[IRFunction]:
    """Helpers reachable from ``entry`` through calls, in declaration order."""
    func_map = {f.name: f for f in functions}
    names = set(func_map)
    reached: set[str] = set()
    pending = list(find_called_functions(entry, names))
    while pending:
        name = pending.pop()
        if name in reached:
            continue
        reached.add(name)
        pending.extend(find_called_functions(func_map[name], names) - reached)
    return [f for f in functions if f.name in reached]


def transitive_names(
    functions: list[IRFunction],
) -> dict[str, set[str]]:
    """Names referenced by each helper, including those of its callees."""
    all_names = {f.name for f in functions}
    direct = {f.name: referenced_names(f) for f in functions}
    calls = {f.name: find_called_functions(f, all_names) for f in functions}

    result: dict[str, set[str]] = {}
    for func in functions:
        reached = {func.name}
        pending = list(calls[func.name])
        while pending:
            name = pending.pop()
            if name not in reached:
                reached.add(name)
                pending.extend(calls[name])
        result[func.name] = set().union(*(direct[name] for name in reached))
    return result


def topological_sort(functions: list[IRFunction]) -> list[IRFunction]:
    """Sort functions so that callees come before callers.

    This ensures that helper functions are defined before the functions
    that call them, which every target language requires.

    Args:
        functions: List of IR functions to sort.

    Returns:
        Sorted list with callees before callers; ties keep declaration order.
    """
    func_map = {f.name: f for f in functions}
    func_names = set(func_map.keys())

    # Build dependency graph: func -> set of functions it calls
    dependencies: dict[str, set[str]] = defaultdict(set)
    for func in functions:
        dependencies[func.name] = find_called_functions(func, func_names) - {func.name}

    result: list[IRFunction] = []
    visited: set[str] = set()

    def visit(name: str, stack: set[str]) -> None:
        if name in visited or name in stack:
            return
        stack.add(name)
        # Visit callees in declaration order for deterministic output
        for other in functions:
            if other.name in dependencies[name]:
                visit(other.name, stack)
        stack.discard(name)
        visited.add(name)
        result.append(func_map[name])

    for func in functions:
        visit(func.name, set())

    return result


def replace_calls(expr: IRExpr, name: str, replacement: IRExpr) -> IRExpr:
    """Return ``expr`` with every call to ``name`` replaced by ``replacement``."""

    def visit(e: IRExpr) -> IRExpr:
        match e:
            case IRCall(func=func) if func == name:
                return replacement
            case IRCall(args=args) | IRConstruct(args=args):
                return replace(e, args=[visit(a) for a in args])
            case IRBinOp(left=left, right=right):
                return replace(e, left=visit(left), right=visit(right))
            case IRUnaryOp(operand=operand):
                return replace(e, operand=visit(operand))
            case IRFieldAccess(base=base):
                return replace(e, base=visit(base))
            case IRSubscript(base=base, index=index):
                return replace(e, base=visit(base), index=visit(index))
            case IRTernary(condition=cond, true_expr=t, false_expr=f):
                return replace(
                    e, condition=visit(cond), true_expr=visit(t), false_expr=visit(f)
                )
        return e

    return visit(expr)


def map_stmt_exprs(stmt: IRStmt, fn: Callable[[IRExpr], IRExpr]) -> IRStmt:
    """Apply ``fn`` to the expressions a simple statement owns directly."""
    match stmt:
        case IRDeclare(init=init) if init is not None:
            return replace(stmt, init=fn(init))
        case IRAssign(target=target, value=value) | IRAugmentedAssign(
            target=target, value=value
        ):
            return replace(stmt, target=fn(target), value=fn(value))
        case IRReturn(value=value) if value is not None:
            return replace(stmt, value=fn(value))
        case IRExprStmt(expr=expr):
            return replace(stmt, expr=fn(expr))
        case IREntryReturn(values=values):
            return replace(stmt, values=[fn(v) for v in values])
    return stmt
