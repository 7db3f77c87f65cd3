"""Code emitter that generates target code from specialised IR."""

from loguru import logger

from fslc.compiler.constants import (
    ATOMIC_OPERATIONS,
    BARRIER_INTRINSICS,
    LOAD_INTRINSICS,
    LOAD_RW_INTRINSICS,
    MATRIX_CONSTRUCTORS,
    MATRIX_TYPES,
    NONUNIFORM_INTRINSIC,
    OPERATOR_PRECEDENCE,
    SAMPLE_INTRINSICS,
    SAMPLE_LEVEL_INTRINSICS,
    WRITE_INTRINSICS,
)
from fslc.compiler.errors import SemanticError, ShaderError, UnsupportedOperationError
from fslc.compiler.ir import (
    IRAssign,
    IRAugmentedAssign,
    IRBinOp,
    IRBlock,
    IRBreak,
    IRCall,
    IRConstruct,
    IRContinue,
    IRDeclare,
    IRDiscard,
    IREntryPoint,
    IREntryReturn,
    IRExpr,
    IRExprStmt,
    IRFieldAccess,
    IRFor,
    IRFunction,
    IRIf,
    IRInitMain,
    IRLiteral,
    IRName,
    IRReturn,
    IRStmt,
    IRSubscript,
    IRTernary,
    IRUnaryOp,
    IRWhile,
    ShaderIR,
)
from fslc.compiler.ir_analysis import (
    contains_call,
    iter_exprs,
    iter_stmts,
    map_stmt_exprs,
    replace_calls,
    stmt_exprs,
)
from fslc.compiler.lowering import EntryConvention
from fslc.compiler.models import ResolvedResource, Stage
from fslc.compiler.target.base import GeneratedShader, Target, io_struct_roles

STATEMENT_INTRINSICS = set(ATOMIC_OPERATIONS) | WRITE_INTRINSICS | BARRIER_INTRINSICS
TEXTURE_INTRINSICS = (
    SAMPLE_INTRINSICS | SAMPLE_LEVEL_INTRINSICS | LOAD_INTRINSICS | LOAD_RW_INTRINSICS
)
MATRIX_INTRINSICS = set(MATRIX_CONSTRUCTORS) | {"getCol", "getRow", "mul"}

SCAN_INDEX = "_nu_index"
SCAN_CANDIDATE = "_nu_i"
SCAN_VALUE = "_nu_value"


def _get_precedence(expr: IRExpr) -> int:
    """Get the precedence of an expression for parenthesization."""
    match expr:
        case IRBinOp(op=op):
            return OPERATOR_PRECEDENCE.get(op, 0)
        case IRUnaryOp():
            return OPERATOR_PRECEDENCE["unary"]
        case IRTernary():
            return OPERATOR_PRECEDENCE["?"]
        case IRCall() | IRConstruct():
            return OPERATOR_PRECEDENCE["call"]
        case IRFieldAccess() | IRSubscript():
            return OPERATOR_PRECEDENCE["member"]
        case _:
            # Literals, names - highest precedence (no parens needed)
            return 100


def _root_name(expr: IRExpr) -> str | None:
    """Name at the root of an access chain (``a`` for ``a[i].b``)."""
    match expr:
        case IRName(name=name):
            return name
        case IRSubscript(base=base) | IRFieldAccess(base=base):
            return _root_name(base)
    return None


def _local_names(params: list, body: list[IRStmt]) -> set[str]:
    names = {p.name for p in params}
    names.update(s.var.name for s in iter_stmts(body) if isinstance(s, IRDeclare))
    return names


class Emitter:
    """Generates target code from IR using a Target."""

    def __init__(self, target: Target):
        self.target = target
        self.shader: ShaderIR | None = None
        self.convention: EntryConvention | None = None
        self.locals: set[str] = set()
        self.file: str | None = None
        self.return_type = None

    def emit(self, shader: ShaderIR, convention: EntryConvention) -> str:
        """Generate complete shader code.

        Bodies are emitted before the header so the target knows which
        extensions and capabilities the code requires.
        """
        target = self.target
        target.begin(shader, convention)
        self.shader = shader
        self.convention = convention

        helpers = [self._emit_function(func) for func in convention.helpers]
        entry = self._emit_entry(convention.entry)
        wrapper = target.entry_point_wrapper()

        lines = target.header_lines()
        lines.append("")

        defines = target.define_lines(shader.defines)
        if defines:
            lines.extend(defines)
            lines.append("")

        roles = io_struct_roles(convention)
        for struct in shader.structs:
            lines.extend(target.struct_lines(struct, roles.get(struct.name)))
            lines.append("")

        resources = target.resource_lines()
        if resources:
            lines.extend(resources)
            lines.append("")

        if shader.stage == Stage.COMPUTE and target.groupshared_qualifier:
            groupshared = target.groupshared_lines(shader.groupshared)
            if groupshared:
                lines.extend(groupshared)
                lines.append("")

        for block in helpers:
            lines.extend(block)
            lines.append("")

        lines.extend(entry)
        if wrapper:
            lines.append("")
            lines.extend(wrapper)

        return "\n".join(lines) + "\n"

    def generate(self, shader: ShaderIR, convention: EntryConvention) -> GeneratedShader:
        """Emit the shader and wrap it with its metadata."""
        source = self.emit(shader, convention)
        logger.debug(
            f"Generated {len(source)} bytes of {self.target.language.name} for "
            f"'{shader.output_name}' ({self.target.platform.name})"
        )
        return GeneratedShader(
            platform=self.target.platform,
            stage=shader.stage,
            source=source,
            entry_name=self.target.entry_name,
            metadata=self.target.metadata(),
        )

    # --- Functions ---

    def _enter(self, func: IRFunction | IREntryPoint) -> None:
        self.file = func.file
        self.return_type = func.return_type
        self.locals = _local_names(func.params, func.body)

    def _emit_function(self, func: IRFunction) -> list[str]:
        self._enter(func)
        convention = self.convention
        if not self.target.groupshared_qualifier:
            shared = convention.helper_names[func.name] & {
                g.name for g in self.shader.groupshared
            }
            if shared:
                raise UnsupportedOperationError(
                    f"helper '{func.name}' uses group-shared '{sorted(shared)[0]}', "
                    f"which {self.target.platform.name} only allows inside the kernel",
                    func.file,
                    func.line,
                )

        return_type = (
            self.target.type_name(func.return_type) if func.return_type else "void"
        )
        params = [
            self.target.param_decl(param, param_convention)
            for param, param_convention in zip(
                func.params, convention.helper_conventions[func.name]
            )
        ]
        params += self.target.helper_extra_params(convention.helper_resources[func.name])
        lines = [f"{return_type} {func.name}({', '.join(params)}) {{"]
        for stmt in func.body:
            lines.extend(self._emit_stmt(stmt, indent=1))
        lines.append("}")
        return lines

    def _emit_entry(self, entry: IREntryPoint) -> list[str]:
        self._enter(entry)
        lines = self.target.entry_signature()
        for stmt in entry.body:
            lines.extend(self._emit_stmt(stmt, indent=1))
        lines.append("}")
        return lines

    # --- Statements ---

    def _emit_stmt(self, stmt: IRStmt, indent: int = 0) -> list[str]:
        try:
            if self.target.nonuniform_tier == "scan" and self._uses_nonuniform(stmt):
                return self._emit_scan(stmt, indent)
            return self._emit_stmt_inner(stmt, indent)
        except ShaderError as e:
            if e.file is None:
                raise e.with_location(self.file, stmt.line or None) from e
            raise

    def _emit_lines(self, lines: list[str], indent: int) -> list[str]:
        prefix = "    " * indent
        return [f"{prefix}{line}" for line in lines]

    def _emit_body(self, body: list[IRStmt], indent: int) -> list[str]:
        lines: list[str] = []
        for s in body:
            lines.extend(self._emit_stmt(s, indent))
        return lines

    def _emit_stmt_inner(self, stmt: IRStmt, indent: int) -> list[str]:
        prefix = "    " * indent

        match stmt:
            case IRDeclare(var=var, init=init):
                decl = self.target.declarator(var.type, var.name)
                if var.const:
                    decl = f"const {decl}"
                if init is not None:
                    return [f"{prefix}{decl} = {self._emit_initializer(init)};"]
                return [f"{prefix}{decl};"]

            case IRAssign(target=target, value=value):
                target_str = self._emit_expr(target)
                value_str = self._emit_initializer(value)
                return [f"{prefix}{target_str} = {value_str};"]

            case IRAugmentedAssign(target=target, op=op, value=value):
                target_str = self._emit_expr(target)
                value_str = self._emit_expr(value)
                return [f"{prefix}{target_str} {op}= {value_str};"]

            case IRReturn(value=value):
                if value is not None:
                    return [f"{prefix}return {self._emit_expr(value)};"]
                return [f"{prefix}return;"]

            case IRIf(condition=condition, then_body=then_body, else_body=else_body):
                lines = [f"{prefix}if ({self._emit_expr(condition)}) {{"]
                lines.extend(self._emit_body(then_body, indent + 1))
                if else_body:
                    lines.append(f"{prefix}}} else {{")
                    lines.extend(self._emit_body(else_body, indent + 1))
                lines.append(f"{prefix}}}")
                return lines

            case IRFor(init=init, condition=condition, update=update, body=body):
                init_str = self._emit_for_init(init) if init else ""
                cond_str = self._emit_expr(condition) if condition else ""
                update_str = self._emit_for_update(update) if update else ""
                lines = [f"{prefix}for ({init_str}; {cond_str}; {update_str}) {{"]
                lines.extend(self._emit_body(body, indent + 1))
                lines.append(f"{prefix}}}")
                return lines

            case IRWhile(condition=condition, body=body):
                lines = [f"{prefix}while ({self._emit_expr(condition)}) {{"]
                lines.extend(self._emit_body(body, indent + 1))
                lines.append(f"{prefix}}}")
                return lines

            case IRBlock(body=body):
                return [f"{prefix}{{", *self._emit_body(body, indent + 1), f"{prefix}}}"]

            case IRExprStmt(expr=IRCall(func=func, args=args)) if (
                func in STATEMENT_INTRINSICS
            ):
                return self._emit_lines(self._emit_statement_call(func, args), indent)

            case IRExprStmt(expr=expr):
                return [f"{prefix}{self._emit_expr(expr)};"]

            case IRBreak():
                return [f"{prefix}break;"]

            case IRContinue():
                return [f"{prefix}continue;"]

            case IRDiscard():
                return [f"{prefix}{self.target.discard()}"]

            case IRInitMain():
                return self._emit_lines(self.target.init_main(), indent)

            case IREntryReturn(values=values):
                value = self._emit_expr(values[0]) if values else None
                return self._emit_lines(self.target.entry_return(value), indent)

        return []

    def _emit_statement_call(self, func: str, args: list[IRExpr]) -> list[str]:
        if func in ATOMIC_OPERATIONS:
            low, high = ATOMIC_OPERATIONS[func]
            if not low <= len(args) <= high:
                expected = str(low) if low == high else f"{low} to {high}"
                raise SemanticError(f"{func} expects {expected} arguments, got {len(args)}")
        for arg in args:
            if any(
                isinstance(e, IRCall) and e.func in STATEMENT_INTRINSICS
                for e in iter_exprs(arg)
            ):
                raise UnsupportedOperationError(
                    f"'{func}' cannot take another atomic or write as an argument"
                )
        args_str = [self._emit_expr(a) for a in args]
        dest_root = _root_name(args[0]) if args else None
        return self.target.statement_call(func, args_str, dest_root)

    def _emit_for_init(self, stmt: IRStmt) -> str:
        match stmt:
            case IRDeclare(var=var, init=init):
                decl = self.target.declarator(var.type, var.name)
                if init is not None:
                    return f"{decl} = {self._emit_expr(init)}"
                return decl
            case IRAssign(target=target, value=value):
                return f"{self._emit_expr(target)} = {self._emit_expr(value)}"
        return ""

    def _emit_for_update(self, stmt: IRStmt) -> str:
        match stmt:
            case IRAssign(target=target, value=value):
                return f"{self._emit_expr(target)} = {self._emit_expr(value)}"
            case IRAugmentedAssign(target=target, op=op, value=value):
                return f"{self._emit_expr(target)} {op}= {self._emit_expr(value)}"
            case IRExprStmt(expr=expr):
                return self._emit_expr(expr)
        return ""

    # --- Non-uniform index scan ---

    def _uses_nonuniform(self, stmt: IRStmt) -> bool:
        exprs = stmt_exprs(stmt)
        if isinstance(stmt, IRFor):
            for part in (stmt.init, stmt.update):
                if part is not None:
                    exprs.extend(stmt_exprs(part))
        return any(contains_call(e, NONUNIFORM_INTRINSIC) for e in exprs)

    def _scan_length(self, exprs: list[IRExpr]) -> int:
        lengths = []
        for expr in exprs:
            for e in iter_exprs(expr):
                if not isinstance(e, IRSubscript):
                    continue
                if not contains_call(e.index, NONUNIFORM_INTRINSIC):
                    continue
                resource = self._resource_of(e.base)
                if resource is not None and resource.declaration.is_array:
                    lengths.append(resource.count)
        if not lengths:
            raise UnsupportedOperationError(
                f"{NONUNIFORM_INTRINSIC} must index a resource array"
            )
        return max(lengths)

    def _emit_scan(self, stmt: IRStmt, indent: int) -> list[str]:
        """Lower a divergent resource index into a uniform candidate loop.

        The statement runs once per candidate index, masked so that only the
        candidate equal to the real index executes it.
        """
        if isinstance(stmt, IRIf | IRWhile | IRFor):
            raise UnsupportedOperationError(
                f"{NONUNIFORM_INTRINSIC} in a branch or loop header cannot be "
                f"lowered on {self.target.platform.name}"
            )
        exprs = stmt_exprs(stmt)
        calls = [
            e
            for expr in exprs
            for e in iter_exprs(expr)
            if isinstance(e, IRCall) and e.func == NONUNIFORM_INTRINSIC
        ]
        indices = {self._emit_expr(call.args[0]) for call in calls if call.args}
        if len(indices) != 1:
            raise UnsupportedOperationError(
                f"a statement may use a single {NONUNIFORM_INTRINSIC} index on "
                f"{self.target.platform.name}"
            )
        index = indices.pop()
        length = self._scan_length(exprs)
        self.target.uses_nonuniform = True

        candidate = IRName(SCAN_CANDIDATE)
        body = map_stmt_exprs(
            stmt, lambda e: replace_calls(e, NONUNIFORM_INTRINSIC, candidate)
        )
        hoisted: list[str] = []
        after: list[str] = []
        match body:
            case IRDeclare(var=var, init=init):
                hoisted.append(f"{self.target.declarator(var.type, var.name)};")
                body = IRAssign(IRName(var.name), init, line=stmt.line)
            case IRReturn(value=value) if value is not None:
                hoisted.append(f"{self.target.declarator(self.return_type, SCAN_VALUE)};")
                body = IRAssign(IRName(SCAN_VALUE), value, line=stmt.line)
                after.append(f"return {SCAN_VALUE};")
            case IREntryReturn(values=[value]):
                hoisted.append(f"{self.target.declarator(self.return_type, SCAN_VALUE)};")
                body = IRAssign(IRName(SCAN_VALUE), value, line=stmt.line)
                after.extend(self.target.entry_return(SCAN_VALUE))

        lines = self._emit_lines(hoisted, indent)
        lines += self._emit_lines(
            [
                "{",
                f"    uint {SCAN_INDEX} = uint({index});",
                f"    for (uint {SCAN_CANDIDATE} = 0u; {SCAN_CANDIDATE} < {length}u; "
                f"++{SCAN_CANDIDATE}) {{",
                f"        if ({SCAN_CANDIDATE} == {SCAN_INDEX}) {{",
            ],
            indent,
        )
        lines += self._emit_stmt_inner(body, indent + 3)
        lines += self._emit_lines(["        }", "    }", "}"], indent)
        lines += self._emit_lines(after, indent)
        return lines

    # --- Expressions ---

    def _resource_of(self, expr: IRExpr) -> ResolvedResource | None:
        name = _root_name(expr)
        if name is None or name in self.locals:
            return None
        return self.target.resources.get(name)

    def _emit_initializer(self, expr: IRExpr) -> str:
        if isinstance(expr, IRConstruct) and expr.type.array_size is not None:
            args = [self._emit_expr(a) for a in expr.args]
            return self.target.array_initializer(expr.type, args)
        return self._emit_expr(expr)

    def _emit_expr(self, expr: IRExpr, parent_precedence: int = 0) -> str:
        """Emit an expression, adding parentheses only when necessary.

        Args:
            expr: The IR expression to emit
            parent_precedence: Precedence of parent operator (0 = top-level/statement)
        """
        result = self._emit_expr_inner(expr)
        expr_prec = _get_precedence(expr)
        if parent_precedence > 0 and expr_prec < parent_precedence:
            return f"({result})"
        return result

    def _emit_expr_inner(self, expr: IRExpr) -> str:
        """Emit expression without outer parentheses."""
        match expr:
            case IRLiteral(value=value, kind=kind):
                return self.target.literal(value, kind)

            case IRName(name=name):
                resource = self._resource_of(expr)
                if resource is not None:
                    return self.target.resource_reference(resource)
                return name

            case IRBinOp(op=op, left=left, right=right):
                my_prec = OPERATOR_PRECEDENCE.get(op, 0)
                left_str = self._emit_expr(left, my_prec)
                # Right side: force parens on a right child of equal precedence
                right_str = self._emit_expr(right, my_prec + 1)
                return f"{left_str} {op} {right_str}"

            case IRUnaryOp(op=op, operand=operand, postfix=postfix):
                operand_str = self._emit_expr(operand, OPERATOR_PRECEDENCE["unary"])
                if postfix:
                    return f"{operand_str}{op}"
                if operand_str[:1] in ("-", "+") and op in ("-", "+"):
                    return f"{op}({operand_str})"
                return f"{op}{operand_str}"

            case IRCall(func=func, args=args):
                return self._emit_call(func, args)

            case IRConstruct(type=ir_type, args=args):
                args_str = [self._emit_expr(a) for a in args]
                if ir_type.array_size is not None:
                    return self.target.array_initializer(ir_type, args_str)
                if ir_type.base in MATRIX_TYPES:
                    n = MATRIX_TYPES[ir_type.base]
                    raise UnsupportedOperationError(
                        f"raw matrix constructor '{ir_type.base}(...)' is not portable; "
                        f"use make_f{n}x{n}_cols or make_f{n}x{n}_rows"
                    )
                return f"{self.target.type_name(ir_type)}({', '.join(args_str)})"

            case IRFieldAccess(base=base, field=field):
                base_str = self._emit_expr(base, OPERATOR_PRECEDENCE["member"])
                return f"{base_str}.{field}"

            case IRSubscript(base=base, index=index):
                base_str = self._emit_expr(base, OPERATOR_PRECEDENCE["member"])
                return f"{base_str}[{self._emit_expr(index)}]"

            case IRTernary(condition=cond, true_expr=true_e, false_expr=false_e):
                cond_str = self._emit_expr(cond, OPERATOR_PRECEDENCE["?"] + 1)
                true_str = self._emit_expr(true_e)
                false_str = self._emit_expr(false_e)
                return f"{cond_str} ? {true_str} : {false_str}"

        return ""

    def _emit_call(self, func: str, args: list[IRExpr]) -> str:
        target = self.target
        if func in STATEMENT_INTRINSICS:
            raise UnsupportedOperationError(
                f"'{func}' must be used as a statement, not inside an expression"
            )
        if func == NONUNIFORM_INTRINSIC:
            if target.nonuniform_tier == "scan":
                raise UnsupportedOperationError(
                    f"{NONUNIFORM_INTRINSIC} cannot be lowered here on "
                    f"{target.platform.name}"
                )
            target.uses_nonuniform = True
            return target.nonuniform_index(self._emit_expr(args[0]))

        args_str = [self._emit_expr(a) for a in args]
        if func in self.convention.helper_resources:
            args_str += target.helper_extra_args(self.convention.helper_resources[func])
            return f"{func}({', '.join(args_str)})"
        if func in TEXTURE_INTRINSICS:
            resource = self._resource_of(args[0]) if args else None
            return target.texture_intrinsic(func, args_str, resource)
        if func in MATRIX_INTRINSICS:
            return target.matrix_intrinsic(func, args_str)
        special = target.intrinsic(func, args_str)
        if special is not None:
            return special
        name = target.builtin_function(func) or func
        return f"{name}({', '.join(args_str)})"
