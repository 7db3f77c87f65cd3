"""Evaluation of conditional blocks (#if/#ifdef/#elif/#else).

Conditional blocks stay in the IR and are resolved for each (platform,
variant) pair when a shader is specialised. Conditions use the C
preprocessor subset: ``defined(X)``, ``!``, ``&&``, ``||``, comparisons,
integers and identifiers (undefined identifiers evaluate to 0).
"""

from dataclasses import replace

from fslc.compiler.constants import (
    FEATURE_PLATFORMS,
    LANGUAGE_MACROS,
    PLATFORM_LANGUAGE,
    STAGE_MACROS,
)
from fslc.compiler.errors import DialectSyntaxError, SemanticError
from fslc.compiler.ir import (
    IRBinary,
    IRBlock,
    IRConditional,
    IRDefine,
    IREntryPoint,
    IRFor,
    IRFunction,
    IRGroupShared,
    IRIf,
    IRStmt,
    IRStruct,
    IRWhile,
    Module,
    ShaderIR,
)
from fslc.compiler.models import Feature, Platform, Stage
from fslc.compiler.tokenizer import Token, TokenKind, tokenize


def platform_features(platform: Platform, features: Feature) -> list[Feature]:
    """Features from ``features`` whose macros are defined on ``platform``."""
    enabled = []
    for feature in Feature:
        if not feature.value or feature not in features:
            continue
        allowed = FEATURE_PLATFORMS.get(feature)
        if allowed is None or platform in allowed:
            enabled.append(feature)
    return enabled


def define_value(value: str) -> int:
    """Integer value of a #define for conditions; non-numeric defines are 1."""
    try:
        return int(value.strip().rstrip("uU"), 0)
    except ValueError:
        return 1


def condition_symbols(
    platform: Platform,
    stage: Stage,
    features: Feature,
    defines: dict[str, str] | None = None,
) -> dict[str, int]:
    """Build the symbol table used to evaluate conditions for one variant.

    Args:
        platform: Target platform
        stage: Shader stage of the binary being generated
        features: Feature flag set of the variant
        defines: Object-like #defines visible in the module

    Returns:
        Mapping of defined macro names to integer values
    """
    symbols = {name: define_value(value) for name, value in (defines or {}).items()}
    symbols[LANGUAGE_MACROS[PLATFORM_LANGUAGE[platform]]] = 1
    symbols[f"TARGET_{platform.name}"] = 1
    symbols[STAGE_MACROS[stage]] = 1
    for feature in platform_features(platform, features):
        symbols[f"FT_{feature.name}"] = 1
    return symbols


class _ConditionParser:
    def __init__(self, tokens: list[Token], symbols: dict[str, int], text: str):
        self.tokens = tokens
        self.pos = 0
        self.symbols = symbols
        self.text = text

    def error(self, message: str) -> DialectSyntaxError:
        token = self.tokens[min(self.pos, len(self.tokens) - 1)]
        return DialectSyntaxError(
            f"{message} in condition '{self.text}'", file=token.file, line=token.line
        )

    def peek(self) -> Token:
        return self.tokens[self.pos]

    def take(self) -> Token:
        token = self.tokens[self.pos]
        if token.kind != TokenKind.EOF:
            self.pos += 1
        return token

    def accept(self, op: str) -> bool:
        if self.peek().is_op(op):
            self.pos += 1
            return True
        return False

    def parse(self) -> int:
        value = self.or_expr()
        if self.peek().kind != TokenKind.EOF:
            raise self.error(f"unexpected token '{self.peek().value}'")
        return value

    def or_expr(self) -> int:
        value = self.and_expr()
        while self.accept("||"):
            rhs = self.and_expr()
            value = int(bool(value) or bool(rhs))
        return value

    def and_expr(self) -> int:
        value = self.eq_expr()
        while self.accept("&&"):
            rhs = self.eq_expr()
            value = int(bool(value) and bool(rhs))
        return value

    def eq_expr(self) -> int:
        value = self.rel_expr()
        while True:
            if self.accept("=="):
                value = int(value == self.rel_expr())
            elif self.accept("!="):
                value = int(value != self.rel_expr())
            else:
                return value

    def rel_expr(self) -> int:
        value = self.unary()
        while True:
            if self.accept("<"):
                value = int(value < self.unary())
            elif self.accept(">"):
                value = int(value > self.unary())
            elif self.accept("<="):
                value = int(value <= self.unary())
            elif self.accept(">="):
                value = int(value >= self.unary())
            else:
                return value

    def unary(self) -> int:
        if self.accept("!"):
            return int(not self.unary())
        return self.primary()

    def primary(self) -> int:
        token = self.take()
        if token.kind == TokenKind.NUMBER:
            try:
                return int(token.value.rstrip("uU"), 0)
            except ValueError:
                raise self.error(f"invalid integer '{token.value}'") from None
        if token.is_ident("defined"):
            parens = self.accept("(")
            name = self.take()
            if name.kind != TokenKind.IDENT:
                raise self.error("defined() expects an identifier")
            if parens and not self.accept(")"):
                raise self.error("missing ')' after defined(")
            return int(name.value in self.symbols)
        if token.kind == TokenKind.IDENT:
            return self.symbols.get(token.value, 0)
        if token.is_op("("):
            value = self.or_expr()
            if not self.accept(")"):
                raise self.error("missing ')'")
            return value
        raise self.error(f"unexpected token '{token.value or 'end of condition'}'")


def evaluate_condition(
    text: str,
    symbols: dict[str, int],
    file: str | None = None,
    line: int = 0,
) -> bool:
    """Evaluate a preprocessor condition against a symbol table.

    Args:
        text: Condition text (without the directive keyword)
        symbols: Defined macros and their values
        file: Source file for error reporting
        line: Source line for error reporting

    Returns:
        True if the condition holds

    Raises:
        DialectSyntaxError: If the condition is malformed
    """
    tokens = [
        Token(t.kind, t.value, line or t.line, file or t.file)
        for t in tokenize(text, file or "<condition>")
    ]
    if len(tokens) == 1:
        raise DialectSyntaxError("empty condition", file=file, line=line)
    return bool(_ConditionParser(tokens, symbols, text).parse())


def select_branch(conditional: IRConditional, symbols: dict[str, int]) -> list:
    """Return the body of the first branch whose condition holds."""
    for branch in conditional.branches:
        if branch.condition is None:
            return branch.body
        if evaluate_condition(branch.condition, symbols, conditional.file, branch.line):
            return branch.body
    return []


def _specialize_stmts(stmts: list[IRStmt], symbols: dict[str, int]) -> list[IRStmt]:
    result: list[IRStmt] = []
    for stmt in stmts:
        match stmt:
            case IRConditional():
                chosen = select_branch(stmt, symbols)
                result.extend(_specialize_stmts(chosen, symbols))
            case IRIf(then_body=then_b, else_body=else_b):
                result.append(
                    replace(
                        stmt,
                        then_body=_specialize_stmts(then_b, symbols),
                        else_body=_specialize_stmts(else_b, symbols),
                    )
                )
            case IRFor(body=body) | IRWhile(body=body) | IRBlock(body=body):
                result.append(replace(stmt, body=_specialize_stmts(body, symbols)))
            case _:
                result.append(stmt)
    return result


def _specialize_fields(fields: list, symbols: dict[str, int]) -> list:
    result = []
    for item in fields:
        if isinstance(item, IRConditional):
            result.extend(_specialize_fields(select_branch(item, symbols), symbols))
        else:
            result.append(item)
    return result


def specialize(
    module: Module, binary: IRBinary, platform: Platform, features: Feature
) -> ShaderIR:
    """Resolve every conditional block for one (platform, variant) pair.

    Module-level items come first, then the items of the binary block. A
    ``#define`` becomes visible to the conditions that follow it.

    Args:
        module: Parsed module
        binary: Binary declaration being generated
        platform: Target platform
        features: Feature flag set of the variant

    Returns:
        Shader IR free of conditional blocks

    Raises:
        DialectSyntaxError: If a condition is malformed
        SemanticError: If the binary does not declare exactly one entry point
    """
    symbols = condition_symbols(platform, binary.stage, features)
    structs: list[IRStruct] = []
    functions: list[IRFunction] = []
    groupshared: list[IRGroupShared] = []
    defines: list[IRDefine] = []
    entries: list[IREntryPoint] = []

    def visit(items: list) -> None:
        for item in items:
            match item:
                case IRConditional():
                    visit(select_branch(item, symbols))
                case IRDefine():
                    defines.append(item)
                    symbols[item.name] = define_value(item.value)
                case IRStruct():
                    structs.append(
                        replace(item, fields=_specialize_fields(item.fields, symbols))
                    )
                case IRFunction():
                    functions.append(
                        replace(item, body=_specialize_stmts(item.body, symbols))
                    )
                case IREntryPoint():
                    entries.append(
                        replace(item, body=_specialize_stmts(item.body, symbols))
                    )
                case IRGroupShared():
                    groupshared.append(item)

    visit(module.items)
    visit(binary.items)

    if not entries:
        raise SemanticError(
            f"binary '{binary.output_name}' declares no entry point",
            binary.file,
            binary.line,
        )
    if len(entries) > 1:
        names = ", ".join(e.name for e in entries)
        raise SemanticError(
            f"binary '{binary.output_name}' declares more than one entry point ({names})",
            binary.file,
            binary.line,
        )

    return ShaderIR(
        stage=binary.stage,
        entry=entries[0],
        structs=structs,
        functions=functions,
        groupshared=groupshared,
        defines=defines,
        output_name=binary.output_name,
        features=features,
    )
