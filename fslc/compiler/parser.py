"""Parser for the portable shader dialect.

Turns dialect source into a ``Module``: structs, resource tables and shared
set fragments, helper functions, entry points and binary-output blocks.
Conditional blocks are kept in the IR and evaluated later, once per
(platform, variant).
"""

import re
from pathlib import Path

from loguru import logger

from fslc.compiler.constants import (
    ASSIGNMENT_OPERATORS,
    BUILTIN_TYPES,
    ENTRY_NAMES,
    OPERATOR_PRECEDENCE,
    RESOURCE_MARKERS,
    RW_TEXTURE_SHAPES,
    SAMPLER_TYPES,
    STAGE_DIRECTIVES,
    SYSTEM_VALUES,
    TEXTURE_SHAPES,
)
from fslc.compiler.errors import DialectSyntaxError
from fslc.compiler.ir import (
    IRAssign,
    IRAugmentedAssign,
    IRBinary,
    IRBinOp,
    IRBlock,
    IRBranch,
    IRBreak,
    IRCall,
    IRConditional,
    IRConstruct,
    IRContinue,
    IRDeclare,
    IRDefine,
    IRDiscard,
    IREntryPoint,
    IREntryReturn,
    IRExpr,
    IRExprStmt,
    IRFieldAccess,
    IRFor,
    IRFunction,
    IRGroupShared,
    IRIf,
    IRInitMain,
    IRLiteral,
    IRName,
    IRParameter,
    IRReturn,
    IRStmt,
    IRStruct,
    IRStructField,
    IRSubscript,
    IRTernary,
    IRType,
    IRUnaryOp,
    IRVariable,
    IRWhile,
    Module,
)
from fslc.compiler.models import (
    NO_FEATURES,
    BufferKind,
    ConstantBufferKind,
    Feature,
    ResourceDeclaration,
    ResourceKind,
    ResourceSet,
    SamplerKind,
    SetReference,
    ShaderResourceTable,
    TextureKind,
    parse_feature,
)
from fslc.compiler.tokenizer import Token, TokenKind, tokenize

# Markers whose argument list must sit on the marker's own line
SINGLE_LINE_MARKERS = {
    "STRUCT",
    "DATA",
    "BEGIN_SRT",
    "END_SRT",
    "BEGIN_SRT_SET",
    "END_SRT_SET",
    "USE_SRT_SET",
    "GROUPSHARED",
    "ROOT_SIGNATURE",
    "USE_SRT",
    "NUM_THREADS",
    "RETURN",
    *RESOURCE_MARKERS,
    *ENTRY_NAMES,
}

ENTRY_ATTRIBUTES = ("ROOT_SIGNATURE", "USE_SRT", "NUM_THREADS")
PARAM_QUALIFIERS = ("in", "out", "inout")
CONDITIONAL_DIRECTIVES = ("if", "ifdef", "ifndef", "elif", "else", "endif")

_BINARY_PRECEDENCE = {
    op: prec
    for op, prec in OPERATOR_PRECEDENCE.items()
    if op not in ("?", "unary", "call", "member")
}
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_]\w*$")
_OUTPUT_NAME_RE = re.compile(r"^[\w.\-]+$")


def _split_directive(value: str) -> tuple[str, str]:
    parts = value.split(None, 1)
    if not parts:
        return "", ""
    return parts[0], parts[1].strip() if len(parts) > 1 else ""


class _ConditionalStack:
    """Open #if blocks of one item or statement list."""

    def __init__(self, file: str):
        self.file = file
        self.frames: list[IRConditional] = []

    def current(self, base: list) -> list:
        if self.frames:
            return self.frames[-1].branches[-1].body
        return base

    def handle(self, keyword: str, rest: str, line: int, base: list) -> None:
        match keyword:
            case "if":
                self._open(self._require(rest, keyword, line), line, base)
            case "ifdef" | "ifndef":
                name = rest.strip()
                if not _IDENTIFIER_RE.match(name):
                    raise DialectSyntaxError(
                        f"#{keyword} expects a single identifier", self.file, line
                    )
                condition = f"defined({name})"
                if keyword == "ifndef":
                    condition = f"!{condition}"
                self._open(condition, line, base)
            case "elif":
                self._branch(self._require(rest, keyword, line), line, keyword)
            case "else":
                self._branch(None, line, keyword)
            case "endif":
                if not self.frames:
                    raise DialectSyntaxError("#endif without #if", self.file, line)
                self.frames.pop()

    def check_closed(self, line: int, where: str) -> None:
        if self.frames:
            raise DialectSyntaxError(
                f"unterminated conditional block {where}",
                self.file,
                self.frames[-1].line or line,
            )

    def _require(self, rest: str, keyword: str, line: int) -> str:
        if not rest:
            raise DialectSyntaxError(f"#{keyword} needs a condition", self.file, line)
        return rest

    def _open(self, condition: str, line: int, base: list) -> None:
        conditional = IRConditional(
            branches=[IRBranch(condition, [], line)], file=self.file, line=line
        )
        self.current(base).append(conditional)
        self.frames.append(conditional)

    def _branch(self, condition: str | None, line: int, keyword: str) -> None:
        if not self.frames:
            raise DialectSyntaxError(f"#{keyword} without #if", self.file, line)
        conditional = self.frames[-1]
        if conditional.branches[-1].condition is None:
            raise DialectSyntaxError(f"#{keyword} after #else", self.file, line)
        conditional.branches.append(IRBranch(condition, [], line))


class _Session:
    """State shared by the root file and everything it includes."""

    def __init__(self, root_file: str, include_dirs: list[Path]):
        self.module = Module(file=root_file)
        self.include_dirs = include_dirs
        self.features = NO_FEATURES
        self.binary: IRBinary | None = None
        self.defines: dict[str, str] = {}
        # Each file is included once per translation unit: the top level, and
        # each binary block on top of it
        self.top_included: set[str] = {root_file}
        self.binary_included: set[str] | None = None
        self._table_origins: dict[str, tuple[str | None, int | None]] = {}
        self._fragment_origins: dict[str, tuple[str | None, int | None]] = {}

    def included(self) -> set[str]:
        if self.binary_included is not None:
            return self.binary_included
        return self.top_included

    def items(self) -> list:
        if self.binary is not None:
            return self.binary.items
        return self.module.items

    def add_table(self, table: ShaderResourceTable) -> None:
        origin = (table.file, table.line)
        previous = self._table_origins.get(table.name)
        if previous is None:
            self._table_origins[table.name] = origin
            self.module.tables.append(table)
        elif previous != origin:
            logger.warning(
                f"Duplicate SRT definition '{table.name}' at {table.file}:{table.line}; "
                f"keeping the one from {previous[0]}:{previous[1]}"
            )

    def add_fragment(self, fragment: ResourceSet) -> None:
        origin = (fragment.file, fragment.line)
        previous = self._fragment_origins.get(fragment.name)
        if previous is None:
            self._fragment_origins[fragment.name] = origin
            self.module.fragments[fragment.name] = fragment
        elif previous != origin:
            logger.warning(
                f"Duplicate set fragment '{fragment.name}' at "
                f"{fragment.file}:{fragment.line}; keeping the one from "
                f"{previous[0]}:{previous[1]}"
            )

    def resolve_include(self, name: str, from_file: str, line: int) -> str:
        candidates = [Path(from_file).parent / name]
        candidates.extend(directory / name for directory in self.include_dirs)
        for candidate in candidates:
            if candidate.is_file():
                return str(candidate.resolve())
        raise DialectSyntaxError(f"cannot resolve include '{name}'", from_file, line)


class _Parser:
    """Recursive-descent parser over the token list of one file."""

    def __init__(self, session: _Session, tokens: list[Token], file: str):
        self.session = session
        self.tokens = tokens
        self.pos = 0
        self.file = file
        self.conditionals = _ConditionalStack(file)
        self.opened_binary = False

    # Token helpers

    def _peek(self, offset: int = 0) -> Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def _advance(self) -> Token:
        token = self.tokens[self.pos]
        if token.kind != TokenKind.EOF:
            self.pos += 1
        return token

    def _error(self, message: str, token: Token | None = None) -> DialectSyntaxError:
        token = token or self._peek()
        return DialectSyntaxError(message, self.file, token.line)

    def _accept_op(self, value: str) -> bool:
        if self._peek().is_op(value):
            self.pos += 1
            return True
        return False

    def _expect_op(self, value: str) -> Token:
        token = self._peek()
        if not token.is_op(value):
            found = token.value or "end of file"
            raise self._error(f"expected '{value}' but found '{found}'", token)
        return self._advance()

    def _expect_ident(self, value: str | None = None) -> Token:
        token = self._peek()
        if not token.is_ident(value):
            expected = f"'{value}'" if value else "identifier"
            found = token.value or "end of file"
            raise self._error(f"expected {expected} but found '{found}'", token)
        return self._advance()

    def _sub_parser(self, tokens: list[Token]) -> "_Parser":
        line = tokens[-1].line if tokens else self._peek().line
        eof = Token(TokenKind.EOF, "", line, self.file)
        return _Parser(self.session, [*tokens, eof], self.file)

    def _paren_args(self, head: Token, single_line: bool) -> list[list[Token]]:
        """Split the parenthesised argument list following ``head`` on commas."""
        opening = self._peek()
        if single_line and opening.line != head.line:
            raise self._marker_error(head)
        self._expect_op("(")

        args: list[list[Token]] = []
        current: list[Token] = []
        depth = 0
        while True:
            token = self._peek()
            if single_line and token.line != head.line:
                raise self._marker_error(head)
            if token.kind in (TokenKind.EOF, TokenKind.DIRECTIVE):
                raise self._error(f"unterminated argument list of '{head.value}'", head)
            self._advance()
            if token.is_op(")") and depth == 0:
                break
            if token.kind == TokenKind.OP and token.value in ("(", "["):
                depth += 1
            elif token.kind == TokenKind.OP and token.value in (")", "]"):
                depth -= 1
            if token.is_op(",") and depth == 0:
                args.append(current)
                current = []
                continue
            current.append(token)
        if current or args:
            args.append(current)
        return args

    def _marker(self, name: str) -> tuple[Token, list[list[Token]]]:
        head = self._expect_ident(name)
        return head, self._paren_args(head, single_line=True)

    def _marker_error(self, head: Token) -> DialectSyntaxError:
        return DialectSyntaxError(
            f"marker '{head.value}' must occupy a single line", self.file, head.line
        )

    def _ident_arg(self, arg: list[Token], what: str, head: Token) -> str:
        if len(arg) != 1 or arg[0].kind != TokenKind.IDENT:
            raise self._error(f"'{head.value}' expects {what}", head)
        return arg[0].value

    def _array_size(self, token: Token) -> int | str:
        if token.kind == TokenKind.NUMBER:
            try:
                return int(token.value.rstrip("uU"), 0)
            except ValueError:
                return token.value
        value = self.session.defines.get(token.value)
        if value is not None:
            try:
                return int(value.strip().rstrip("uU"), 0)
            except ValueError:
                pass
        return token.value

    def _name_with_array(
        self, arg: list[Token], head: Token
    ) -> tuple[str, int | str | None]:
        """Parse ``name`` or ``name[N]``."""
        if not arg or arg[0].kind != TokenKind.IDENT:
            raise self._error(f"'{head.value}' expects a name", head)
        name = arg[0].value
        rest = arg[1:]
        if not rest:
            return name, None
        if rest[0].is_op("[") and rest[-1].is_op("]") and len(rest) <= 3:
            if len(rest) == 2:
                return name, ""
            return name, self._array_size(rest[1])
        raise self._error(f"malformed declarator in '{head.value}'", head)

    # Top level

    def parse(self) -> None:
        while self._peek().kind != TokenKind.EOF:
            token = self._peek()
            if token.kind == TokenKind.DIRECTIVE:
                self._advance()
                self._directive(token)
                continue
            if token.is_op(";"):
                self._advance()
                continue
            if token.is_ident("BEGIN_SRT"):
                self._check_unconditional(token, "resource tables")
                self.session.add_table(self._parse_table())
                continue
            if token.is_ident("BEGIN_SRT_SET"):
                self._check_unconditional(token, "set fragments")
                self.session.add_fragment(self._parse_set(is_fragment=True))
                continue

            if token.is_ident("STRUCT"):
                item = self._parse_struct()
            elif token.is_ident("GROUPSHARED"):
                item = self._parse_groupshared()
            elif token.kind == TokenKind.IDENT:
                item = self._parse_function()
            else:
                raise self._error(f"unexpected token '{token.value}'", token)
            self.conditionals.current(self.session.items()).append(item)

        eof = self._peek()
        self.conditionals.check_closed(eof.line, "at end of file")
        if self.opened_binary and self.session.binary is not None:
            binary = self.session.binary
            raise DialectSyntaxError(
                f"binary block '{binary.output_name}' is missing #end",
                self.file,
                binary.line,
            )

    def _check_unconditional(self, token: Token, what: str) -> None:
        if self.conditionals.frames:
            raise self._error(f"{what} cannot be declared inside conditional blocks", token)

    def _directive(self, token: Token) -> None:
        keyword, rest = _split_directive(token.value)
        line = token.line

        if keyword in CONDITIONAL_DIRECTIVES:
            self.conditionals.handle(keyword, rest, line, self.session.items())
            return

        match keyword:
            case "include":
                self._include(rest, line)
            case "pragma":
                self._pragma(rest, line)
            case "define":
                self._define(rest, line)
            case "variant":
                self._variant(rest, line)
            case "end":
                self._end_binary(line)
            case _ if keyword in STAGE_DIRECTIVES:
                self._begin_binary(keyword, rest, line)
            case _:
                raise DialectSyntaxError(f"unknown directive '#{keyword}'", self.file, line)

    def _include(self, rest: str, line: int) -> None:
        if self.conditionals.frames:
            raise DialectSyntaxError(
                "#include cannot appear inside conditional blocks", self.file, line
            )
        match = re.match(r'^"([^"]+)"$|^<([^>]+)>$', rest)
        if not match:
            raise DialectSyntaxError(f"malformed #include {rest}", self.file, line)
        name = match.group(1) or match.group(2)
        path = self.session.resolve_include(name, self.file, line)

        included = self.session.included()
        if path in included:
            return
        included.add(path)
        if path not in self.session.module.includes:
            self.session.module.includes.append(path)

        logger.debug(f"Including {path}")
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise DialectSyntaxError(
                f"cannot read include '{name}': {e}", self.file, line
            ) from e
        _Parser(self.session, tokenize(text, path), path).parse()

    def _pragma(self, rest: str, line: int) -> None:
        if rest == "once":
            return
        if rest.startswith("FT_") or rest.startswith("~FT_"):
            if self.conditionals.frames:
                raise DialectSyntaxError(
                    "feature pragmas cannot appear inside conditional blocks",
                    self.file,
                    line,
                )
            feature = self._feature(rest.lstrip("~"), line)
            if rest.startswith("~"):
                self.session.features &= ~feature
            else:
                self.session.features |= feature
            return
        logger.warning(f"Ignoring unknown pragma '{rest}' in {self.file}:{line}")

    def _define(self, rest: str, line: int) -> None:
        match = re.match(r"^([A-Za-z_]\w*)(\()?\s*(.*)$", rest)
        if not match:
            raise DialectSyntaxError("malformed #define", self.file, line)
        if match.group(2):
            raise DialectSyntaxError(
                f"function-like macro '{match.group(1)}' is not supported",
                self.file,
                line,
            )
        name, value = match.group(1), match.group(3).strip()
        self.session.defines[name] = value
        define = IRDefine(name, value, self.file, line)
        self.conditionals.current(self.session.items()).append(define)

    def _feature(self, name: str, line: int) -> Feature:
        if not name.startswith("FT_"):
            raise DialectSyntaxError(
                f"feature flag '{name}' must start with FT_", self.file, line
            )
        try:
            return parse_feature(name)
        except ValueError as e:
            raise DialectSyntaxError(str(e), self.file, line) from None

    def _begin_binary(self, keyword: str, rest: str, line: int) -> None:
        if self.session.binary is not None:
            raise DialectSyntaxError(
                f"#{keyword} inside binary block '{self.session.binary.output_name}'",
                self.file,
                line,
            )
        if self.conditionals.frames:
            raise DialectSyntaxError(
                "binary blocks cannot be declared inside conditional blocks",
                self.file,
                line,
            )
        words = rest.split()
        if not words:
            raise DialectSyntaxError(
                f"#{keyword} needs an output name", self.file, line
            )
        output_name = words[-1]
        if not _OUTPUT_NAME_RE.match(output_name) or output_name.startswith("FT_"):
            raise DialectSyntaxError(
                f"invalid binary output name '{output_name}'", self.file, line
            )

        features = self.session.features
        for word in words[:-1]:
            features |= self._feature(word, line)

        binary = IRBinary(
            stage=STAGE_DIRECTIVES[keyword],
            output_name=output_name,
            features=features,
            file=self.file,
            line=line,
        )
        self.session.module.binaries.append(binary)
        self.session.binary = binary
        self.session.binary_included = set(self.session.top_included)
        self.opened_binary = True
        logger.debug(f"Binary '{output_name}' ({binary.stage.name.lower()}) at line {line}")

    def _variant(self, rest: str, line: int) -> None:
        binary = self.session.binary
        if binary is None:
            raise DialectSyntaxError("#variant outside a binary block", self.file, line)
        if self.conditionals.frames:
            raise DialectSyntaxError(
                "#variant cannot appear inside conditional blocks", self.file, line
            )
        flags = NO_FEATURES
        for word in rest.replace(",", " ").split():
            flags |= self._feature(word, line)
        binary.variants.append(flags)

    def _end_binary(self, line: int) -> None:
        if self.session.binary is None:
            raise DialectSyntaxError("#end without a binary block", self.file, line)
        self.conditionals.check_closed(line, "before #end")
        self.session.binary = None
        self.session.binary_included = None
        self.opened_binary = False

    # Declarations

    def _parse_struct(self) -> IRStruct:
        head, args = self._marker("STRUCT")
        name = self._ident_arg(args[0] if len(args) == 1 else [], "a struct name", head)
        self._expect_op("{")

        fields: list = []
        conditionals = _ConditionalStack(self.file)
        while True:
            token = self._peek()
            if token.kind == TokenKind.DIRECTIVE:
                self._advance()
                keyword, rest = _split_directive(token.value)
                if keyword not in CONDITIONAL_DIRECTIVES:
                    raise self._error(
                        f"directive '#{keyword}' is not allowed inside struct '{name}'",
                        token,
                    )
                conditionals.handle(keyword, rest, token.line, fields)
            elif token.is_op("}"):
                conditionals.check_closed(token.line, f"in struct '{name}'")
                self._advance()
                break
            elif token.is_op(";"):
                self._advance()
            elif token.is_ident("DATA"):
                conditionals.current(fields).append(self._parse_field())
            else:
                found = token.value or "end of file"
                raise self._error(f"unexpected '{found}' in struct '{name}'", token)
        self._accept_op(";")
        return IRStruct(name, fields, self.file, head.line)

    def _parse_field(self) -> IRStructField:
        head, args = self._marker("DATA")
        if len(args) not in (2, 3):
            raise self._error("DATA expects (type, name[, semantic])", head)
        type_name = self._ident_arg(args[0], "a type", head)
        name, size = self._name_with_array(args[1], head)
        semantic = None
        if len(args) == 3:
            semantic = self._ident_arg(args[2], "a semantic", head)
            if semantic.upper() == "NONE":
                semantic = None
        self._accept_op(";")
        return IRStructField(IRType(type_name, size), name, semantic)

    def _parse_groupshared(self) -> IRGroupShared:
        head, args = self._marker("GROUPSHARED")
        if len(args) != 2:
            raise self._error("GROUPSHARED expects (type, name[N])", head)
        type_name = self._ident_arg(args[0], "a type", head)
        name, size = self._name_with_array(args[1], head)
        self._accept_op(";")
        return IRGroupShared(IRType(type_name, size), name, self.file, head.line)

    def _parse_table(self) -> ShaderResourceTable:
        head, args = self._marker("BEGIN_SRT")
        name = self._ident_arg(args[0] if len(args) == 1 else [], "a table name", head)
        items: list[ResourceSet | SetReference] = []

        while True:
            token = self._peek()
            if token.kind == TokenKind.DIRECTIVE:
                keyword, _ = _split_directive(token.value)
                raise self._error(
                    f"directive '#{keyword}' is not allowed inside resource table '{name}'",
                    token,
                )
            if token.kind == TokenKind.EOF:
                raise self._error(f"unterminated resource table '{name}'", head)
            if token.is_op(";"):
                self._advance()
            elif token.is_ident("BEGIN_SRT_SET"):
                items.append(self._parse_set(is_fragment=False))
            elif token.is_ident("USE_SRT_SET"):
                use, use_args = self._marker("USE_SRT_SET")
                frequency = self._ident_arg(
                    use_args[0] if len(use_args) == 1 else [], "a set name", use
                )
                items.append(SetReference(frequency, self.file, use.line))
            elif token.is_ident("END_SRT"):
                end, end_args = self._marker("END_SRT")
                end_name = self._ident_arg(
                    end_args[0] if len(end_args) == 1 else [], "a table name", end
                )
                if end_name != name:
                    raise self._error(
                        f"END_SRT({end_name}) does not close BEGIN_SRT({name})", end
                    )
                break
            else:
                raise self._error(
                    f"unexpected '{token.value}' in resource table '{name}'", token
                )

        logger.debug(f"Parsed SRT '{name}' with {len(items)} sets")
        return ShaderResourceTable(name, items, self.file, head.line)

    def _parse_set(self, is_fragment: bool) -> ResourceSet:
        head, args = self._marker("BEGIN_SRT_SET")
        name = self._ident_arg(args[0] if len(args) == 1 else [], "a set name", head)
        declarations: list[ResourceDeclaration] = []

        while True:
            token = self._peek()
            if token.kind == TokenKind.DIRECTIVE:
                keyword, _ = _split_directive(token.value)
                raise self._error(
                    f"directive '#{keyword}' is not allowed inside resource set '{name}'",
                    token,
                )
            if token.kind == TokenKind.EOF:
                raise self._error(f"unterminated resource set '{name}'", head)
            if token.is_op(";"):
                self._advance()
            elif token.kind == TokenKind.IDENT and token.value in RESOURCE_MARKERS:
                declarations.append(self._parse_declaration(token.value))
            elif token.is_ident("END_SRT_SET"):
                end, end_args = self._marker("END_SRT_SET")
                end_name = self._ident_arg(
                    end_args[0] if len(end_args) == 1 else [], "a set name", end
                )
                if end_name != name:
                    raise self._error(
                        f"END_SRT_SET({end_name}) does not close BEGIN_SRT_SET({name})",
                        end,
                    )
                break
            else:
                raise self._error(
                    f"unexpected '{token.value}' in resource set '{name}'", token
                )

        return ResourceSet(name, declarations, is_fragment, self.file, head.line)

    def _parse_declaration(self, marker: str) -> ResourceDeclaration:
        head, args = self._marker(marker)
        if len(args) != 3:
            raise self._error(f"{marker} expects (frequency, type, name)", head)
        frequency = self._ident_arg(args[0], "a frequency", head)
        kind = self._resource_kind(marker, args[1], head)
        name, size = self._name_with_array(args[2], head)
        self._accept_op(";")
        return ResourceDeclaration(
            name=name,
            kind=kind,
            frequency=frequency,
            array_length=1 if size is None else size,
            is_array=size is not None,
            file=self.file,
            line=head.line,
        )

    def _resource_kind(
        self, marker: str, arg: list[Token], head: Token
    ) -> ResourceKind:
        if not arg or arg[0].kind != TokenKind.IDENT:
            raise self._error(f"{marker} expects a resource type", head)
        constructor = arg[0].value
        inner = None
        if len(arg) == 4 and arg[1].is_op("(") and arg[3].is_op(")"):
            if arg[2].kind != TokenKind.IDENT:
                raise self._error(f"malformed resource type '{constructor}'", head)
            inner = arg[2].value
        elif len(arg) != 1:
            raise self._error(f"malformed resource type '{constructor}'", head)

        kind: ResourceKind | None = None
        match marker:
            case "DECL_SAMPLER" if constructor in SAMPLER_TYPES and inner is None:
                kind = SamplerKind(comparison=SAMPLER_TYPES[constructor])
            case "DECL_TEXTURE" if constructor in TEXTURE_SHAPES and inner:
                kind = TextureKind(TEXTURE_SHAPES[constructor], inner)
            case "DECL_RWTEXTURE" if constructor in RW_TEXTURE_SHAPES and inner:
                kind = TextureKind(RW_TEXTURE_SHAPES[constructor], inner, read_write=True)
            case "DECL_BUFFER" if constructor == "Buffer" and inner:
                kind = BufferKind(inner)
            case "DECL_RWBUFFER" if constructor == "RWBuffer" and inner:
                kind = BufferKind(inner, read_write=True)
            case "DECL_CBUFFER" if constructor == "CBUFFER" and inner:
                kind = ConstantBufferKind(inner)
        if kind is None:
            raise self._error(
                f"{marker} cannot declare a resource of type '{constructor}'", head
            )
        return kind

    # Functions and entry points

    def _parse_function(self) -> IRFunction | IREntryPoint:
        root_signature = None
        table_name = None
        num_threads = None
        first = self._peek()
        while self._peek().kind == TokenKind.IDENT and self._peek().value in ENTRY_ATTRIBUTES:
            head, args = self._marker(self._peek().value)
            match head.value:
                case "ROOT_SIGNATURE":
                    root_signature = self._ident_arg(
                        args[0] if len(args) == 1 else [], "a root signature name", head
                    )
                case "USE_SRT":
                    table_name = self._ident_arg(
                        args[0] if len(args) == 1 else [], "a table name", head
                    )
                case "NUM_THREADS":
                    if len(args) != 3 or any(len(a) != 1 for a in args):
                        raise self._error("NUM_THREADS expects (x, y, z)", head)
                    x, y, z = (self._array_size(a[0]) for a in args)
                    num_threads = (x, y, z)
            self._accept_op(";")
        has_attributes = self._peek() is not first

        return_token = self._expect_ident()
        return_type = None if return_token.value == "void" else IRType(return_token.value)
        name_token = self._expect_ident()
        name = name_token.value

        if name in ENTRY_NAMES:
            args = self._paren_args(name_token, single_line=True)
            params = [self._parse_param(arg, name_token, entry=True) for arg in args]
            body = self._parse_block()
            return IREntryPoint(
                name=name,
                stage=ENTRY_NAMES[name],
                params=params,
                return_type=return_type,
                body=body,
                num_threads=num_threads,
                root_signature=root_signature,
                table_name=table_name,
                file=self.file,
                line=name_token.line,
            )

        if has_attributes:
            raise self._error(
                "entry-point attributes must precede VS_MAIN, PS_MAIN or CS_MAIN",
                name_token,
            )
        args = self._paren_args(name_token, single_line=False)
        params = [self._parse_param(arg, name_token, entry=False) for arg in args]
        body = self._parse_block()
        return IRFunction(name, params, return_type, body, self.file, name_token.line)

    def _parse_param(
        self, tokens: list[Token], head: Token, entry: bool
    ) -> IRParameter:
        if not tokens or tokens[0].kind != TokenKind.IDENT:
            raise self._error(f"malformed parameter of '{head.value}'", head)
        first = tokens[0].value

        wrapped = (
            len(tokens) >= 5
            and tokens[1].is_op("(")
            and tokens[2].kind == TokenKind.IDENT
            and tokens[3].is_op(")")
        )
        if wrapped and first in PARAM_QUALIFIERS:
            if entry and first != "in":
                raise self._error("entry point parameters cannot be out or inout", head)
            name, size = self._name_with_array(tokens[4:], head)
            return IRParameter(name, IRType(tokens[2].value, size), first)
        if wrapped and first.upper() in SYSTEM_VALUES:
            if not entry:
                raise self._error(
                    f"system value '{first}' is only allowed on entry points", head
                )
            name, size = self._name_with_array(tokens[4:], head)
            return IRParameter(
                name, IRType(tokens[2].value, size), system_value=first.upper()
            )

        name, size = self._name_with_array(tokens[1:], head)
        return IRParameter(name, IRType(first, size))

    # Statements

    def _parse_block(self) -> list[IRStmt]:
        self._expect_op("{")
        stmts: list[IRStmt] = []
        conditionals = _ConditionalStack(self.file)
        while True:
            token = self._peek()
            if token.kind == TokenKind.DIRECTIVE:
                self._advance()
                keyword, rest = _split_directive(token.value)
                if keyword not in CONDITIONAL_DIRECTIVES:
                    raise self._error(
                        f"directive '#{keyword}' is not allowed inside a function body",
                        token,
                    )
                conditionals.handle(keyword, rest, token.line, stmts)
                continue
            if token.is_op("}"):
                conditionals.check_closed(token.line, "in function body")
                self._advance()
                return stmts
            if token.kind == TokenKind.EOF:
                raise self._error("unexpected end of file; missing '}'", token)
            conditionals.current(stmts).extend(self._parse_statement())

    def _parse_body(self) -> list[IRStmt]:
        if self._peek().is_op("{"):
            return self._parse_block()
        return self._parse_statement()

    def _parse_statement(self) -> list[IRStmt]:
        token = self._peek()
        line = token.line

        if token.is_op("{"):
            return [IRBlock(body=self._parse_block(), line=line)]
        if token.is_op(";"):
            self._advance()
            return []

        if token.kind == TokenKind.IDENT:
            match token.value:
                case "if":
                    self._advance()
                    self._expect_op("(")
                    condition = self._parse_expression()
                    self._expect_op(")")
                    then_body = self._parse_body()
                    else_body: list[IRStmt] = []
                    if self._peek().is_ident("else"):
                        self._advance()
                        else_body = self._parse_body()
                    return [IRIf(condition, then_body, else_body, line=line)]
                case "for":
                    return [self._parse_for(line)]
                case "while":
                    self._advance()
                    self._expect_op("(")
                    condition = self._parse_expression()
                    self._expect_op(")")
                    return [IRWhile(condition, self._parse_body(), line=line)]
                case "break":
                    self._advance()
                    self._expect_op(";")
                    return [IRBreak(line=line)]
                case "continue":
                    self._advance()
                    self._expect_op(";")
                    return [IRContinue(line=line)]
                case "discard":
                    self._advance()
                    self._expect_op(";")
                    return [IRDiscard(line=line)]
                case "return":
                    self._advance()
                    value = None
                    if not self._peek().is_op(";"):
                        value = self._parse_expression()
                    self._expect_op(";")
                    return [IRReturn(value, line=line)]
                case "INIT_MAIN":
                    self._advance()
                    self._expect_op(";")
                    return [IRInitMain(line=line)]
                case "RETURN":
                    head, args = self._marker("RETURN")
                    values = [self._expression_from(arg, head) for arg in args]
                    self._expect_op(";")
                    return [IREntryReturn(values, line=line)]
                case "do" | "switch" | "goto":
                    raise self._error(f"'{token.value}' statements are not supported", token)

        if self._is_declaration_start():
            return self._parse_declarations(line)
        stmt = self._parse_simple(line)
        self._expect_op(";")
        return [stmt]

    def _is_declaration_start(self) -> bool:
        token = self._peek()
        if token.is_ident("const"):
            return True
        return token.kind == TokenKind.IDENT and self._peek(1).kind == TokenKind.IDENT

    def _parse_declarations(self, line: int) -> list[IRStmt]:
        const = False
        if self._peek().is_ident("const"):
            self._advance()
            const = True
        type_name = self._expect_ident().value

        stmts: list[IRStmt] = []
        while True:
            name = self._expect_ident().value
            size: int | str | None = None
            if self._accept_op("["):
                size = self._array_size(self._advance())
                self._expect_op("]")
            var_type = IRType(type_name, size)
            init = None
            if self._accept_op("="):
                if self._peek().is_op("{"):
                    init = self._parse_initializer_list(var_type)
                else:
                    init = self._parse_expression()
            stmts.append(IRDeclare(IRVariable(name, var_type, const), init, line=line))
            if self._accept_op(","):
                continue
            self._expect_op(";")
            return stmts

    def _parse_initializer_list(self, var_type: IRType) -> IRConstruct:
        start = self._expect_op("{")
        if var_type.array_size is None:
            raise self._error("initializer lists are only supported for arrays", start)
        args: list[IRExpr] = []
        while not self._accept_op("}"):
            args.append(self._parse_expression())
            if not self._accept_op(","):
                self._expect_op("}")
                break
        return IRConstruct(var_type, args)

    def _parse_for(self, line: int) -> IRFor:
        self._expect_ident("for")
        self._expect_op("(")

        init: IRStmt | None = None
        if self._accept_op(";"):
            pass
        elif self._is_declaration_start():
            declarations = self._parse_declarations(line)
            if len(declarations) != 1:
                raise self._error("for-loop initializers declare a single variable")
            init = declarations[0]
        else:
            init = self._parse_simple(line)
            self._expect_op(";")

        condition = None
        if not self._peek().is_op(";"):
            condition = self._parse_expression()
        self._expect_op(";")

        update = None
        if not self._peek().is_op(")"):
            update = self._parse_simple(line)
        self._expect_op(")")

        return IRFor(init, condition, update, self._parse_body(), line=line)

    def _parse_simple(self, line: int) -> IRStmt:
        target = self._parse_expression()
        token = self._peek()
        if token.kind == TokenKind.OP and token.value in ASSIGNMENT_OPERATORS:
            self._advance()
            value = self._parse_expression()
            if token.value == "=":
                return IRAssign(target, value, line=line)
            return IRAugmentedAssign(target, token.value[:-1], value, line=line)
        return IRExprStmt(target, line=line)

    # Expressions

    def _expression_from(self, tokens: list[Token], head: Token) -> IRExpr:
        if not tokens:
            raise self._error(f"empty argument in '{head.value}'", head)
        parser = self._sub_parser(tokens)
        expr = parser._parse_expression()
        if parser._peek().kind != TokenKind.EOF:
            raise self._error(f"unexpected '{parser._peek().value}' in '{head.value}'", head)
        return expr

    def _parse_expression(self, min_precedence: int = 1) -> IRExpr:
        left = self._parse_unary()
        while True:
            token = self._peek()
            if token.kind != TokenKind.OP:
                return left
            if token.value == "?":
                precedence = OPERATOR_PRECEDENCE["?"]
                if precedence < min_precedence:
                    return left
                self._advance()
                true_expr = self._parse_expression()
                self._expect_op(":")
                false_expr = self._parse_expression(precedence)
                left = IRTernary(left, true_expr, false_expr)
                continue
            precedence = _BINARY_PRECEDENCE.get(token.value)
            if precedence is None or precedence < min_precedence:
                return left
            self._advance()
            right = self._parse_expression(precedence + 1)
            left = IRBinOp(token.value, left, right)

    def _parse_unary(self) -> IRExpr:
        token = self._peek()
        if token.kind == TokenKind.OP and token.value in ("-", "+", "!", "~", "++", "--"):
            self._advance()
            return IRUnaryOp(token.value, self._parse_unary())
        # C-style cast to a builtin type
        if (
            token.is_op("(")
            and self._peek(1).kind == TokenKind.IDENT
            and self._peek(1).value in BUILTIN_TYPES
            and self._peek(2).is_op(")")
        ):
            self._advance()
            type_name = self._advance().value
            self._advance()
            return IRConstruct(IRType(type_name), [self._parse_unary()])
        return self._parse_postfix(self._parse_primary())

    def _parse_postfix(self, expr: IRExpr) -> IRExpr:
        while True:
            token = self._peek()
            if token.is_op("."):
                self._advance()
                expr = IRFieldAccess(expr, self._expect_ident().value)
            elif token.is_op("["):
                self._advance()
                index = self._parse_expression()
                self._expect_op("]")
                expr = IRSubscript(expr, index)
            elif token.is_op("++") or token.is_op("--"):
                self._advance()
                expr = IRUnaryOp(token.value, expr, postfix=True)
            else:
                return expr

    def _parse_primary(self) -> IRExpr:
        token = self._advance()
        if token.kind == TokenKind.NUMBER:
            return _literal(token.value)
        if token.is_ident("true") or token.is_ident("false"):
            return IRLiteral(token.value, "bool")
        if token.kind == TokenKind.IDENT:
            if self._peek().is_op("("):
                args = self._call_args()
                if token.value in BUILTIN_TYPES and token.value != "void":
                    return IRConstruct(IRType(token.value), args)
                return IRCall(token.value, args)
            return IRName(token.value)
        if token.is_op("("):
            expr = self._parse_expression()
            self._expect_op(")")
            return expr
        found = token.value or "end of file"
        raise self._error(f"unexpected '{found}' in expression", token)

    def _call_args(self) -> list[IRExpr]:
        self._expect_op("(")
        args: list[IRExpr] = []
        if self._accept_op(")"):
            return args
        while True:
            args.append(self._parse_expression())
            if self._accept_op(")"):
                return args
            self._expect_op(",")


def _literal(text: str) -> IRLiteral:
    """Normalise a numeric literal, dropping type suffixes."""
    lower = text.lower()
    if lower.startswith("0x"):
        if lower.endswith("u"):
            return IRLiteral(text[:-1], "uint")
        return IRLiteral(text, "int")
    if "." in lower or "e" in lower:
        body = text.rstrip("fFhH")
        if body.startswith("."):
            body = "0" + body
        if body.endswith("."):
            body += "0"
        return IRLiteral(body, "float")
    if lower.endswith("u"):
        return IRLiteral(text[:-1], "uint")
    return IRLiteral(text, "int")


def parse_source(
    text: str,
    file: str = "<string>",
    include_dirs: list[str] | list[Path] | tuple = (),
) -> Module:
    """Parse dialect source text into a module.

    Args:
        text: Source text
        file: Name of the file the text came from; relative includes are
            resolved against its directory
        include_dirs: Additional include search directories, in order

    Returns:
        The parsed module

    Raises:
        DialectSyntaxError: If the source or one of its includes is malformed
    """
    session = _Session(file, [Path(d) for d in include_dirs])
    _Parser(session, tokenize(text, file), file).parse()
    module = session.module
    logger.debug(
        f"Parsed {file}: {len(module.binaries)} binaries, {len(module.tables)} tables, "
        f"{len(module.includes)} includes"
    )
    return module


def parse_file(
    path: str | Path, include_dirs: list[str] | list[Path] | tuple = ()
) -> Module:
    """Read and parse a dialect source file.

    Args:
        path: Path of the source file
        include_dirs: Additional include search directories, in order

    Returns:
        The parsed module

    Raises:
        DialectSyntaxError: If the file cannot be read or is malformed
    """
    resolved = Path(path).resolve()
    try:
        text = resolved.read_text(encoding="utf-8")
    except OSError as e:
        raise DialectSyntaxError(f"cannot read {path}: {e}") from e
    return parse_source(text, str(resolved), include_dirs)
