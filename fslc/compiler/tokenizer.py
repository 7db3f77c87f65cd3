"""Tokenizer for the portable shader dialect.

Source text is split into directive lines (``#...``) and C-like tokens. Every
token remembers its file and line so later stages can report errors precisely.
"""

import re
from dataclasses import dataclass
from enum import Enum, auto

from fslc.compiler.errors import DialectSyntaxError


class TokenKind(Enum):
    """Lexical category of a token."""

    IDENT = auto()
    NUMBER = auto()
    STRING = auto()
    OP = auto()
    DIRECTIVE = auto()
    EOF = auto()


@dataclass(frozen=True)
class Token:
    """A lexical token."""

    kind: TokenKind
    value: str
    line: int
    file: str

    def is_op(self, value: str) -> bool:
        return self.kind == TokenKind.OP and self.value == value

    def is_ident(self, value: str | None = None) -> bool:
        if self.kind != TokenKind.IDENT:
            return False
        return value is None or self.value == value


_NUMBER = (
    r"0[xX][0-9a-fA-F]+[uU]?"
    r"|\d+\.\d*(?:[eE][+-]?\d+)?[fFhH]?"
    r"|\.\d+(?:[eE][+-]?\d+)?[fFhH]?"
    r"|\d+[eE][+-]?\d+[fFhH]?"
    r"|\d+[uU]?"
)
_OPERATORS = (
    r"<<=|>>=|\+\+|--|&&|\|\||==|!=|<=|>=|<<|>>|\+=|-=|\*=|/=|%=|&=|\|=|\^=|->|::"
    r"|[{}()\[\];,.+\-*/%&|^~!=<>?:]"
)
_TOKEN_RE = re.compile(
    rf"(?P<ws>[ \t\r\f\v]+)"
    rf"|(?P<number>{_NUMBER})"
    rf"|(?P<ident>[A-Za-z_]\w*)"
    rf"|(?P<string>\"[^\"\n]*\")"
    rf"|(?P<op>{_OPERATORS})"
)


def strip_comments(text: str) -> str:
    """Remove // and /* */ comments while keeping line structure intact.

    Args:
        text: Raw source text

    Returns:
        Text of the same line count with comments replaced by spaces
    """
    out: list[str] = []
    i, n = 0, len(text)
    in_string = False
    while i < n:
        c = text[i]
        if in_string:
            out.append(c)
            if c == '"' or c == "\n":
                in_string = False
            i += 1
        elif c == '"':
            in_string = True
            out.append(c)
            i += 1
        elif text.startswith("//", i):
            end = text.find("\n", i)
            if end < 0:
                end = n
            out.append(" " * (end - i))
            i = end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            if end < 0:
                end = n
            else:
                end += 2
            # Keep newlines so line numbers stay correct
            out.append("".join("\n" if ch == "\n" else " " for ch in text[i:end]))
            i = end
        else:
            out.append(c)
            i += 1
    return "".join(out)


def tokenize(text: str, file: str = "<string>") -> list[Token]:
    """Tokenize dialect source.

    Directive lines become a single DIRECTIVE token holding the text after
    ``#``. A directive continued with a trailing backslash is rejected: markers
    and directives must each occupy one line.

    Args:
        text: Source text
        file: File name used in tokens and errors

    Returns:
        List of tokens terminated by an EOF token

    Raises:
        DialectSyntaxError: On unexpected characters or split directives
    """
    tokens: list[Token] = []
    lines = strip_comments(text).split("\n")

    for lineno, line in enumerate(lines, start=1):
        stripped = line.strip()
        if not stripped:
            continue

        if stripped.startswith("#"):
            if stripped.endswith("\\"):
                raise DialectSyntaxError(
                    "directive must occupy a single line", file=file, line=lineno
                )
            tokens.append(
                Token(TokenKind.DIRECTIVE, stripped[1:].strip(), lineno, file)
            )
            continue

        pos = 0
        while pos < len(line):
            m = _TOKEN_RE.match(line, pos)
            if not m:
                raise DialectSyntaxError(
                    f"unexpected character {line[pos]!r}", file=file, line=lineno
                )
            pos = m.end()
            group = m.lastgroup
            if group == "ws":
                continue
            kind = {
                "number": TokenKind.NUMBER,
                "ident": TokenKind.IDENT,
                "string": TokenKind.STRING,
                "op": TokenKind.OP,
            }[group]
            tokens.append(Token(kind, m.group(group), lineno, file))

    last_line = len(lines)
    tokens.append(Token(TokenKind.EOF, "", last_line, file))
    return tokens
