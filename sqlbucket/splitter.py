"""
Quote- and comment-aware splitting of multi-statement SQL scripts.

The lexer tracks four mutually exclusive modes (normal, quoted literal,
line comment, block comment). Only a semicolon seen in normal mode ends a
statement.

Quoting follows standard SQL: a backslash is an ordinary character and a
doubled quote ('it''s') simply closes and reopens the literal. Passing
backslash_escapes=True restores the legacy rule where a quote preceded by
a backslash does not close the literal.
"""
from enum import Enum, auto
from typing import Iterator, List, Tuple


class LexMode(Enum):
    NORMAL = auto()
    QUOTE = auto()
    LINE_COMMENT = auto()
    BLOCK_COMMENT = auto()


_QUOTES = ("'", '"')
_NAMED_MARKERS = (':', '@', '$')
_COMMENT_MODES = (LexMode.LINE_COMMENT, LexMode.BLOCK_COMMENT)


def scan(script: str, backslash_escapes: bool = False) -> Iterator[Tuple[int, str, LexMode]]:
    """Yield (index, char, mode) for every character of the script."""
    mode = LexMode.NORMAL
    quote_char = ''
    length = len(script)
    i = 0
    while i < length:
        char = script[i]
        next_char = script[i + 1] if i + 1 < length else ''

        if mode is LexMode.NORMAL:
            if char == '-' and next_char == '-':
                mode = LexMode.LINE_COMMENT
                yield i, char, mode
                yield i + 1, next_char, mode
                i += 2
                continue
            if char == '/' and next_char == '*':
                mode = LexMode.BLOCK_COMMENT
                yield i, char, mode
                yield i + 1, next_char, mode
                i += 2
                continue
            if char in _QUOTES:
                mode = LexMode.QUOTE
                quote_char = char
            yield i, char, mode

        elif mode is LexMode.LINE_COMMENT:
            yield i, char, mode
            if char == '\n':
                mode = LexMode.NORMAL

        elif mode is LexMode.BLOCK_COMMENT:
            if char == '*' and next_char == '/':
                yield i, char, mode
                yield i + 1, next_char, mode
                mode = LexMode.NORMAL
                i += 2
                continue
            yield i, char, mode

        else:
            yield i, char, mode
            escaped = backslash_escapes and i > 0 and script[i - 1] == '\\'
            if char == quote_char and not escaped:
                mode = LexMode.NORMAL

        i += 1


def strip_comments(text: str, backslash_escapes: bool = False) -> str:
    out: List[str] = []
    for _, char, mode in scan(text, backslash_escapes):
        if mode in _COMMENT_MODES:
            if out and out[-1] != ' ':
                out.append(' ')
            continue
        out.append(char)
    return ''.join(out)


def _strip_leading_comments(stmt: str) -> str:
    while True:
        stmt = stmt.lstrip()
        if stmt.startswith('--'):
            newline = stmt.find('\n')
            stmt = '' if newline == -1 else stmt[newline + 1:]
        elif stmt.startswith('/*'):
            end = stmt.find('*/', 2)
            stmt = '' if end == -1 else stmt[end + 2:]
        else:
            return stmt


def _has_content(stmt: str, backslash_escapes: bool) -> bool:
    body = strip_comments(stmt, backslash_escapes).strip()
    return bool(body.rstrip(';').strip())


def split(script: str, backslash_escapes: bool = False) -> List[str]:
    """
    Split a SQL script into trimmed statements in input order.

    Each statement keeps its terminating semicolon. A trailing fragment
    without one is kept as the final statement. Leading comments are
    dropped from every statement and fragments holding nothing but
    comments, whitespace or a bare semicolon are discarded.
    """
    statements: List[str] = []
    current: List[str] = []

    for _, char, mode in scan(script, backslash_escapes):
        current.append(char)
        if char == ';' and mode is LexMode.NORMAL:
            statements.append(''.join(current).strip())
            current = []

    tail = ''.join(current).strip()
    if tail:
        statements.append(tail)

    result = []
    for stmt in statements:
        if not _has_content(stmt, backslash_escapes):
            continue
        result.append(_strip_leading_comments(stmt).strip())
    return result


def has_placeholders(stmt: str, backslash_escapes: bool = False) -> bool:
    prev = ''
    for i, char, mode in scan(stmt, backslash_escapes):
        if mode is LexMode.NORMAL:
            if char == '?':
                return True
            if char in _NAMED_MARKERS and not (prev.isalnum() or prev == '_'):
                following = stmt[i + 1:i + 2]
                if following.isalpha() or following == '_':
                    return True
        prev = char
    return False
