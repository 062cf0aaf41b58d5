"""
Lossless lexer for dotenv files.

Parses .env files into a token stream that preserves whitespace, comments
and formatting, so edits made through the token stream leave the rest of
the file untouched:
    write(parse(file)) == file (byte-identical)
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from .excludes import BUILTIN_EXCLUDE_PREFIXES


_NEEDS_QUOTES = re.compile(r"[\s#\"'`$\\]")
_ESCAPES = {"n": "\n", "r": "\r", "t": "\t", '"': '"', "\\": "\\"}


class TokenType(Enum):
    """Token types for .env file parsing."""
    COMMENT = "comment"
    BLANK_LINE = "blank_line"
    KEY_VALUE = "key_value"


@dataclass
class Token:
    """A single line of an .env file."""
    type: TokenType
    raw: str  # Original text, preserves everything
    key: Optional[str] = None
    value: Optional[str] = None
    has_export: bool = False

    def __repr__(self):
        if self.type == TokenType.KEY_VALUE:
            export = "export " if self.has_export else ""
            return f"Token({self.type.value}, {export}{self.key}={self.value})"
        return f"Token({self.type.value}, {repr(self.raw[:20])}...)"


def _unescape(value: str) -> str:
    """Resolve backslash escapes inside a double-quoted value."""
    out = []
    i = 0
    while i < len(value):
        char = value[i]
        if char == "\\" and i + 1 < len(value) and value[i + 1] in _ESCAPES:
            out.append(_ESCAPES[value[i + 1]])
            i += 2
            continue
        out.append(char)
        i += 1
    return "".join(out)


class Lexer:
    """
    Line-oriented lexer for .env files.

    Every line becomes exactly one token, so the original file can be
    reconstructed by concatenating the raw text of all tokens.
    """

    def __init__(self, content: str):
        self.content = content
        self.lines = content.splitlines(keepends=True)

    def tokenize(self) -> List[Token]:
        return [self._parse_line(line) for line in self.lines]

    def _parse_line(self, line: str) -> Token:
        stripped = line.lstrip()

        if not stripped.strip():
            return Token(type=TokenType.BLANK_LINE, raw=line)

        if stripped.startswith('#'):
            return Token(type=TokenType.COMMENT, raw=line)

        if '=' not in stripped:
            # Not an assignment, keep it verbatim
            return Token(type=TokenType.COMMENT, raw=line)

        has_export = False
        working_line = stripped
        if stripped.startswith('export '):
            has_export = True
            working_line = stripped[7:]

        eq_index = working_line.index('=')
        key = working_line[:eq_index].strip()
        value = working_line[eq_index + 1:].rstrip('\r\n').strip()

        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            quote = value[0]
            value = value[1:-1]
            if quote == '"':
                value = _unescape(value)
        elif ' #' in value:
            # Unquoted value with a trailing inline comment
            value = value.split(' #', 1)[0].rstrip()

        return Token(
            type=TokenType.KEY_VALUE,
            raw=line,
            key=key,
            value=value,
            has_export=has_export
        )


def parse(content: str) -> List[Token]:
    """
    Parse .env file content into tokens.

    Args:
        content: String content of .env file

    Returns:
        List of Token objects
    """
    return Lexer(content).tokenize()


def write(tokens: List[Token]) -> str:
    """Reconstruct .env file content from tokens."""
    return ''.join(token.raw for token in tokens)


def get_keys(tokens: List[Token]) -> Dict[str, str]:
    """
    Extract all key-value pairs from tokens.

    Later assignments of the same key win, matching how dotenv loaders
    resolve duplicates.
    """
    return {
        token.key: token.value
        for token in tokens
        if token.type == TokenType.KEY_VALUE and token.key
    }


def format_value(value: str) -> str:
    """Quote and escape a value if it cannot be written bare."""
    if not _NEEDS_QUOTES.search(value):
        return value
    escaped = (
        value.replace('\\', '\\\\')
        .replace('"', '\\"')
        .replace('\n', '\\n')
    )
    return f'"{escaped}"'


def format_line(key: str, value: str, has_export: bool = False) -> str:
    export_prefix = "export " if has_export else ""
    return f"{export_prefix}{key}={format_value(value)}\n"


def set_value(tokens: List[Token], key: str, new_value: str) -> List[Token]:
    """
    Set a value in the token stream.

    Existing assignments are rewritten in place (keeping their export
    prefix); a missing key is appended at the end of the file.

    Args:
        tokens: List of Token objects
        key: Key to set
        new_value: New value for the key

    Returns:
        Updated list of tokens
    """
    updated = []
    found = False
    for token in tokens:
        if token.type == TokenType.KEY_VALUE and token.key == key:
            found = True
            new_raw = format_line(key, new_value, token.has_export)
            if not token.raw.endswith('\n'):
                new_raw = new_raw[:-1]
            updated.append(Token(
                type=TokenType.KEY_VALUE,
                raw=new_raw,
                key=key,
                value=new_value,
                has_export=token.has_export
            ))
        else:
            updated.append(token)

    if not found:
        if updated and not updated[-1].raw.endswith('\n'):
            last = updated[-1]
            updated[-1] = Token(last.type, last.raw + '\n', last.key, last.value, last.has_export)
        updated.append(Token(
            type=TokenType.KEY_VALUE,
            raw=format_line(key, new_value),
            key=key,
            value=new_value,
        ))

    return updated


def remove_key(tokens: List[Token], key: str) -> List[Token]:
    """Drop every assignment of ``key`` from the token stream."""
    return [
        token for token in tokens
        if not (token.type == TokenType.KEY_VALUE and token.key == key)
    ]


def serialize_record(record: Dict[str, str]) -> str:
    """
    Render a decrypted record as plain .env content.

    Built-in bookkeeping keys (DOTENV_*) are left out since the output is
    a plaintext copy meant for local tooling.
    """
    lines = [
        f"{key}={format_value(value)}"
        for key, value in record.items()
        if not key.startswith(BUILTIN_EXCLUDE_PREFIXES)
    ]
    return '\n'.join(lines)
