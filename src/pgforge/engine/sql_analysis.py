"""Lexical SQL analysis for model files.

Header metadata is read with line-oriented regexes. Table references are
found by walking the sqlglot token stream rather than a full parse: only
``FROM``/``JOIN`` positions are inspected, which keeps detection conservative
and tolerant of syntax the parser does not know.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

import sqlglot
from sqlglot.errors import TokenError
from sqlglot.tokens import Token, TokenType

# Schemas that are never real upstream dependencies
SKIP_SCHEMAS = frozenset({"information_schema", "pg_catalog", "pg_toast", "_pgforge"})

HEADER_KEYS = ("materialized", "deps", "unique_key", "watermark", "tags", "tests", "description")

THIS_TOKEN = "${this}"
# Same length as THIS_TOKEN so token offsets still line up with the file text
_THIS_PLACEHOLDER = "__pgf__"

_HEADER_LINE_RE = re.compile(r"^--\s*([A-Za-z_]+)\s*:\s*(.*?)\s*$")
_SECTION_MARKER_RE = re.compile(r"^\s*(?:--\s*)?@(base|incremental)\s*$", re.IGNORECASE)
_WORD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")

_NAME_TOKENS = frozenset({TokenType.VAR, TokenType.IDENTIFIER})
_SCOPE_STARTERS = frozenset({TokenType.SELECT, TokenType.DELETE, TokenType.UPDATE})
_FROM_MODIFIERS = frozenset({"ONLY", "LATERAL"})


@dataclass(frozen=True)
class TableRef:
    """A table reference found in a FROM/JOIN clause."""

    name: str  # "schema.table" or bare "table"
    start: int  # character offsets into the scanned SQL
    end: int

    @property
    def qualified(self) -> bool:
        return "." in self.name


@dataclass
class ModelHeader:
    """Metadata block at the top of a model file."""

    values: dict[str, str] = field(default_factory=dict)
    lines: dict[str, int] = field(default_factory=dict)  # key -> 1-based line number
    body_start: int = 0  # 0-based index of the first body line


def parse_header(sql: str) -> ModelHeader:
    """Read the leading ``-- key: value`` block.

    The block ends at the first line that is neither blank nor a ``--``
    comment, or at a section marker. Unknown keys are ignored and a repeated
    key keeps its last value.
    """
    header = ModelHeader()
    lines = sql.splitlines()
    header.body_start = len(lines)
    for idx, line in enumerate(lines):
        stripped = line.strip()
        if not stripped:
            continue
        if not stripped.startswith("--") or _SECTION_MARKER_RE.match(stripped):
            header.body_start = idx
            break
        m = _HEADER_LINE_RE.match(stripped)
        if m and m.group(1).lower() in HEADER_KEYS:
            key = m.group(1).lower()
            header.values[key] = m.group(2)
            header.lines[key] = idx + 1
    return header


def split_list(value: str) -> list[str]:
    """Split a comma-separated header value, dropping empty entries."""
    return [item.strip() for item in value.split(",") if item.strip()]


def find_section_markers(sql: str) -> list[tuple[int, str]]:
    """Return ``(0-based line index, "base" | "incremental")`` for each marker line."""
    markers = []
    for idx, line in enumerate(sql.splitlines()):
        m = _SECTION_MARKER_RE.match(line)
        if m:
            markers.append((idx, m.group(1).lower()))
    return markers


def split_top_level(value: str, separators: str = ",") -> list[str]:
    """Split on separators that sit outside quotes, parentheses and brackets."""
    parts: list[str] = []
    depth = 0
    quote: str | None = None
    current: list[str] = []
    i = 0
    while i < len(value):
        ch = value[i]
        if quote:
            current.append(ch)
            if ch == quote:
                # A doubled quote is an escaped quote, not the end of the string
                if i + 1 < len(value) and value[i + 1] == quote:
                    current.append(value[i + 1])
                    i += 1
                else:
                    quote = None
        elif ch in ("'", '"'):
            quote = ch
            current.append(ch)
        elif ch in "([":
            depth += 1
            current.append(ch)
        elif ch in ")]":
            depth -= 1
            current.append(ch)
        elif ch in separators and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
        i += 1
    if quote is not None:
        raise ValueError("unterminated quoted string")
    if depth != 0:
        raise ValueError("unbalanced brackets")
    parts.append("".join(current).strip())
    return [p for p in parts if p]


def mask_for_scan(sql: str) -> str:
    """Prepare file text for tokenizing without shifting character offsets."""
    text = sql.replace(THIS_TOKEN, _THIS_PLACEHOLDER)
    lines = text.split("\n")
    for idx, line in enumerate(lines):
        if _SECTION_MARKER_RE.match(line):
            lines[idx] = " " * len(line)
    return "\n".join(lines)


# --- Token-based table reference extraction ---


def scan_table_refs(sql: str) -> list[TableRef]:
    """Find every relation named in a FROM or JOIN position.

    Offsets refer to ``sql`` itself. References to ``${this}`` and to CTEs
    are left out. Falls back to a regex scan when the text cannot be
    tokenized.
    """
    text = mask_for_scan(sql)
    try:
        tokens = sqlglot.tokenize(text, read="postgres")
    except TokenError:
        return _fallback_scan_table_refs(text)

    refs: list[TableRef] = []
    _scan(tokens, 0, len(tokens), refs)
    ctes = _cte_names(tokens)
    return [
        r for r in refs
        if r.name != _THIS_PLACEHOLDER and not (not r.qualified and r.name in ctes)
    ]


def extract_table_refs(sql: str, *, exclude: str | None = None) -> list[str]:
    """Sorted unique ``schema.table`` references, without system schemas."""
    refs: set[str] = set()
    for ref in scan_table_refs(sql):
        if not ref.qualified:
            continue
        schema = ref.name.split(".", 1)[0]
        if schema in SKIP_SCHEMAS:
            continue
        if exclude and ref.name == exclude:
            continue
        refs.add(ref.name)
    return sorted(refs)


def extract_unqualified_refs(sql: str) -> list[TableRef]:
    """References that lack a schema prefix, in source order."""
    return [ref for ref in scan_table_refs(sql) if not ref.qualified]


def _name_part(token: Token) -> str:
    if token.token_type == TokenType.IDENTIFIER:
        return token.text
    return token.text.lower()


def _is_word(token: Token) -> bool:
    return token.token_type in _NAME_TOKENS or bool(_WORD_RE.match(token.text))


def _matching_paren(tokens: list[Token], start: int, hi: int) -> int:
    depth = 0
    for i in range(start, hi):
        tt = tokens[i].token_type
        if tt == TokenType.L_PAREN:
            depth += 1
        elif tt == TokenType.R_PAREN:
            depth -= 1
            if depth == 0:
                return i
    return hi - 1


def _scan(tokens: list[Token], lo: int, hi: int, refs: list[TableRef]) -> None:
    # A FROM only introduces relations in a scope opened by SELECT/DELETE/UPDATE,
    # which rules out EXTRACT(x FROM y), substring(s FROM n) and friends.
    in_query = False
    i = lo
    while i < hi:
        tok = tokens[i]
        tt = tok.token_type
        if tt == TokenType.L_PAREN:
            close = _matching_paren(tokens, i, hi)
            _scan(tokens, i + 1, close, refs)
            i = close + 1
            continue
        if tt in _SCOPE_STARTERS:
            in_query = True
        elif tt == TokenType.JOIN or (tt == TokenType.FROM and in_query):
            prev = tokens[i - 1] if i > lo else None
            if prev is not None and prev.token_type == TokenType.DISTINCT:
                # IS DISTINCT FROM
                i += 1
                continue
            i = _scan_from_items(tokens, i + 1, hi, refs, many=tt == TokenType.FROM)
            continue
        i += 1


def _scan_from_items(
    tokens: list[Token],
    i: int,
    hi: int,
    refs: list[TableRef],
    *,
    many: bool,
) -> int:
    """Read one relation (or a comma list after FROM) and return the next index."""
    while i < hi:
        while i < hi and tokens[i].text.upper() in _FROM_MODIFIERS:
            i += 1
        if i >= hi:
            return i

        if tokens[i].token_type == TokenType.L_PAREN:
            close = _matching_paren(tokens, i, hi)
            _scan(tokens, i + 1, close, refs)
            i = close + 1
        elif _is_word(tokens[i]):
            i = _read_relation(tokens, i, hi, refs)
        else:
            return i

        i = _skip_alias(tokens, i, hi)
        if many and i < hi and tokens[i].token_type == TokenType.COMMA:
            i += 1
            continue
        return i
    return i


def _read_relation(tokens: list[Token], i: int, hi: int, refs: list[TableRef]) -> int:
    start_tok = tokens[i]
    first = tokens[i]
    followed_by_dot = i + 1 < hi and tokens[i + 1].token_type == TokenType.DOT
    if first.token_type not in _NAME_TOKENS and not followed_by_dot:
        # A keyword where a table would be, e.g. FROM unnest or a syntax we skip
        return i + 1

    parts = [_name_part(first)]
    end_tok = first
    i += 1
    while (
        i + 1 < hi
        and tokens[i].token_type == TokenType.DOT
        and _is_word(tokens[i + 1])
    ):
        parts.append(_name_part(tokens[i + 1]))
        end_tok = tokens[i + 1]
        i += 2

    if i < hi and tokens[i].token_type == TokenType.L_PAREN:
        # Set-returning function call, not a relation
        close = _matching_paren(tokens, i, hi)
        return close + 1

    if len(parts) <= 2:
        refs.append(TableRef(name=".".join(parts), start=start_tok.start, end=end_tok.end + 1))
    return i


def _skip_alias(tokens: list[Token], i: int, hi: int) -> int:
    if i < hi and tokens[i].token_type == TokenType.ALIAS:
        i += 1
        if i < hi and _is_word(tokens[i]):
            i += 1
    elif i < hi and tokens[i].token_type in _NAME_TOKENS:
        i += 1
    # Column alias list: AS t (a, b)
    if i < hi and tokens[i].token_type == TokenType.L_PAREN:
        i = _matching_paren(tokens, i, hi) + 1
    return i


def _cte_names(tokens: list[Token]) -> set[str]:
    """Names bound by ``name [(cols)] AS [NOT] [MATERIALIZED] (``."""
    names: set[str] = set()
    n = len(tokens)
    for i, tok in enumerate(tokens):
        if tok.token_type not in _NAME_TOKENS:
            continue
        j = i + 1
        if j < n and tokens[j].token_type == TokenType.L_PAREN:
            j = _matching_paren(tokens, j, n) + 1
        if j >= n or tokens[j].token_type != TokenType.ALIAS:
            continue
        j += 1
        while j < n and tokens[j].text.upper() in ("NOT", "MATERIALIZED"):
            j += 1
        if j < n and tokens[j].token_type == TokenType.L_PAREN:
            names.add(_name_part(tok))
    return names


# Regex fallback for text the tokenizer rejects
_SQL_FROM_REF_PATTERN = re.compile(
    r"\b(?:FROM|JOIN)\s+([a-zA-Z_][\w$]*)\.([a-zA-Z_][\w$]*)\b",
    re.IGNORECASE,
)


def _fallback_scan_table_refs(sql: str) -> list[TableRef]:
    """Regex fallback; only reports schema-qualified references."""
    # Blank out comments without moving offsets
    clean = re.sub(r"--[^\n]*", lambda m: " " * len(m.group(0)), sql)
    refs: list[TableRef] = []
    for match in _SQL_FROM_REF_PATTERN.finditer(clean):
        schema, table = match.group(1).lower(), match.group(2).lower()
        refs.append(TableRef(name=f"{schema}.{table}", start=match.start(1), end=match.end(2)))
    return refs
