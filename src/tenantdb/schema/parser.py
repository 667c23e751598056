"""
DDL parser for tenantdb.

Extracts column definitions from ``CREATE TABLE`` statements. This is not a
general SQL parser: it understands just enough of the column-list grammar to
recover each column's name, type, nullability, default, uniqueness and
foreign-key reference. Anything it cannot read confidently is skipped with a
ParseWarning rather than failing the parse.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from ..exceptions import ParseWarning
from .definitions import (
    ColumnDefinition,
    ExpectedSchema,
    ForeignKeyReference,
    RECOGNIZED_TYPES,
    is_valid_column_name,
    is_valid_identifier,
    type_keyword,
)
from .sources import SchemaSource


logger = logging.getLogger(__name__)


CREATE_TABLE_PATTERN = re.compile(
    r'\bCREATE\s+(?:UNLOGGED\s+)?TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?'
    r'(?:"?(\w+)"?\.)?"?(\w+)"?\s*\(',
    re.IGNORECASE,
)

TABLE_CONSTRAINT_PATTERN = re.compile(
    r"^(PRIMARY\s+KEY|FOREIGN\s+KEY|UNIQUE\s*\(|CONSTRAINT\b|CHECK\s*\(|"
    r"INDEX\b|EXCLUDE\b|LIKE\b)",
    re.IGNORECASE,
)

# Most specific first; the first match with a recognized keyword wins
TYPE_PATTERNS = [
    re.compile(r"(?:TIMESTAMP|TIME)\s*(?:\(\s*\d+\s*\)\s*)?WITH(?:OUT)?\s+TIME\s+ZONE\b", re.I),
    re.compile(r"DOUBLE\s+PRECISION\b", re.I),
    re.compile(r"CHARACTER\s+VARYING(?:\s*\(\s*\d+\s*\))?", re.I),
    re.compile(r"\w+(?:\s*\(\s*\d+(?:\s*,\s*\d+)?\s*\))?\s*\[\s*\]", re.I),
    re.compile(r"(?:VARCHAR|CHAR|CHARACTER)\s*\(\s*\d+\s*\)", re.I),
    re.compile(r"(?:NUMERIC|DECIMAL)\s*\(\s*\d+\s*,\s*\d+\s*\)", re.I),
    re.compile(r"(?:NUMERIC|DECIMAL)\s*\(\s*\d+\s*\)", re.I),
    re.compile(r"\w+\s*\(\s*\d+\s*\)", re.I),
    re.compile(r"\w+", re.I),
]

# Array suffix after any base type, including multi-word ones
ARRAY_SUFFIX_PATTERN = re.compile(r"\s*\[\s*\]")

NOT_NULL_PATTERN = re.compile(r"\bNOT\s+NULL\b", re.I)
UNIQUE_PATTERN = re.compile(r"\bUNIQUE\b(?!\s*\()", re.I)
DEFAULT_PATTERN = re.compile(r"\bDEFAULT\b", re.I)
REFERENCES_PATTERN = re.compile(
    r'\bREFERENCES\s+([\w."]+)\s*\(\s*"?(\w+)"?\s*\)', re.I
)

# Keywords that end a DEFAULT expression when seen at depth 0
DEFAULT_TERMINATORS = re.compile(
    r"(NOT\s+NULL|NULL|UNIQUE|REFERENCES|CHECK|PRIMARY|FOREIGN|CONSTRAINT|"
    r"COLLATE|GENERATED)\b",
    re.I,
)

NOW_PATTERN = re.compile(r"NOW\s*\(\s*\)|CURRENT_TIMESTAMP(?:\s*\(\s*\))?", re.I)
QUOTED_LITERAL_PATTERN = re.compile(r"'((?:[^']|'')*)'", re.S)


def strip_comments(text: str) -> str:
    """Remove ``--`` and ``/* */`` comments, leaving string literals intact."""
    out = []
    i = 0
    quote = None
    n = len(text)

    while i < n:
        ch = text[i]

        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue

        if ch in ("'", '"'):
            quote = ch
            out.append(ch)
            i += 1
        elif text.startswith("--", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end == -1 else end + 2
            out.append(" ")
        else:
            out.append(ch)
            i += 1

    return "".join(out)


def mask_string_literals(text: str) -> str:
    """Replace the contents of single-quoted literals with ``_``.

    The result has the same length as the input so offsets found in the
    masked copy apply to the original text.
    """
    out = list(text)
    i = 0
    n = len(text)
    in_string = False

    while i < n:
        ch = text[i]
        if in_string:
            if ch == "\\" and i + 1 < n:
                out[i] = out[i + 1] = "_"
                i += 2
                continue
            if ch == "'":
                in_string = False
            else:
                out[i] = "_"
        elif ch == "'":
            in_string = True
        i += 1

    return "".join(out)


def find_closing_paren(text: str, open_index: int) -> Optional[int]:
    """Index of the parenthesis matching ``text[open_index]``, or None."""
    depth = 0
    quote = None
    i = open_index

    while i < len(text):
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
        i += 1

    return None


def split_clauses(body: str) -> List[str]:
    """Split a column list on commas outside brackets and strings."""
    clauses = []
    depth = 0
    quote = None
    start = 0
    i = 0

    while i < len(body):
        ch = body[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch in "([":
            depth += 1
        elif ch in ")]":
            depth -= 1
        elif ch == "," and depth == 0:
            clauses.append(body[start:i])
            start = i + 1
        i += 1

    clauses.append(body[start:])
    return [clause.strip() for clause in clauses if clause.strip()]


def canonical_type(raw: str) -> str:
    """Upper-case a type and collapse its whitespace: ``numeric(10, 2)`` -> ``NUMERIC(10,2)``."""
    collapsed = re.sub(r"\s+", " ", raw.strip().upper())
    return re.sub(r"\s*([(),\[\]])\s*", r"\1", collapsed)


def normalize_default(raw: Optional[str]) -> Optional[str]:
    """Normalize a DEFAULT expression; ``None`` means no default."""
    if raw is None:
        return None
    value = raw.strip()
    if not value or value.upper() == "NULL":
        return None
    if NOW_PATTERN.fullmatch(value):
        return "NOW()"
    if value.upper() in ("TRUE", "FALSE"):
        return value.upper()
    literal = QUOTED_LITERAL_PATTERN.fullmatch(value)
    if literal:
        return literal.group(1).replace("''", "'")
    return value


@dataclass
class ParsedTable:
    """Columns recovered from one CREATE TABLE statement."""

    name: str
    columns: List[ColumnDefinition] = field(default_factory=list)
    source: Optional[str] = None


class DDLParser:
    """Extracts column definitions from CREATE TABLE statements."""

    def __init__(self) -> None:
        self.warnings: List[ParseWarning] = []

    def _warn(self, message: str, source: Optional[str]) -> None:
        warning = ParseWarning(message, source)
        self.warnings.append(warning)
        logger.warning(str(warning))

    def find_statements(self, text: str, source: Optional[str] = None) -> List[Tuple[str, str]]:
        """Locate CREATE TABLE statements; returns ``(table, column_list)`` pairs."""
        masked = mask_string_literals(text)
        statements = []
        position = 0

        for match in CREATE_TABLE_PATTERN.finditer(masked):
            if match.start() < position:
                continue

            table = match.group(2).lower()
            open_index = match.end() - 1
            close_index = find_closing_paren(text, open_index)
            if close_index is None:
                self._warn(f"Unbalanced parentheses in CREATE TABLE {table}", source)
                continue

            if not is_valid_identifier(table):
                self._warn(f"Invalid table name: {table}", source)
            else:
                statements.append((table, text[open_index + 1:close_index]))
            position = close_index + 1

        return statements

    def resolve_type(self, text: str) -> Optional[Tuple[str, int]]:
        """Match a column type at the start of ``text``; returns ``(type, length)``."""
        for pattern in TYPE_PATTERNS:
            match = pattern.match(text)
            if match and type_keyword(match.group(0)) in RECOGNIZED_TYPES:
                end = match.end()
                suffix = ARRAY_SUFFIX_PATTERN.match(text, end)
                if suffix:
                    end = suffix.end()
                return canonical_type(text[:end]), end
        return None

    def _extract_default(self, rest: str, masked: str) -> Tuple[Optional[str], bool]:
        """Default expression and whether it was a quoted string literal."""
        match = DEFAULT_PATTERN.search(masked)
        if not match:
            return None, False

        start = match.end()
        while start < len(masked) and masked[start].isspace():
            start += 1

        depth = 0
        end = len(masked)
        for i in range(start, len(masked)):
            ch = masked[i]
            if ch in "([":
                depth += 1
            elif ch in ")]":
                depth -= 1
            elif (
                depth == 0
                and (i == 0 or not (masked[i - 1].isalnum() or masked[i - 1] == "_"))
                and DEFAULT_TERMINATORS.match(masked, i)
            ):
                end = i
                break

        raw = rest[start:end].strip()
        default = normalize_default(raw)
        is_literal = default is not None and QUOTED_LITERAL_PATTERN.fullmatch(raw) is not None
        return default, is_literal

    def parse_column(self, clause: str, source: Optional[str] = None) -> Optional[ColumnDefinition]:
        """Parse a single column clause; returns None if it is skipped."""
        name_match = re.match(r'\s*(?:"([^"]+)"|(\w+))', clause)
        if not name_match:
            self._warn(f"Cannot read column name from: {clause[:60]}", source)
            return None

        name = (name_match.group(1) or name_match.group(2)).lower()
        if not is_valid_column_name(name):
            self._warn(f"Skipping invalid column name: {name}", source)
            return None

        offset = name_match.end()
        while offset < len(clause) and clause[offset].isspace():
            offset += 1
        rest = clause[offset:]

        resolved = self.resolve_type(rest)
        if resolved is None:
            self._warn(f"Unrecognized type for column {name}: {rest[:40]}", source)
            return None
        sql_type, type_end = resolved

        rest = rest[type_end:]
        masked = mask_string_literals(rest)

        references = None
        ref_match = REFERENCES_PATTERN.search(masked)
        if ref_match:
            ref_table = ref_match.group(1).replace('"', "").split(".")[-1].lower()
            references = ForeignKeyReference(ref_table, ref_match.group(2).lower())

        default, default_is_literal = self._extract_default(rest, masked)

        return ColumnDefinition(
            name=name,
            type=sql_type,
            nullable=NOT_NULL_PATTERN.search(masked) is None,
            default=default,
            unique=UNIQUE_PATTERN.search(masked) is not None,
            references=references,
            default_is_literal=default_is_literal,
        )

    def parse(self, text: str, source: Optional[str] = None) -> List[ParsedTable]:
        """Parse every CREATE TABLE statement in ``text``."""
        tables = []
        for table, body in self.find_statements(strip_comments(text), source):
            parsed = ParsedTable(name=table, source=source)
            for clause in split_clauses(body):
                if TABLE_CONSTRAINT_PATTERN.match(clause):
                    continue
                column = self.parse_column(clause, source)
                if column is not None:
                    parsed.columns.append(column)

            if not parsed.columns:
                self._warn(f"No columns parsed for table {table}", source)
                continue
            tables.append(parsed)

        logger.debug(
            f"Parsed {len(tables)} tables from {source or 'text'}"
        )
        return tables

    def parse_source(self, source: SchemaSource) -> List[ParsedTable]:
        return self.parse(source.sql, source=source.name)

    def build_expected_schema(self, sources: Iterable[SchemaSource]) -> ExpectedSchema:
        """Parse sources in order and merge them; the first definition of a column wins."""
        expected = ExpectedSchema()
        for source in sources:
            for parsed in self.parse_source(source):
                ignored = expected.merge(parsed.name, parsed.columns)
                for column in ignored:
                    logger.debug(
                        f"Ignoring duplicate definition of {parsed.name}.{column} "
                        f"from {source.name}"
                    )
        logger.info(
            f"Expected schema: {len(expected)} tables, {expected.column_count} columns"
        )
        return expected
