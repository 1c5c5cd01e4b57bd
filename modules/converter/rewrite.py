"""
Nextcloud Plugin Update Management System - MySQL Dump Rewrite
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
Textual rewrite of a mysqldump script into PostgreSQL syntax.

The rewrite is a pipeline of small line rules. Every rule takes one line plus
the shared RewriteContext and returns the rewritten line, or None to drop it.
Rules that touch SQL keywords only ever see the code between literals: string
literals ('...') and backtick identifiers (`...`) are split out first, so a
user called 'int' or a file named 'LOCK TABLES.txt' survives untouched.

mysqldump escapes newlines inside strings, so every literal is expected to
start and end on the same line.

Dropped index definitions are not lost for good: ``occ db:add-missing-indices``
recreates Nextcloud's indices after the import.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, List, Optional, Tuple
from nextcloud_updates.utils.index import log_message

CODE = "code"
STRING = "string"
IDENTIFIER = "identifier"

_TOKEN = re.compile(r"'(?:[^'\\]|\\.|'')*'|`(?:[^`]|``)*`")

# Words PostgreSQL refuses (or reinterprets) as bare column/table names
RESERVED_WORDS = frozenset({
    "all", "analyse", "analyze", "and", "any", "array", "as", "asc", "asymmetric",
    "authorization", "binary", "both", "case", "cast", "check", "collate", "collation",
    "column", "concurrently", "constraint", "create", "cross", "current_catalog",
    "current_date", "current_role", "current_schema", "current_time",
    "current_timestamp", "current_user", "default", "deferrable", "desc", "distinct",
    "do", "else", "end", "except", "false", "fetch", "for", "foreign", "freeze", "from",
    "full", "grant", "group", "having", "ilike", "in", "initially", "inner", "intersect",
    "into", "is", "isnull", "join", "lateral", "leading", "left", "like", "limit",
    "localtime", "localtimestamp", "natural", "not", "notnull", "null", "offset", "on",
    "only", "or", "order", "outer", "overlaps", "placing", "primary", "references",
    "returning", "right", "select", "session_user", "similar", "some", "symmetric",
    "system_user", "table", "tablesample", "then", "to", "trailing", "true", "union",
    "unique", "user", "using", "variadic", "verbose", "when", "where", "window", "with",
})

_SAFE_IDENTIFIER = re.compile(r"[a-z_][a-z0-9_]*")

_DIRECTIVES = re.compile(
    r"^(?:--|/\*!.*\*/\s*;?\s*$|/\*M!.*\*/\s*;?\s*$|SET\s|LOCK\s+TABLES|UNLOCK\s+TABLES)",
    re.IGNORECASE,
)
_CREATE_TABLE = re.compile(r"^CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?`((?:[^`]|``)+)`\s*\(\s*$", re.IGNORECASE)
_INDEX_DEFINITION = re.compile(r"^\s*(?:UNIQUE\s+|FULLTEXT\s+|SPATIAL\s+)?(?:KEY|INDEX)\s", re.IGNORECASE)
_TABLE_OPTIONS = re.compile(r"^\)\s*(?:ENGINE|DEFAULT\s+CHARSET|CHARSET|COLLATE|AUTO_INCREMENT|ROW_FORMAT)\b.*;\s*$",
                            re.IGNORECASE)
_AUTO_INCREMENT = re.compile(
    r"^(?P<indent>\s*)(?P<column>`(?:[^`]|``)+`)\s+(?P<type>tinyint|smallint|mediumint|int|integer|bigint)"
    r"(?:\(\d+\))?\s+NOT\s+NULL\s+AUTO_INCREMENT\b",
    re.IGNORECASE,
)

_COLUMN_CLAUSES = [
    re.compile(r"\s+CHARACTER\s+SET\s+\w+", re.IGNORECASE),
    re.compile(r"\s+COLLATE\s+\w+", re.IGNORECASE),
    re.compile(r"\s+ON\s+UPDATE\s+CURRENT_TIMESTAMP(?:\(\d*\))?", re.IGNORECASE),
    re.compile(r"\s+UNSIGNED\b", re.IGNORECASE),
    re.compile(r"\s+ZEROFILL\b", re.IGNORECASE),
]

SERIAL_TYPES = {
    "tinyint": "SMALLSERIAL",
    "smallint": "SMALLSERIAL",
    "mediumint": "SERIAL",
    "int": "SERIAL",
    "integer": "SERIAL",
    "bigint": "BIGSERIAL",
}

TYPE_MAP: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\btinyint(?:\(\d+\))?(?=\W|$)", re.IGNORECASE), "SMALLINT"),
    (re.compile(r"\bsmallint\(\d+\)", re.IGNORECASE), "SMALLINT"),
    (re.compile(r"\bmediumint(?:\(\d+\))?(?=\W|$)", re.IGNORECASE), "INTEGER"),
    (re.compile(r"\bbigint\(\d+\)", re.IGNORECASE), "BIGINT"),
    (re.compile(r"\bint(?:\(\d+\))?(?=\W|$)", re.IGNORECASE), "INTEGER"),
    (re.compile(r"\bdouble(?:\(\d+,\s*\d+\))?(?!\s+precision)(?=\W|$)", re.IGNORECASE), "DOUBLE PRECISION"),
    (re.compile(r"\bfloat(?:\(\d+(?:,\s*\d+)?\))?(?=\W|$)", re.IGNORECASE), "REAL"),
    (re.compile(r"\bdatetime(?:\(\d+\))?(?=\W|$)", re.IGNORECASE), "TIMESTAMP"),
    (re.compile(r"\b(?:tiny|medium|long)text(?=\W|$)", re.IGNORECASE), "TEXT"),
    (re.compile(r"\b(?:tiny|medium|long)?blob(?=\W|$)", re.IGNORECASE), "BYTEA"),
    (re.compile(r"\b(?:var)?binary\(\d+\)", re.IGNORECASE), "BYTEA"),
]

_HEX_LITERAL = re.compile(r"\b0x([0-9A-Fa-f]+)\b")
_WHITESPACE = re.compile(r"[ \t]+")


@dataclass
class RewriteContext:
    """State carried from line to line while rewriting one dump."""
    table: Optional[str] = None
    in_create_table: bool = False
    serial_columns: List[Tuple[str, str]] = field(default_factory=list)


Rule = Callable[[str, RewriteContext], Optional[str]]


def segments(line: str) -> List[Tuple[str, str]]:
    """Split a line into (kind, text) pieces: code, string literals and identifiers."""
    pieces = []
    position = 0
    for match in _TOKEN.finditer(line):
        if match.start() > position:
            pieces.append((CODE, line[position:match.start()]))
        token = match.group(0)
        pieces.append((STRING if token.startswith("'") else IDENTIFIER, token))
        position = match.end()
    if position < len(line):
        pieces.append((CODE, line[position:]))
    return pieces


def map_segments(line: str, kind: str, transform: Callable[[str], str]) -> str:
    return "".join(transform(text) if piece == kind else text for piece, text in segments(line))


def unquote_identifier(token: str) -> str:
    return token[1:-1].replace("``", "`")


def quote_identifier(name: str) -> str:
    """Bare name when PostgreSQL would read it back unchanged, double-quoted otherwise."""
    if _SAFE_IDENTIFIER.fullmatch(name) and name not in RESERVED_WORDS:
        return name
    return '"' + name.replace('"', '""') + '"'


def track_table(line: str, ctx: RewriteContext) -> Optional[str]:
    match = _CREATE_TABLE.match(line)
    if match:
        ctx.table = unquote_identifier(f"`{match.group(1)}`")
        ctx.in_create_table = True
    elif ctx.in_create_table and line.lstrip().startswith(")"):
        ctx.in_create_table = False
    return line


def drop_directives(line: str, ctx: RewriteContext) -> Optional[str]:
    """Comments, conditional /*!...*/ statements, SET and table locking."""
    if not line.strip() or _DIRECTIVES.match(line.lstrip()):
        return None
    return line


def drop_index_definitions(line: str, ctx: RewriteContext) -> Optional[str]:
    if ctx.in_create_table and _INDEX_DEFINITION.match(line):
        return None
    return line


def strip_table_options(line: str, ctx: RewriteContext) -> Optional[str]:
    if _TABLE_OPTIONS.match(line.strip()):
        return ");"
    return line


def strip_column_clauses(line: str, ctx: RewriteContext) -> Optional[str]:
    if not ctx.in_create_table:
        return line

    def strip(code: str) -> str:
        for pattern in _COLUMN_CLAUSES:
            code = pattern.sub("", code)
        return code

    return map_segments(line, CODE, strip)


def normalize_whitespace(line: str, ctx: RewriteContext) -> Optional[str]:
    """Collapse runs of blanks between tokens, keeping the indentation."""
    body = line.lstrip()
    indent = line[:len(line) - len(body)]
    return indent + map_segments(body, CODE, lambda code: _WHITESPACE.sub(" ", code)).rstrip()


def convert_auto_increment(line: str, ctx: RewriteContext) -> Optional[str]:
    if not ctx.in_create_table:
        return line
    match = _AUTO_INCREMENT.match(line)
    if not match:
        return line
    column = unquote_identifier(match.group("column"))
    serial = SERIAL_TYPES[match.group("type").lower()]
    if ctx.table:
        ctx.serial_columns.append((ctx.table, column))
    return f"{match.group('indent')}{match.group('column')} {serial}{line[match.end():]}"


def map_types(line: str, ctx: RewriteContext) -> Optional[str]:
    if not ctx.in_create_table:
        return line

    def apply(code: str) -> str:
        for pattern, replacement in TYPE_MAP:
            code = pattern.sub(replacement, code)
        return code

    return map_segments(line, CODE, apply)


def escape_strings(line: str, ctx: RewriteContext) -> Optional[str]:
    """MySQL backslash escapes only mean something inside PostgreSQL E'...' literals."""
    return map_segments(line, STRING, lambda literal: f"E{literal}" if "\\" in literal else literal)


def convert_hex_literals(line: str, ctx: RewriteContext) -> Optional[str]:
    """0xCAFE from --hex-blob becomes the bytea hex form '\\xcafe'."""
    return map_segments(line, CODE, lambda code: _HEX_LITERAL.sub(lambda m: f"'\\x{m.group(1).lower()}'", code))


def quote_identifiers(line: str, ctx: RewriteContext) -> Optional[str]:
    return map_segments(line, IDENTIFIER, lambda token: quote_identifier(unquote_identifier(token)))


RULES: List[Rule] = [
    track_table,
    drop_directives,
    drop_index_definitions,
    strip_table_options,
    strip_column_clauses,
    normalize_whitespace,
    convert_auto_increment,
    map_types,
    escape_strings,
    convert_hex_literals,
    quote_identifiers,
]


def rewrite_line(line: str, ctx: RewriteContext, rules: Iterable[Rule] = RULES) -> Optional[str]:
    for rule in rules:
        line = rule(line, ctx)
        if line is None:
            return None
    return line


def sequence_resets(ctx: RewriteContext) -> List[str]:
    """setval statements moving each SERIAL sequence past the imported rows."""
    statements = []
    for table, column in ctx.serial_columns:
        quoted_table = quote_identifier(table)
        quoted_column = quote_identifier(column)
        # the column argument is taken verbatim, the table argument is parsed as an identifier
        table_literal = quoted_table.replace("'", "''")
        column_literal = column.replace("'", "''")
        statements.append(
            f"SELECT setval(pg_get_serial_sequence('{table_literal}', '{column_literal}'), "
            f"COALESCE(MAX({quoted_column}), 1), MAX({quoted_column}) IS NOT NULL) FROM {quoted_table};"
        )
    return statements


def rewrite_lines(lines: Iterable[str], rules: Iterable[Rule] = RULES,
                  ctx: Optional[RewriteContext] = None) -> Iterator[str]:
    """
    Rewrite a dump line by line.

    A comma left dangling before a closing parenthesis (because the index
    definitions after it were dropped) is removed, and sequence resets for
    every SERIAL column are appended at the end.
    """
    ctx = ctx if ctx is not None else RewriteContext()
    rules = list(rules)
    previous = None
    for raw in lines:
        line = rewrite_line(raw.rstrip("\r\n"), ctx, rules)
        if line is None:
            continue
        if previous is not None:
            if line.lstrip().startswith(")"):
                previous = previous.rstrip().rstrip(",")
            yield previous
        previous = line
    if previous is not None:
        yield previous
    yield from sequence_resets(ctx)


def _decode_lines(infile, bad_lines: List[int]) -> Iterator[str]:
    for number, raw in enumerate(infile, 1):
        try:
            yield raw.decode('utf-8')
        except UnicodeDecodeError:
            bad_lines.append(number)
            yield raw.decode('utf-8', errors='replace')


def rewrite_dump(source: str, target: str) -> int:
    """
    Rewrite the mysqldump at ``source`` into ``target``.

    Bytes that are not valid UTF-8 become U+FFFD; the affected lines are
    reported in the log.

    Returns:
        int: Number of lines written
    """
    written = 0
    bad_lines: List[int] = []
    with open(source, 'rb') as infile, open(target, 'w', encoding='utf-8') as outfile:
        for line in rewrite_lines(_decode_lines(infile, bad_lines)):
            outfile.write(line + "\n")
            written += 1
    if bad_lines:
        log_message(f"{len(bad_lines)} line(s) of {source} held invalid UTF-8 and were imported with "
                    f"replacement characters (first at line {bad_lines[0]})", "WARNING")
    return written
