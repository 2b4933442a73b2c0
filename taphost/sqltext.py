"""SQL text helpers — lexical scanning without a full parser.

Splits SQL into code, string literal, quoted identifier and comment
segments so keyword checks and statement splitting never look inside
literals or comments.

Used by the capability bridge to re-validate the raw read-only escape hatch
and reject DDL, and by the migration runner to split migration files into
statements.

Usage::

    from taphost.sqltext import check_read_only, split_statements

    ok, reason = check_read_only("SELECT * FROM item WHERE title = 'drop'")
    # → (True, "")
"""

from __future__ import annotations

import re
from typing import Iterator

DDL_KEYWORDS = frozenset({"CREATE", "DROP", "ALTER", "TRUNCATE", "GRANT", "REVOKE"})

WRITE_KEYWORDS = frozenset(
    {
        "INSERT", "UPDATE", "DELETE", "MERGE", "UPSERT", "INTO",
        "COPY", "CALL", "EXEC", "EXECUTE", "DO", "LOCK", "RESET",
        "ATTACH", "DETACH", "PRAGMA", "VACUUM", "ANALYZE", "REINDEX",
        "LISTEN", "NOTIFY", "LOAD", "IMPORT", "EXPORT", "HANDLER",
    }
)

READ_ONLY_LEADERS = frozenset({"SELECT", "WITH"})

# Words closing a FROM list.  ON and USING only end the current table
# reference: a comma after a join condition still introduces a table.
_FROM_LIST_END = frozenset(
    {
        "WHERE", "GROUP", "ORDER", "HAVING", "LIMIT", "OFFSET", "UNION",
        "EXCEPT", "INTERSECT", "WINDOW", "FETCH", "FOR", "RETURNING", "SELECT",
    }
)
_REF_END = frozenset({"ON", "USING", "INNER", "LEFT", "RIGHT", "FULL", "CROSS", "NATURAL", "OUTER"})
_REF_PREFIX = frozenset({"LATERAL", "ONLY"})

_WORD = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_DOLLAR_TAG = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)?\$")
_POSITIONAL = re.compile(r"\$(\d+)")
_TOKEN = re.compile(r"[A-Za-z_][A-Za-z0-9_$]*|[(),.;]")

CODE = "code"
STRING = "string"
IDENT = "ident"
COMMENT = "comment"

WORD = "word"
NAME = "name"
PUNCT = "punct"


def segments(sql: str) -> Iterator[tuple[str, str]]:
    """Yield ``(kind, text)`` pairs covering *sql* exactly.

    Unterminated literals and comments run to the end of the text.
    """
    i = 0
    n = len(sql)
    start = 0
    while i < n:
        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < n else ""
        if ch == "-" and nxt == "-":
            end = sql.find("\n", i)
            end = n if end == -1 else end + 1
            kind = COMMENT
        elif ch == "/" and nxt == "*":
            end = sql.find("*/", i + 2)
            end = n if end == -1 else end + 2
            kind = COMMENT
        elif ch == "'":
            end = _quoted_end(sql, i, "'")
            kind = STRING
        elif ch == '"' or ch == "`":
            end = _quoted_end(sql, i, ch)
            kind = IDENT
        elif ch == "$" and (m := _DOLLAR_TAG.match(sql, i)):
            tag = m.group(0)
            close = sql.find(tag, m.end())
            end = n if close == -1 else close + len(tag)
            kind = STRING
        else:
            i += 1
            continue
        if start < i:
            yield CODE, sql[start:i]
        yield kind, sql[i:end]
        i = start = end
    if start < n:
        yield CODE, sql[start:]


def _quoted_end(sql: str, i: int, quote: str) -> int:
    j = i + 1
    n = len(sql)
    while j < n:
        if sql[j] == quote:
            # Doubled quote is an escaped quote.
            if j + 1 < n and sql[j + 1] == quote:
                j += 2
                continue
            return j + 1
        j += 1
    return n


def code_only(sql: str) -> str:
    """Return *sql* with literals blanked and comments removed."""
    parts: list[str] = []
    for kind, text in segments(sql):
        if kind == CODE:
            parts.append(text)
        elif kind in (STRING, IDENT):
            parts.append(" ? ")
        else:
            parts.append(" ")
    return "".join(parts)


def keywords(sql: str) -> list[str]:
    """Upper-cased bare words of *sql*, outside literals and comments."""
    return [w.upper() for w in _WORD.findall(code_only(sql))]


def unquote_identifier(text: str) -> str:
    """``"a""b"`` → ``a"b``; an unterminated identifier runs to the end."""
    quote = text[0]
    body = text[1:-1] if len(text) > 1 and text.endswith(quote) else text[1:]
    return body.replace(quote * 2, quote)


def tokens(sql: str) -> Iterator[tuple[str, str]]:
    """Yield ``(WORD|NAME|PUNCT, text)`` tokens outside literals and comments.

    Bare words come out as WORD, quoted identifiers unquoted as NAME.
    Numbers, operators and literals are skipped.
    """
    for kind, text in segments(sql):
        if kind == CODE:
            for m in _TOKEN.finditer(text):
                token = m.group(0)
                yield (PUNCT if token in "(),.;" else WORD), token
        elif kind == IDENT:
            yield NAME, unquote_identifier(text)


def identifiers(sql: str) -> set[str]:
    """Lower-cased bare words and quoted identifiers of *sql*."""
    return {text.lower() for kind, text in tokens(sql) if kind != PUNCT}


def table_references(sql: str) -> list[str]:
    """Lower-cased names of every table read in FROM and JOIN clauses.

    Comma lists, joins and subqueries at any depth are followed; for a
    qualified ``schema.table`` the last part is reported.  Table-valued
    functions are reported under the function name.
    """
    toks = list(tokens(sql))
    refs: list[str] = []
    open_lists: set[int] = set()
    depth = 0
    expecting = False
    i = 0
    while i < len(toks):
        kind, text = toks[i]
        if kind == PUNCT:
            if text == "(":
                depth += 1
                expecting = False
            elif text == ")":
                depth -= 1
                open_lists = {d for d in open_lists if d <= depth}
            elif text == ",":
                expecting = depth in open_lists
            i += 1
            continue

        upper = text.upper() if kind == WORD else ""
        if upper in ("FROM", "JOIN"):
            open_lists.add(depth)
            expecting = True
        elif upper in _FROM_LIST_END:
            open_lists.discard(depth)
            expecting = False
        elif upper in _REF_END:
            expecting = False
        elif expecting and upper in _REF_PREFIX:
            pass
        elif expecting:
            name = text
            while i + 2 < len(toks) and toks[i + 1] == (PUNCT, ".") and toks[i + 2][0] != PUNCT:
                i += 2
                name = toks[i][1]
            refs.append(name.lower())
            expecting = False
        i += 1
    return refs


def cte_names(sql: str) -> set[str]:
    """Lower-cased names defined as ``name [(cols)] AS [NOT] [MATERIALIZED] (``."""
    toks = list(tokens(sql))
    names: set[str] = set()
    for i, (kind, text) in enumerate(toks):
        if kind == PUNCT:
            continue
        j = i + 1
        if j < len(toks) and toks[j] == (PUNCT, "("):
            level = 0
            while j < len(toks):
                if toks[j] == (PUNCT, "("):
                    level += 1
                elif toks[j] == (PUNCT, ")"):
                    level -= 1
                    if level == 0:
                        break
                j += 1
            j += 1
        if j >= len(toks) or toks[j][0] != WORD or toks[j][1].upper() != "AS":
            continue
        j += 1
        while j < len(toks) and toks[j][0] == WORD and toks[j][1].upper() in ("NOT", "MATERIALIZED"):
            j += 1
        if j < len(toks) and toks[j] == (PUNCT, "("):
            names.add(text.lower())
    return names


def split_statements(sql: str) -> list[str]:
    """Split a script on top-level ``;`` separators.

    Statements containing only whitespace and comments are dropped.
    """
    statements: list[str] = []
    current: list[str] = []
    has_code = False
    for kind, text in segments(sql):
        if kind != CODE:
            current.append(text)
            has_code = has_code or kind != COMMENT
            continue
        pieces = text.split(";")
        for idx, piece in enumerate(pieces):
            if idx > 0:
                if has_code:
                    statements.append("".join(current).strip())
                current = []
                has_code = False
            current.append(piece)
            has_code = has_code or bool(piece.strip())
    if has_code:
        statements.append("".join(current).strip())
    return statements


def is_ddl(sql: str) -> bool:
    return any(word in DDL_KEYWORDS for word in keywords(sql))


def check_read_only(sql: str) -> tuple[bool, str]:
    """Return ``(True, "")`` when *sql* is a single read-only statement.

    Otherwise ``(False, reason)``.  The reason names the offending keyword
    only, never the query text.
    """
    body = code_only(sql).strip().rstrip(";").strip()
    if not body:
        return False, "empty statement"
    if ";" in body:
        return False, "multiple statements"
    words = [w.upper() for w in _WORD.findall(body)]
    if not words or words[0] not in READ_ONLY_LEADERS:
        return False, "statement must start with SELECT or WITH"
    for word in words:
        if word in DDL_KEYWORDS or word in WRITE_KEYWORDS:
            return False, f"keyword {word} not allowed"
    # REPLACE is a write as a statement, a string function when called.
    toks = list(tokens(sql))
    for idx, (kind, text) in enumerate(toks):
        if kind == WORD and text.upper() == "REPLACE" and toks[idx + 1 : idx + 2] != [(PUNCT, "(")]:
            return False, "keyword REPLACE not allowed"
    return True, ""


def rewrite_positional(sql: str) -> tuple[str, int]:
    """Rewrite ``$1``-style placeholders to ``:p1`` bind names.

    Colons inside literals, quoted identifiers and comments are escaped as
    ``\\:`` so ``sqlalchemy.text()`` does not read them as bind names.
    Returns the new text and the highest placeholder index seen.
    """
    highest = 0
    parts: list[str] = []

    def _sub(m: re.Match[str]) -> str:
        nonlocal highest
        idx = int(m.group(1))
        highest = max(highest, idx)
        return f":p{idx}"

    for kind, text in segments(sql):
        parts.append(_POSITIONAL.sub(_sub, text) if kind == CODE else text.replace(":", "\\:"))
    return "".join(parts), highest
