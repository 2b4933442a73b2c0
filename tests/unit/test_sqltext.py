"""Unit tests — SQL text scanning, read-only checks and statement splitting."""

from __future__ import annotations

import pytest

from taphost.sqltext import (
    check_read_only,
    code_only,
    cte_names,
    identifiers,
    is_ddl,
    keywords,
    rewrite_positional,
    segments,
    split_statements,
    table_references,
    unquote_identifier,
)


@pytest.mark.unit
class TestSegments:
    def test_segments_cover_the_text(self) -> None:
        sql = "SELECT 'a''b', \"col\" -- note\nFROM t /* x */ WHERE $tag$drop$tag$ = 1"
        assert "".join(text for _, text in segments(sql)) == sql

    def test_literals_and_comments_are_blanked(self) -> None:
        text = code_only("SELECT 'drop table' FROM t -- delete\n")
        assert "drop" not in text.lower()
        assert "delete" not in text.lower()

    def test_keywords_are_upper_cased(self) -> None:
        assert keywords("select id from item") == ["SELECT", "ID", "FROM", "ITEM"]


@pytest.mark.unit
class TestCheckReadOnly:
    @pytest.mark.parametrize(
        "sql",
        [
            "SELECT * FROM item",
            "select id from item where title = 'insert into x';",
            "WITH recent AS (SELECT id FROM item) SELECT * FROM recent",
            "SELECT 1 -- update everything\n",
            "SELECT replace(title, 'a', 'b') FROM item",
            "SELECT REPLACE (title, 'a', 'b') AS t FROM item",
        ],
    )
    def test_accepts_single_reads(self, sql: str) -> None:
        assert check_read_only(sql) == (True, "")

    @pytest.mark.parametrize(
        "sql, reason",
        [
            ("", "empty statement"),
            ("SELECT 1; SELECT 2", "multiple statements"),
            ("UPDATE item SET x = 1", "statement must start with SELECT or WITH"),
            ("SELECT * INTO backup FROM item", "keyword INTO not allowed"),
            ("WITH d AS (DELETE FROM item RETURNING *) SELECT * FROM d", "keyword DELETE not allowed"),
        ],
    )
    def test_rejects_everything_else(self, sql: str, reason: str) -> None:
        assert check_read_only(sql) == (False, reason)


@pytest.mark.unit
class TestDdl:
    @pytest.mark.parametrize("sql", ["CREATE TABLE x (id int)", "drop table item", "SELECT 1; ALTER TABLE t ADD c int"])
    def test_detects_ddl(self, sql: str) -> None:
        assert is_ddl(sql)

    def test_ignores_ddl_words_in_literals(self) -> None:
        assert not is_ddl("SELECT * FROM item WHERE title = 'drop table'")

    def test_comment_column_is_not_ddl(self) -> None:
        assert not is_ddl("SELECT comment FROM item")


@pytest.mark.unit
class TestSplitStatements:
    def test_splits_on_top_level_semicolons(self) -> None:
        script = "CREATE TABLE a (x text DEFAULT ';');\n-- comment;\nINSERT INTO a VALUES ('1;2');\n"
        assert split_statements(script) == [
            "CREATE TABLE a (x text DEFAULT ';')",
            "-- comment;\nINSERT INTO a VALUES ('1;2')",
        ]

    def test_drops_comment_only_statements(self) -> None:
        assert split_statements("-- nothing here\n;  ;") == []


@pytest.mark.unit
def test_rewrite_positional_skips_literals() -> None:
    text, highest = rewrite_positional("SELECT * FROM t WHERE a = $1 AND b = '$2' AND c = $3")
    assert text == "SELECT * FROM t WHERE a = :p1 AND b = '$2' AND c = :p3"
    assert highest == 3


@pytest.mark.unit
def test_rewrite_positional_escapes_colons_outside_code() -> None:
    text, _ = rewrite_positional("SELECT ':a' AS \"x:y\" FROM t WHERE id = :id -- at :noon\n")
    assert text == "SELECT '\\:a' AS \"x\\:y\" FROM t WHERE id = :id -- at \\:noon\n"


@pytest.mark.unit
class TestIdentifiers:
    def test_unquote_identifier(self) -> None:
        assert unquote_identifier('"plugin_status"') == "plugin_status"
        assert unquote_identifier('"a""b"') == 'a"b'
        assert unquote_identifier("`tbl``x`") == "tbl`x"
        assert unquote_identifier('"open') == "open"

    def test_identifiers_include_quoted_names(self) -> None:
        names = identifiers("SELECT \"Title\", `Body` FROM item WHERE x = 'secret'")
        assert names == {"select", "title", "body", "from", "item", "where", "x"}


@pytest.mark.unit
class TestTableReferences:
    @pytest.mark.parametrize(
        "sql, expected",
        [
            ("SELECT * FROM item", ["item"]),
            ("SELECT * FROM item, secret", ["item", "secret"]),
            ("SELECT * FROM item AS i, secret s WHERE i.id = s.id", ["item", "secret"]),
            ('SELECT * FROM "Item"', ["item"]),
            ("SELECT * FROM main.item", ["item"]),
            ("SELECT * FROM a LEFT OUTER JOIN b ON a.id = b.id, c", ["a", "b", "c"]),
            ("SELECT * FROM a WHERE id IN (SELECT id FROM b) ORDER BY x, y", ["a", "b"]),
            ("SELECT * FROM (SELECT 1 FROM b) AS s, c", ["b", "c"]),
            ("SELECT a, b FROM t GROUP BY a, b", ["t"]),
            ("SELECT x FROM a UNION SELECT y FROM b", ["a", "b"]),
            ("SELECT 'FROM secret' AS t", []),
        ],
    )
    def test_references(self, sql: str, expected: list[str]) -> None:
        assert table_references(sql) == expected

    def test_cte_names(self) -> None:
        sql = "WITH a AS (SELECT 1), b (x) AS MATERIALIZED (SELECT 2) SELECT * FROM a, b"
        assert cte_names(sql) == {"a", "b"}
        assert cte_names("SELECT CAST(x AS INTEGER) FROM t") == set()
