import sys
import unittest
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from src.query_builder import (  # noqa: E402
    SelectQuery,
    WhereClause,
    build_count,
    build_delete,
    build_insert,
    build_select,
    build_update,
    build_where,
    require_identifier,
    safe_name,
)


class TestNames(unittest.TestCase):
    def test_safe_name_takes_first_identifier_run(self):
        self.assertEqual(safe_name("users"), "users")
        self.assertEqual(safe_name("  my_table "), "my_table")
        self.assertEqual(safe_name("users; DROP TABLE x"), "users")
        self.assertIsNone(safe_name(""))
        self.assertIsNone(safe_name(None))
        self.assertIsNone(safe_name(";--"))

    def test_require_identifier(self):
        self.assertEqual(require_identifier("parent_id", "condition"), "parent_id")
        for bad in ("a b", "1abc", "name;", "", None):
            with self.subTest(name=bad):
                with self.assertRaisesRegex(ValueError, "Invalid condition column"):
                    require_identifier(bad, "condition")


class TestWhere(unittest.TestCase):
    def test_empty(self):
        self.assertEqual(build_where(None), ("", []))
        self.assertEqual(build_where({}), ("", []))
        self.assertEqual(build_where(WhereClause("  ")), ("", []))

    def test_equalities(self):
        self.assertEqual(
            build_where({"name": "John", "age": 30}),
            (" WHERE name = ? AND age = ?", ["John", 30]),
        )

    def test_none_renders_is_null(self):
        self.assertEqual(
            build_where({"parent_id": None, "kind": "x"}),
            (" WHERE parent_id IS NULL AND kind = ?", ["x"]),
        )

    def test_raw_clause(self):
        clause = WhereClause("name LIKE ? OR surname LIKE ?", ("J%", "J%"))
        self.assertEqual(build_where(clause), (" WHERE name LIKE ? OR surname LIKE ?", ["J%", "J%"]))
        self.assertEqual(
            build_where({"clause": "age > ?", "params": [18]}),
            (" WHERE age > ?", [18]),
        )

    def test_invalid_inputs(self):
        with self.assertRaisesRegex(ValueError, "Invalid condition column"):
            build_where({"name = 1 OR 1": 1})
        with self.assertRaises(TypeError):
            build_where(["name", "John"])


class TestSelect(unittest.TestCase):
    def test_minimal(self):
        self.assertEqual(build_select(SelectQuery("users")), ("SELECT * FROM users", []))

    def test_all_parts(self):
        query = SelectQuery(
            table="users",
            fields=["id", "name"],
            where={"active": 1},
            order="name desc",
            limit=10,
            offset=20,
        )
        self.assertEqual(
            build_select(query),
            ("SELECT id, name FROM users WHERE active = ? ORDER BY name desc LIMIT ? OFFSET ?", [1, 10, 20]),
        )

    def test_fields_string_passthrough(self):
        sql_text, _ = build_select(SelectQuery("users", fields="count(*) AS n"))
        self.assertEqual(sql_text, "SELECT count(*) AS n FROM users")
        sql_text, _ = build_select(SelectQuery("users", fields=[]))
        self.assertEqual(sql_text, "SELECT * FROM users")

    def test_offset_without_limit(self):
        self.assertEqual(
            build_select(SelectQuery("users", offset=5)),
            ("SELECT * FROM users LIMIT -1 OFFSET ?", [5]),
        )

    def test_zero_limit_is_kept(self):
        self.assertEqual(build_select(SelectQuery("users", limit=0)), ("SELECT * FROM users LIMIT ?", [0]))

    def test_bad_paging(self):
        for kwargs in ({"limit": -1}, {"limit": True}, {"offset": "5"}, {"limit": 1.5}):
            with self.subTest(kwargs=kwargs):
                with self.assertRaisesRegex(ValueError, "non-negative integer"):
                    build_select(SelectQuery("users", **kwargs))

    def test_missing_table(self):
        for table in ("", ";", None):
            with self.subTest(table=table):
                with self.assertRaisesRegex(ValueError, "Table is not specified"):
                    build_select(SelectQuery(table))

    def test_table_name_is_sanitised(self):
        sql_text, _ = build_select(SelectQuery("users; DROP TABLE users"))
        self.assertEqual(sql_text, "SELECT * FROM users")

    def test_from_dict(self):
        query = SelectQuery.from_dict({"table": "users", "where": {"id": 1}, "limit": 1})
        self.assertEqual(query, SelectQuery("users", where={"id": 1}, limit=1))
        with self.assertRaisesRegex(ValueError, "Unknown select keys"):
            SelectQuery.from_dict({"table": "users", "group": "kind"})


class TestWrites(unittest.TestCase):
    def test_insert(self):
        self.assertEqual(
            build_insert("users", {"name": "a", "age": 3}),
            ("INSERT INTO users (name, age) VALUES (?, ?)", ["a", 3]),
        )
        self.assertEqual(build_insert("users", {}), ("INSERT INTO users DEFAULT VALUES", []))
        self.assertEqual(build_insert("users", None), ("INSERT INTO users DEFAULT VALUES", []))
        with self.assertRaisesRegex(ValueError, "Invalid insert column"):
            build_insert("users", {"bad col": 1})

    def test_update(self):
        self.assertEqual(
            build_update("users", {"id": 1}, {"name": "b", "age": 4}),
            ("UPDATE users SET name = ?, age = ? WHERE id = ?", ["b", 4, 1]),
        )
        self.assertEqual(
            build_update("users", None, {"name": "b"}),
            ("UPDATE users SET name = ?", ["b"]),
        )
        with self.assertRaisesRegex(ValueError, "empty"):
            build_update("users", {"id": 1}, {})

    def test_delete_and_count(self):
        self.assertEqual(
            build_delete("users", WhereClause("age < ?", (18,))),
            ("DELETE FROM users WHERE age < ?", [18]),
        )
        self.assertEqual(build_delete("users"), ("DELETE FROM users", []))
        self.assertEqual(
            build_count("users", {"kind": "x"}),
            ("SELECT COUNT(*) AS cnt FROM users WHERE kind = ?", ["x"]),
        )
        with self.assertRaisesRegex(ValueError, "Table is not specified"):
            build_delete("", {"id": 1})


if __name__ == "__main__":
    unittest.main()
