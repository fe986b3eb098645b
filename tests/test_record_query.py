import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from record_query import (
    build_count,
    build_delete,
    build_insert,
    build_search,
    build_select_page,
    build_update,
    coerce_payload,
    parse_paging,
)


FIELDS = [
    {"name": "name", "type": "string"},
    {"name": "price", "type": "number"},
    {"name": "active", "type": "boolean"},
    {"name": "launched", "type": "date"},
    {"name": "category", "type": "relation", "targetModel": "Category"},
]


class TestCoercePayload(unittest.TestCase):
    def test_safelist_drops_unknown_and_system_keys(self):
        values = coerce_payload({"name": "Desk", "id": 9, "createdAt": "x", "evil": "1"}, FIELDS)
        self.assertEqual(values, {"name": "Desk"})

    def test_type_coercion(self):
        values = coerce_payload(
            {"price": "12.5", "active": "false", "launched": "2024-05-01", "category": "3"},
            FIELDS,
        )
        self.assertEqual(values, {"price": 12.5, "active": False, "launched": "2024-05-01", "category": 3})

    def test_unparseable_and_empty_values_dropped(self):
        values = coerce_payload({"name": "", "price": "abc", "category": 1.5, "active": None}, FIELDS)
        self.assertEqual(values, {})

    def test_boolean_truthiness(self):
        self.assertEqual(coerce_payload({"active": "yes"}, FIELDS), {"active": True})
        self.assertEqual(coerce_payload({"active": 0}, FIELDS), {"active": False})
        self.assertEqual(coerce_payload({"active": "Off"}, FIELDS), {"active": False})

    def test_non_object_payload(self):
        self.assertEqual(coerce_payload(["name"], FIELDS), {})


class TestPaging(unittest.TestCase):
    def test_defaults_and_fallbacks(self):
        self.assertEqual(parse_paging(), (1, 10))
        self.assertEqual(parse_paging("3", "25"), (3, 25))
        self.assertEqual(parse_paging("0", "-5"), (1, 10))
        self.assertEqual(parse_paging("abc", None), (1, 10))

    def test_limit_capped(self):
        self.assertEqual(parse_paging(1, 100000), (1, 1000))


class TestSqlBuilders(unittest.TestCase):
    def test_search_escapes_wildcards(self):
        where, params = build_search(FIELDS, " 50%_off ")
        self.assertEqual(where, 'WHERE "name" ILIKE %s OR "price"::text ILIKE %s')
        self.assertEqual(params, ["%50\\%\\_off%", "%50\\%\\_off%"])
        self.assertEqual(build_search(FIELDS, "   "), ("", []))
        self.assertEqual(build_search([{"name": "active", "type": "boolean"}], "x"), ("", []))

    def test_page_and_count_share_filter(self):
        page_sql, page_params = build_select_page("product", FIELDS, "desk", 10, 20)
        count_sql, count_params = build_count("product", FIELDS, "desk")
        self.assertTrue(page_sql.startswith('SELECT * FROM "product" WHERE'))
        self.assertTrue(page_sql.endswith('ORDER BY "id" DESC LIMIT %s OFFSET %s'))
        self.assertEqual(page_params[-2:], [10, 20])
        self.assertEqual(page_params[:-2], count_params)
        self.assertIn("COUNT(*) AS total", count_sql)

    def test_write_statements_are_parameterized(self):
        sql, params = build_insert("product", {"name": "x'); DROP TABLE product; --", "price": 2.0})
        self.assertEqual(sql, 'INSERT INTO "product" ("name", "price") VALUES (%s, %s) RETURNING *')
        self.assertEqual(params[1], 2.0)
        sql, params = build_update("product", 7, {"name": "y"})
        self.assertEqual(sql, 'UPDATE "product" SET "name" = %s WHERE "id" = %s RETURNING *')
        self.assertEqual(params, ["y", 7])
        sql, params = build_delete("product", 7)
        self.assertEqual(sql, 'DELETE FROM "product" WHERE "id" = %s RETURNING "id"')


if __name__ == "__main__":
    unittest.main()
