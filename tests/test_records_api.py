import os
import sys
import tempfile
import unittest
from datetime import datetime

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import psycopg2
from fastapi.testclient import TestClient
from jose import jwt

SECRET = "test-secret"
_MODELS_TMP = tempfile.TemporaryDirectory()

os.environ["USE_DB"] = "0"
os.environ["FORGE_WATCH"] = "0"
os.environ["FORGE_JWT_SECRET"] = SECRET
os.environ["FORGE_MODELS_DIR"] = _MODELS_TMP.name
os.environ.pop("FORGE_DISABLE_AUTH", None)
os.environ.pop("FORGE_PUBLISH_ROLES", None)

import app.main as main
from app.records import RecordService


def _token(sub, role="Manager", secret=SECRET):
    claims = {"sub": str(sub)}
    if role is not None:
        claims["role"] = role
    return jwt.encode(claims, secret, algorithm="HS256")


def _auth(sub, role="Manager"):
    return {"Authorization": f"Bearer {_token(sub, role)}"}


PRODUCT = {
    "name": "Product",
    "fields": [
        {"name": "name", "type": "string", "required": True},
        {"name": "sku", "type": "string", "unique": True},
        {"name": "price", "type": "number"},
    ],
    "ownerField": "creatorId",
}

ADMIN = _auth(1, "Admin")
MANAGER = _auth(5, "Manager")
OTHER_MANAGER = _auth(6, "Manager")
VIEWER = _auth(7, "Viewer")


class TestRecordsApi(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        main.configure(self._tmp.name)
        self.client = TestClient(main.app)
        res = self.client.post("/model-definitions/publish", json=PRODUCT, headers=MANAGER)
        self.assertEqual(res.status_code, 201, res.json())

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _create(self, headers, **values):
        res = self.client.post("/api/Product", json=values, headers=headers)
        self.assertEqual(res.status_code, 201, res.json())
        return res.json()["record"]

    def test_health_is_public(self):
        res = self.client.get("/health")
        self.assertEqual(res.json(), {"ok": True})

    def test_missing_and_invalid_tokens(self):
        res = self.client.get("/model-definitions/list")
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.json()["errors"][0]["code"], "AUTH_REQUIRED")

        res = self.client.get("/api/Product")
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.json()["errors"][0]["code"], "AUTH_CLAIMS_MISSING")

        bad = {"Authorization": f"Bearer {_token(5, secret='wrong')}"}
        res = self.client.get("/api/Product", headers=bad)
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.json()["errors"][0]["code"], "AUTH_INVALID_TOKEN")

    def test_token_without_role_rejected(self):
        res = self.client.get("/api/Product", headers=_auth(5, role=None))
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.json()["errors"][0]["code"], "AUTH_CLAIMS_MISSING")

    def test_manager_creates_but_cannot_delete(self):
        record = self._create(MANAGER, name="Desk", price="120")
        self.assertEqual(record["creatorId"], 5)
        self.assertEqual(record["price"], 120)
        res = self.client.delete(f"/api/Product/{record['id']}", headers=MANAGER)
        self.assertEqual(res.status_code, 403)
        body = res.json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["errors"][0]["code"], "PERMISSION_DENIED")
        self.assertEqual(self.client.get(f"/api/Product/{record['id']}", headers=MANAGER).status_code, 200)

    def test_owner_is_forced_from_principal(self):
        record = self._create(MANAGER, name="Lamp", creatorId=999)
        self.assertEqual(record["creatorId"], 5)

    def test_only_owner_may_update(self):
        record = self._create(MANAGER, name="Chair")
        res = self.client.put(f"/api/Product/{record['id']}", json={"name": "Stolen"}, headers=OTHER_MANAGER)
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.json()["errors"][0]["code"], "OWNERSHIP_DENIED")
        self.assertNotIn("5", res.json()["errors"][0]["message"])

        res = self.client.patch(f"/api/Product/{record['id']}", json={"name": "Armchair"}, headers=MANAGER)
        self.assertEqual(res.status_code, 200, res.json())
        updated = res.json()["record"]
        self.assertEqual(updated["name"], "Armchair")
        self.assertGreaterEqual(
            datetime.fromisoformat(updated["updatedAt"]),
            datetime.fromisoformat(record["updatedAt"]),
        )

    def test_admin_lifecycle(self):
        record = self._create(MANAGER, name="Shelf")
        res = self.client.put(f"/api/Product/{record['id']}", json={"price": 9.5}, headers=ADMIN)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["record"]["price"], 9.5)

        res = self.client.delete(f"/api/Product/{record['id']}", headers=ADMIN)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["message"], f"Record {record['id']} from Product deleted successfully.")

        res = self.client.get(f"/api/Product/{record['id']}", headers=ADMIN)
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["message"], f"Record with ID {record['id']} not found in Product.")

        res = self.client.put(f"/api/Product/{record['id']}", json={"price": 1}, headers=ADMIN)
        self.assertEqual(res.status_code, 404)

    def test_viewer_read_only(self):
        self._create(MANAGER, name="Rug")
        self.assertEqual(self.client.get("/api/Product", headers=VIEWER).status_code, 200)
        res = self.client.post("/api/Product", json={"name": "Nope"}, headers=VIEWER)
        self.assertEqual(res.status_code, 403)

    def test_pagination_totals_match(self):
        for idx in range(15):
            self._create(ADMIN, name=f"Item {idx}")
        res = self.client.get("/api/Product?page=2&limit=10", headers=ADMIN)
        body = res.json()
        self.assertEqual(body["total"], 15)
        self.assertEqual(len(body["data"]), 5)
        ids = [r["id"] for r in body["data"]]
        self.assertEqual(ids, sorted(ids, reverse=True))

        res = self.client.get("/api/Product?page=x&limit=-3", headers=ADMIN)
        self.assertEqual(res.json()["limit"], 10)
        self.assertEqual(res.json()["page"], 1)

    def test_search_matches_strings_and_numbers(self):
        self._create(ADMIN, name="Oak Desk", price=250)
        self._create(ADMIN, name="Pine shelf", price=80)
        self._create(ADMIN, name="100%_cotton", price=5)
        res = self.client.get("/api/Product?search=desk", headers=ADMIN)
        self.assertEqual([r["name"] for r in res.json()["data"]], ["Oak Desk"])
        res = self.client.get("/api/Product?search=80", headers=ADMIN)
        self.assertEqual([r["name"] for r in res.json()["data"]], ["Pine shelf"])
        res = self.client.get("/api/Product?search=%25_", headers=ADMIN)
        self.assertEqual(res.json()["total"], 1)

    def test_payload_safelist(self):
        record = self._create(ADMIN, name="Stool", id=999, createdAt="1999-01-01", injected="x")
        self.assertNotEqual(record["id"], 999)
        self.assertNotIn("injected", record)

    def test_empty_payloads_rejected(self):
        res = self.client.post("/api/Product", json={"bogus": 1}, headers=MANAGER)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "DB_CONSTRAINT")

        self.client.post(
            "/model-definitions/publish",
            json={"name": "Note", "fields": [{"name": "body", "type": "string"}]},
            headers=ADMIN,
        )
        res = self.client.post("/api/Note", json={"bogus": 1}, headers=ADMIN)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["message"], "Cannot create record with empty data.")

        record = self._create(ADMIN, name="Bench")
        res = self.client.put(f"/api/Product/{record['id']}", json={"bogus": 1}, headers=ADMIN)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["message"], "No valid fields provided for update.")

    def test_unique_violation_is_bad_request(self):
        self._create(ADMIN, name="A", sku="SKU-1")
        res = self.client.post("/api/Product", json={"name": "B", "sku": "SKU-1"}, headers=ADMIN)
        self.assertEqual(res.status_code, 400)
        self.assertIn("duplicate key", res.json()["errors"][0]["message"])

    def test_bad_record_id_and_unknown_model(self):
        res = self.client.get("/api/Product/abc", headers=ADMIN)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "INVALID_ID")
        res = self.client.get("/api/Ghost", headers=ADMIN)
        self.assertEqual(res.status_code, 404)


    def test_explicit_empty_policy_denies_every_role(self):
        secret = {"name": "Secret", "fields": [{"name": "body", "type": "string"}], "rbac": {}}
        res = self.client.post("/model-definitions/publish", json=secret, headers=ADMIN)
        self.assertEqual(res.status_code, 201, res.json())
        self.assertEqual(main.registry.get("Secret")["rbac"], {})
        for headers in (ADMIN, MANAGER, VIEWER):
            res = self.client.post("/api/Secret", json={"body": "x"}, headers=headers)
            self.assertEqual(res.status_code, 403)
            self.assertEqual(res.json()["errors"][0]["code"], "PERMISSION_DENIED")
            self.assertEqual(self.client.get("/api/Secret", headers=headers).status_code, 403)

    def test_unexpected_store_failure_returns_trimmed_message(self):
        class _LostConnectionStore:
            def page(self, *args, **kwargs):
                raise psycopg2.OperationalError(
                    "server closed the connection unexpectedly\n"
                    '\tconnection to server at "db.internal" (10.0.0.5), port 5432 failed'
                )

        main.records = RecordService(main.registry, _LostConnectionStore())
        client = TestClient(main.app, raise_server_exceptions=False)
        res = client.get("/api/Product", headers=ADMIN)
        self.assertEqual(res.status_code, 500)
        error = res.json()["errors"][0]
        self.assertEqual(error["code"], "INTERNAL_ERROR")
        self.assertEqual(error["detail"]["error"], "server closed the connection unexpectedly")
        self.assertNotIn("db.internal", res.text)
        self.assertNotIn("10.0.0.5", res.text)


class TestModelDefinitionsApi(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        main.configure(self._tmp.name)
        self.client = TestClient(main.app)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_publish_list_get_delete(self):
        res = self.client.post("/model-definitions/publish", json=PRODUCT, headers=ADMIN)
        self.assertEqual(res.status_code, 201)
        body = res.json()
        self.assertTrue(body["created"])
        self.assertEqual(body["warnings"], [])

        res = self.client.post(
            "/model-definitions/publish",
            json={"definition": dict(PRODUCT, fields=PRODUCT["fields"] + [{"name": "stock", "type": "number"}])},
            headers=ADMIN,
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["changes"], ["Adding column: stock (number)"])

        self.assertEqual(self.client.get("/model-definitions/list", headers=VIEWER).json()["models"], ["Product"])
        all_models = self.client.get("/model-definitions", headers=VIEWER).json()["models"]
        self.assertEqual(all_models[0]["tableName"], "product")
        one = self.client.get("/model-definitions/Product", headers=VIEWER).json()
        self.assertIn("stock", [f["name"] for f in one["model"]["fields"]])

        res = self.client.delete("/model-definitions/Product", headers=ADMIN)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(self.client.get("/model-definitions/Product", headers=ADMIN).status_code, 404)
        self.assertEqual(self.client.get("/api/Product", headers=ADMIN).status_code, 404)

    def test_invalid_definition_rejected(self):
        res = self.client.post(
            "/model-definitions/publish",
            json={"name": "users", "fields": [{"name": "x", "type": "string"}]},
            headers=ADMIN,
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "RESERVED_NAME")

        res = self.client.post("/model-definitions/publish", content=b"not json", headers=ADMIN)
        self.assertEqual(res.status_code, 400)

    def test_publish_roles_restrict_changes(self):
        original = main.PUBLISH_ROLES
        main.PUBLISH_ROLES = {"Admin"}
        try:
            res = self.client.post("/model-definitions/publish", json=PRODUCT, headers=MANAGER)
            self.assertEqual(res.status_code, 403)
            self.assertEqual(res.json()["errors"][0]["code"], "PUBLISH_FORBIDDEN")
            res = self.client.post("/model-definitions/publish", json=PRODUCT, headers=ADMIN)
            self.assertEqual(res.status_code, 201)
        finally:
            main.PUBLISH_ROLES = original

    def test_externally_written_definition_served_after_watch_cycle(self):
        main.definitions.write({"name": "Note", "fields": [{"name": "body", "type": "string"}]})
        self.assertEqual(self.client.get("/model-definitions/Note", headers=ADMIN).status_code, 404)
        main.watcher.scan_once(now=0.0)
        main.watcher.drain(now=10.0)
        self.assertEqual(self.client.get("/model-definitions/Note", headers=ADMIN).status_code, 200)


if __name__ == "__main__":
    unittest.main()
