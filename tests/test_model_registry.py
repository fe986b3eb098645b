import json
import os
import sys
import tempfile
import unittest
from pathlib import Path


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from definition_store import DefinitionStore
from forge.errors import NotFoundError
from model_registry import DefinitionWatcher, ModelRegistry


def _doc(name, *fields):
    return {"name": name, "fields": [{"name": f, "type": "string"} for f in fields]}


class TestDefinitionStore(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name) / "models"
        self.store = DefinitionStore(self.root)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_write_read_delete(self):
        self.store.write(_doc("Product", "name"))
        self.assertTrue(self.root.is_dir())
        self.assertEqual(self.store.list_names(), ["Product"])
        self.assertEqual(self.store.read("Product")["fields"][0]["name"], "name")
        self.store.delete("Product")
        self.assertFalse(self.store.exists("Product"))
        with self.assertRaises(NotFoundError):
            self.store.read("Product")
        with self.assertRaises(NotFoundError):
            self.store.delete("Product")

    def test_ignores_foreign_files(self):
        self.store.ensure_dir()
        (self.root / "notes.txt").write_text("x", encoding="utf-8")
        (self.root / "bad name.json").write_text("{}", encoding="utf-8")
        self.store.write(_doc("Order", "ref"))
        self.assertEqual(self.store.list_names(), ["Order"])

    def test_invalid_name_rejected(self):
        with self.assertRaises(ValueError):
            self.store.path_for("../etc/passwd")
        self.assertFalse(self.store.exists("../x"))


class TestModelRegistry(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.store = DefinitionStore(self.root)
        self.registry = ModelRegistry(self.store)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_populate_skips_malformed_documents(self):
        self.store.write(_doc("Product", "name"))
        (self.root / "Broken.json").write_text("{not json", encoding="utf-8")
        (self.root / "Mismatch.json").write_text(json.dumps(_doc("Other", "x")), encoding="utf-8")
        self.assertEqual(self.registry.load_all(), 1)
        self.assertEqual(self.registry.list(), ["Product"])
        self.assertEqual(self.registry.get("Product")["tableName"], "product")

    def test_get_unknown_model(self):
        with self.assertRaises(NotFoundError) as ctx:
            self.registry.get("Ghost")
        self.assertIn("not found or not cached", ctx.exception.message)

    def test_get_returns_copy(self):
        self.store.write(_doc("Product", "name"))
        self.registry.load("Product")
        model = self.registry.get("Product")
        model["fields"].append({"name": "hacked", "type": "string"})
        self.assertEqual(len(self.registry.get("Product")["fields"]), 1)

    def test_bad_reload_keeps_previous_entry(self):
        self.store.write(_doc("Product", "name"))
        self.registry.load("Product")
        (self.root / "Product.json").write_text("{broken", encoding="utf-8")
        self.assertFalse(self.registry.load("Product"))
        self.assertEqual(self.registry.get("Product")["fields"][0]["name"], "name")

    def test_external_document_gets_defaults_on_load(self):
        (self.root / "Memo.json").write_text(
            json.dumps(dict(_doc("Memo", "body"), ownerField="authorId")), encoding="utf-8"
        )
        self.assertTrue(self.registry.load("Memo"))
        memo = self.registry.get("Memo")
        self.assertEqual(memo["rbac"]["Viewer"], ["read"])
        self.assertEqual(memo["fields"][-1], {"name": "authorId", "type": "number", "required": False, "unique": False})

    def test_explicit_empty_policy_kept_on_load(self):
        (self.root / "Vault.json").write_text(json.dumps(dict(_doc("Vault", "x"), rbac={})), encoding="utf-8")
        self.registry.load("Vault")
        self.assertEqual(self.registry.get("Vault")["rbac"], {})

    def test_table_owner(self):
        self.store.write(dict(_doc("Item", "x"), tableName="items"))
        self.registry.load("Item")
        self.assertEqual(self.registry.table_owner("items"), "Item")
        self.assertIsNone(self.registry.table_owner("item"))


class TestDefinitionWatcher(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.store = DefinitionStore(self.root)
        self.registry = ModelRegistry(self.store)
        self.watcher = DefinitionWatcher(self.store, self.registry, poll_ms=10, debounce_ms=150)
        self.watcher.prime()

    def tearDown(self) -> None:
        self.watcher.stop()
        self._tmp.cleanup()

    def test_added_definition_loaded_after_debounce(self):
        self.store.write(_doc("Product", "name"))
        self.assertEqual(self.watcher.scan_once(now=100.0), [("load", "Product")])
        self.assertEqual(self.watcher.drain(now=100.1), [])
        self.assertIsNone(self.registry.find("Product"))
        self.assertEqual(self.watcher.drain(now=100.2), [("load", "Product")])
        self.assertEqual(self.registry.get("Product")["name"], "Product")

    def test_burst_collapses_to_latest_intent(self):
        self.store.write(_doc("Product", "name"))
        self.watcher.scan_once(now=10.0)
        self.store.delete("Product")
        self.watcher.scan_once(now=10.1)
        self.assertEqual(self.watcher.pending(), {"Product": "evict"})
        self.assertEqual(self.watcher.drain(now=10.3), [("evict", "Product")])
        self.assertEqual(self.registry.list(), [])

    def test_removed_definition_evicted(self):
        self.store.write(_doc("Product", "name"))
        self.registry.load("Product")
        self.watcher.prime()
        self.store.delete("Product")
        self.assertEqual(self.watcher.scan_once(now=1.0), [("evict", "Product")])
        self.watcher.drain(now=2.0)
        self.assertIsNone(self.registry.find("Product"))

    def test_changed_definition_reloaded(self):
        self.store.write(_doc("Product", "name"))
        self.registry.load("Product")
        self.watcher.prime()
        self.store.write(_doc("Product", "name", "sku_code"))
        self.assertEqual(self.watcher.scan_once(now=5.0), [("load", "Product")])
        self.watcher.drain(now=6.0)
        self.assertEqual(len(self.registry.get("Product")["fields"]), 2)

    def test_start_and_stop_thread(self):
        self.watcher.start()
        self.watcher.stop()
        self.assertEqual(self.watcher.pending(), {})


if __name__ == "__main__":
    unittest.main()
