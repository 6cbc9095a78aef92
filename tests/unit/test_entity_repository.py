"""Unit tests for EntityRepository."""

import json
import tempfile
import textwrap
import types
import unittest
from pathlib import Path

from schemashift.domain.entities.entity import EntityDefinition
from schemashift.domain.entities.schema import SqlType
from schemashift.infrastructure.repositories.entity_repository import EntityRepository


class TestEntityRepository(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_python_file_in_declaration_order(self):
        path = self.dir / "entities.py"
        path.write_text(textwrap.dedent("""
            from schemashift.domain.entities.entity import EntityDefinition

            users = EntityDefinition("users").column("id", "integer", primary_key=True)
            posts = EntityDefinition("posts").column("id", "integer", primary_key=True)
            NOT_AN_ENTITY = 42
        """), encoding="utf-8")

        entities = EntityRepository(str(path)).load()

        self.assertEqual([e.table for e in entities], ["users", "posts"])

    def test_explicit_entities_list_wins(self):
        module = types.ModuleType("entities")
        users = EntityDefinition("users")
        module.hidden = EntityDefinition("hidden")
        module.entities = [users]
        self.assertEqual(EntityRepository.collect(module), [users])

    def test_json_declarations(self):
        path = self.dir / "entities.json"
        path.write_text(json.dumps({
            "entities": [{
                "table": "users",
                "columns": [
                    {"name": "id", "type": "integer", "primary_key": True},
                    {"name": "role", "type": "enum", "enum_values": ["admin", "member"], "default": "'member'"},
                ],
                "indexes": [["role", "id"]],
            }]
        }), encoding="utf-8")

        entities = EntityRepository(str(path)).load()

        users = entities[0]
        self.assertEqual(users.table, "users")
        self.assertEqual(users.columns[1].sql_type, SqlType.ENUM)
        self.assertEqual(users.columns[1].enum_values, ("admin", "member"))
        self.assertEqual(users.indexes, [("role", "id")])


if __name__ == '__main__':
    unittest.main()
