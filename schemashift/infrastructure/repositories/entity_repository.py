import importlib
import importlib.util
import json
from pathlib import Path
from typing import Any, Dict, List

from schemashift.domain.entities.entity import EntityColumn, EntityDefinition
from schemashift.domain.repositories.interfaces import IEntityRepository


class EntityRepository(IEntityRepository):
    """
    Repository for entity declarations.
    Single Responsibility: Entity loading and parsing.

    ``reference`` is a dotted module name, a ``.py`` path, or a ``.json`` file.
    """

    def __init__(self, reference: str):
        self._reference = reference

    def load(self) -> List[EntityDefinition]:
        if self._reference.endswith(".json"):
            data = json.loads(Path(self._reference).read_text(encoding="utf-8"))
            return self.parse_entities(data)
        return self.collect(self._import_module())

    def _import_module(self):
        if self._reference.endswith(".py"):
            path = Path(self._reference)
            spec = importlib.util.spec_from_file_location(f"schemashift_entities_{path.stem}", path)
            if not spec or not spec.loader:
                raise ImportError(f"Cannot load entity module: {self._reference}")
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
            return module
        return importlib.import_module(self._reference)

    @staticmethod
    def collect(module: Any) -> List[EntityDefinition]:
        """An explicit ``entities`` list wins; otherwise module-level definitions in declaration order."""
        explicit = getattr(module, "entities", None)
        if isinstance(explicit, (list, tuple)):
            return [e for e in explicit if isinstance(e, EntityDefinition)]
        return [value for value in vars(module).values() if isinstance(value, EntityDefinition)]

    def parse_entities(self, json_data: Dict[str, Any]) -> List[EntityDefinition]:
        """Parse entity declarations from JSON."""
        entities = []
        for entity_data in json_data.get("entities", []):
            columns = [
                EntityColumn(
                    name=col["name"],
                    sql_type=col["type"],
                    size=col.get("size"),
                    scale=col.get("scale"),
                    nullable=col.get("nullable", True),
                    unique=col.get("unique", False),
                    primary_key=col.get("primary_key", False),
                    auto_increment=col.get("auto_increment"),
                    default=col.get("default"),
                    enum_values=tuple(col.get("enum_values", ())),
                    references=col.get("references"),
                    on_delete=col.get("on_delete"),
                    indexed=col.get("indexed", False),
                )
                for col in entity_data.get("columns", [])
            ]
            entities.append(EntityDefinition(
                table=entity_data["table"],
                columns=columns,
                indexes=[tuple(i) for i in entity_data.get("indexes", [])],
            ))
        return entities
