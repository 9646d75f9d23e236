from __future__ import annotations

import types
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict, Field


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    The actual SQL/NoSQL DDL is produced offline by the schema generator
    using this description; this class is not meant to hit the database
    at runtime for schema work.
    """

    model_config = ConfigDict(use_enum_values=True)

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    # Optional explicit primary key field; defaults to "id" if present
    primary_key: ClassVar[Optional[str]] = "id"

    # Columns that must be unique across the collection
    unique_fields: ClassVar[Tuple[str, ...]] = ()

    # field -> "collection.field"; child rows are removed with their parent
    foreign_keys: ClassVar[Dict[str, str]] = {}

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        This is the single place to control how models are stored;
        DB adapters can still post-process this if needed.
        """
        return self.model_dump(by_alias=True, exclude_none=True, mode="python")

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.

        The schema generator runs this once (e.g. from a CLI) to produce:
        - SQL DDL for relational databases
        - JSON/metadata for NoSQL collections and indexes
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            field_type = cls._map_type(field.annotation)

            properties[name] = {
                "type": field_type,
                "nullable": not field.is_required(),
                "default": cls._schema_default(field.default),
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
            "unique": list(cls.unique_fields),
            "foreign_keys": dict(cls.foreign_keys),
        }

    @staticmethod
    def _schema_default(default: Any) -> Any:
        if default is None or isinstance(default, (str, int, float, bool)):
            return default
        # PydanticUndefined, factories and other non-literal defaults
        return None

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator will translate these to dialect-specific types.
        """
        origin: Any = get_origin(annotation)
        if origin is Union or origin is types.UnionType:
            args = [a for a in get_args(annotation) if a is not type(None)]
            return DBSerializableModel._map_type(args[0]) if args else "object"
        if origin in (list, tuple, set):
            return "array"
        if origin is dict:
            return "object"

        # bool first: bool is a subclass of int
        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is str:
            return "string"

        # Fallback for datetime, enums, etc.; generator can refine using metadata
        if isinstance(annotation, type) and issubclass(annotation, str):
            return "string"
        name = getattr(annotation, "__name__", "object")
        return name.lower()


class PaginatedResult(BaseModel):
    items: list[Any] = Field(default_factory=list)
    total: int
    limit: int
    offset: int
