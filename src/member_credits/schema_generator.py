from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Optional, Sequence, Type

from .models.action import Action
from .models.base import DBSerializableModel
from .models.credits import CreditAccount
from .models.history import CreditHistoryEntry
from .models.member import Member
from .models.purchase import ProcessedPurchaseTag


# Parents before children so foreign keys resolve in order
MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    Member,
    CreditAccount,
    CreditHistoryEntry,
    Action,
    ProcessedPurchaseTag,
]


def generate_logical_schema() -> Dict[str, Any]:
    """
    Generate a backend-agnostic logical schema for all registered models.
    SQL/NoSQL specific renderers convert it.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    lines: List[str] = []
    for table_name, spec in schema.items():
        props = spec["properties"]
        pk = spec.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in props.items():
            sql_type = _map_logical_to_sql(meta["type"], dialect=dialect)
            required = field_name in spec.get("required", []) or field_name == pk
            nullable = "NOT NULL" if required else "NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        for field_name in spec.get("unique", []):
            columns.append(f'    UNIQUE ("{field_name}")')
        for field_name, target in spec.get("foreign_keys", {}).items():
            ref_table, ref_column = target.split(".", 1)
            columns.append(
                f'    FOREIGN KEY ("{field_name}") REFERENCES "{ref_table}" ("{ref_column}") ON DELETE CASCADE'
            )
        ddl = f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"
        lines.append(ddl)
    return "\n".join(lines)


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    Render a JSON representation that can be used to configure validators
    and unique indexes for document databases like MongoDB.
    """
    return json.dumps(schema, indent=2, default=str)


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        return "INTEGER"
    if logical_type == "number":
        return "DOUBLE PRECISION"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type == "string":
        return "TEXT"
    if logical_type in {"datetime", "date"}:
        return "TIMESTAMPTZ" if dialect == "postgres" else "TIMESTAMP"
    if logical_type in {"array", "object"}:
        return "JSONB" if dialect == "postgres" else "JSON"
    return "TEXT"


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Generate DB schemas for the member credits ledger."
    )
    parser.add_argument(
        "--backend",
        choices=["sql", "nosql"],
        required=True,
        help="Type of schema to generate.",
    )
    parser.add_argument(
        "--dialect",
        default="postgres",
        help="SQL dialect hint (e.g. postgres, mysql).",
    )
    args = parser.parse_args(argv)

    schema = generate_logical_schema()

    if args.backend == "sql":
        print(render_sql_ddl(schema, dialect=args.dialect))
    else:
        print(render_nosql_schema(schema))


if __name__ == "__main__":
    main()
