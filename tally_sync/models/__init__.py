"""
Database models for the Tally sync engine.

This module contains the PostgreSQL schema definition.
"""
from pathlib import Path
from typing import Optional

# Path to schema file
SCHEMA_FILE = Path(__file__).parent / "schema.sql"


def get_schema_sql(schema: str, ddl_path: Optional[Path] = None) -> str:
    """Get the schema SQL with the schema name filled in."""
    ddl_file = Path(ddl_path) if ddl_path else SCHEMA_FILE
    if not ddl_file.exists():
        raise FileNotFoundError(f"DDL file not found: {ddl_file}")
    return ddl_file.read_text(encoding="utf-8").replace("{schema}", schema)
