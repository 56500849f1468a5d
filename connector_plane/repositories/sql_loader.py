from __future__ import annotations

from pathlib import Path


SQL_DIR = Path(__file__).with_name("sql")


def load_sql(name: str) -> str:
    """Read a query shipped under repositories/sql; the .sql suffix is optional."""
    filename = name if name.endswith(".sql") else f"{name}.sql"
    return (SQL_DIR / filename).read_text(encoding="utf-8").strip()
