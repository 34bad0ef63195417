from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection

from ledger.config import settings
from ledger.logging_config import configure_logging

logger = logging.getLogger("ledger.migrations")

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "db" / "migrations"


def split_sql_statements(sql: str) -> list[str]:
    statements = []
    current: list[str] = []
    in_dollar = False
    for line in sql.splitlines(keepends=True):
        stripped = line.strip()
        if not in_dollar and stripped.startswith("--"):
            continue
        if "$$" in line:
            in_dollar = not in_dollar
        current.append(line)
        if not in_dollar and stripped.endswith(";"):
            statements.append("".join(current).strip())
            current = []
    tail = "".join(current).strip()
    if tail:
        statements.append(tail)
    return [s for s in statements if s]


def pending_migrations(conn: Connection, migrations_dir: Path = MIGRATIONS_DIR) -> list[Path]:
    conn.execute(
        text(
            """
            create table if not exists schema_migrations (
              filename text primary key,
              applied_at timestamptz not null default now()
            )
            """
        )
    )
    applied = {row[0] for row in conn.execute(text("select filename from schema_migrations")).fetchall()}
    return [f for f in sorted(migrations_dir.glob("*.sql")) if f.name not in applied]


def main() -> None:
    configure_logging(settings.log_level)
    engine = create_engine(settings.database_url, future=True, pool_pre_ping=True)
    with engine.begin() as conn:
        files = pending_migrations(conn)
        if not files:
            logger.info("no pending migrations in %s", MIGRATIONS_DIR)
            return
        for file in files:
            for stmt in split_sql_statements(file.read_text(encoding="utf-8")):
                conn.execute(text(stmt))
            conn.execute(text("insert into schema_migrations (filename) values (:filename)"), {"filename": file.name})
            logger.info("applied %s", file.name)
    logger.info("migration run finished")


if __name__ == "__main__":
    main()
