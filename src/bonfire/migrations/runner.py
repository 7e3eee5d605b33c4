"""Discovers and applies schema migrations."""

from __future__ import annotations

import importlib
from pathlib import Path
from types import ModuleType

from sqlalchemy import func, inspect, select
from sqlalchemy.engine import Engine

from bonfire.database import schema_version
from bonfire.logging import get_logger
from bonfire.models import utcnow

log = get_logger("migrations")


def get_migrations() -> list[tuple[int, ModuleType]]:
    """Migration modules in this package, sorted by version."""
    found: list[tuple[int, ModuleType]] = []

    for path in sorted(Path(__file__).parent.glob("[0-9][0-9][0-9]_*.py")):
        module = importlib.import_module(f"bonfire.migrations.{path.stem}")
        version = getattr(module, "VERSION", None)
        if version is None:
            log.warning("migration_missing_version", file=path.stem)
            continue
        found.append((version, module))

    return sorted(found, key=lambda item: item[0])


def get_current_version(engine: Engine) -> int:
    """Highest applied version, or 0 for a fresh database."""
    if schema_version.name not in inspect(engine).get_table_names():
        return 0

    with engine.connect() as conn:
        return conn.execute(select(func.max(schema_version.c.version))).scalar() or 0


def get_pending_migrations(engine: Engine) -> list[tuple[int, ModuleType]]:
    """Migrations newer than the database's current version."""
    current = get_current_version(engine)
    return [(v, m) for v, m in get_migrations() if v > current]


def migrate(engine: Engine, target_version: int | None = None) -> int:
    """Apply pending migrations, in order, up to ``target_version``.

    A migration whose ``check`` reports it as already applied (tables created
    by ``create_tables`` before the runner ever ran) is recorded without
    running ``upgrade``.

    Returns:
        The database's version afterwards.

    Raises:
        Exception: Whatever the failing migration raised. Earlier migrations
            stay applied.
    """
    applied = 0

    for version, module in get_pending_migrations(engine):
        if target_version is not None and version > target_version:
            break

        description = getattr(module, "DESCRIPTION", "No description")
        already_present = module.check(engine) if hasattr(module, "check") else False

        try:
            if already_present:
                log.info("migration_already_present", version=version)
            else:
                log.info("applying_migration", version=version, description=description)
                module.upgrade(engine)

            with engine.begin() as conn:
                conn.execute(
                    schema_version.insert().values(
                        version=version,
                        applied_at=utcnow(),
                        description=description,
                    )
                )
        except Exception as e:
            log.error("migration_failed", version=version, error=str(e))
            raise

        applied += 1
        log.info("migration_applied", version=version)

    current = get_current_version(engine)
    if applied:
        log.info("migrations_complete", count=applied, version=current)
    else:
        log.debug("no_pending_migrations", version=current)
    return current
