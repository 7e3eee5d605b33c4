"""Forward-only schema migrations for Bonfire.

Each migration is a module named ``NNN_description.py`` that defines
``VERSION``, ``DESCRIPTION``, ``upgrade(engine)`` and ``check(engine)``.
Applied versions are recorded in ``_schema_version``.
"""

from bonfire.migrations.runner import (
    get_current_version,
    get_migrations,
    get_pending_migrations,
    migrate,
)

__all__ = ["get_current_version", "get_migrations", "get_pending_migrations", "migrate"]
