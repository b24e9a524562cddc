"""
mvkeeper.schema.provider — Schema-Definition Provider
======================================================

The SQL that defines each index, materialized view and optimization table
belongs to the application's schema module, not to mvkeeper.  This module
turns that text into data the services can consume:

* discrete :class:`SchemaStatement` objects, split **once at load time**
  (never at refresh time) with blank and comment-only fragments dropped;
* the ordered list of :class:`~mvkeeper.config.ViewCategory`;
* SQL builders for archiving and purging audit events by age.

Splitting on ``;`` is naive: a statement containing a literal semicolon
(a function body, a string constant) must be supplied pre-split through
:meth:`SchemaProvider.__init__` instead of via a DDL file.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from mvkeeper.config import MvKeeperConfig, ViewCategory

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SchemaStatement:
    """One executable DDL statement and the group it came from."""

    kind: str   # "index" | "view" | "view_index" | "table"
    sql: str


@dataclass(frozen=True, slots=True)
class ArchiveScript:
    """The two statements of an archive run, sharing the ``:cutoff`` bind."""

    count_sql: str
    insert_sql: str
    delete_sql: str


def _is_comment_only(fragment: str) -> bool:
    return all(
        not line.strip() or line.strip().startswith("--")
        for line in fragment.splitlines()
    )


def split_ddl(blob: str, kind: str) -> list[SchemaStatement]:
    """Split a ``;``-separated DDL blob into statements.

    Leading ``--`` comment lines are stripped from each fragment; fragments
    that are empty or contain only comments are discarded.
    """
    statements: list[SchemaStatement] = []
    for fragment in blob.split(";"):
        if _is_comment_only(fragment):
            continue
        lines = fragment.strip().splitlines()
        while lines and lines[0].strip().startswith("--"):
            lines.pop(0)
        statements.append(SchemaStatement(kind=kind, sql="\n".join(lines).strip()))
    return statements


def _load_files(paths: tuple[Path, ...], kind: str) -> list[SchemaStatement]:
    statements: list[SchemaStatement] = []
    for path in paths:
        statements.extend(split_ddl(path.read_text(encoding="utf-8"), kind))
        logger.debug("Loaded %s DDL from %s", kind, path)
    return statements


class SchemaProvider:
    """Everything mvkeeper needs to know about the application's schema."""

    def __init__(
        self,
        categories: tuple[ViewCategory, ...] | list[ViewCategory],
        *,
        performance_indexes: list[SchemaStatement] | None = None,
        materialized_views: list[SchemaStatement] | None = None,
        view_indexes: list[SchemaStatement] | None = None,
        optimization_tables: list[SchemaStatement] | None = None,
        optimization_table_names: tuple[str, ...] = (),
        audit_table: str = "audit_events",
        archive_table: str = "audit_events_archive",
        timestamp_column: str = "created_at",
    ) -> None:
        self.categories: tuple[ViewCategory, ...] = tuple(categories)
        self.performance_indexes = list(performance_indexes or [])
        self.materialized_views = list(materialized_views or [])
        self.view_indexes = list(view_indexes or [])
        self.optimization_tables = list(optimization_tables or [])
        self.optimization_table_names = tuple(optimization_table_names)
        self.audit_table = audit_table
        self.archive_table = archive_table
        self.timestamp_column = timestamp_column

    @classmethod
    def from_config(cls, cfg: MvKeeperConfig) -> SchemaProvider:
        """Load the DDL files referenced by ``config.yaml``."""
        files = cfg.schema
        provider = cls(
            cfg.categories,
            performance_indexes=_load_files(files.performance_indexes, "index"),
            materialized_views=_load_files(files.materialized_views, "view"),
            view_indexes=_load_files(files.view_indexes, "view_index"),
            optimization_tables=_load_files(files.optimization_tables, "table"),
            optimization_table_names=files.optimization_table_names,
        )
        logger.info(
            "Schema loaded — %d indexes, %d views, %d view indexes, %d table statements",
            len(provider.performance_indexes), len(provider.materialized_views),
            len(provider.view_indexes), len(provider.optimization_tables),
        )
        return provider

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------
    def all_view_names(self) -> list[str]:
        """Every registered view, category order then in-category order."""
        return [view for cat in self.categories for view in cat.views]

    def get_category(self, key: str) -> ViewCategory | None:
        for cat in self.categories:
            if cat.key == key:
                return cat
        return None

    def category_of(self, view_name: str) -> str | None:
        for cat in self.categories:
            if view_name in cat.views:
                return cat.key
        return None

    # ------------------------------------------------------------------
    # Audit archive SQL
    # ------------------------------------------------------------------
    def archive_table_statement(self) -> SchemaStatement:
        """DDL creating the archive table with the same columns as the main one."""
        return SchemaStatement(
            kind="table",
            sql=(
                f"CREATE TABLE IF NOT EXISTS {self.archive_table} "
                f"(LIKE {self.audit_table} INCLUDING DEFAULTS)"
            ),
        )

    def archive_script(self) -> ArchiveScript:
        """Statements moving ``audit_events`` rows older than ``:cutoff``."""
        ts = self.timestamp_column
        return ArchiveScript(
            count_sql=f"SELECT COUNT(*) AS count FROM {self.audit_table} WHERE {ts} < :cutoff",
            insert_sql=(
                f"INSERT INTO {self.archive_table} "
                f"SELECT * FROM {self.audit_table} WHERE {ts} < :cutoff"
            ),
            delete_sql=f"DELETE FROM {self.audit_table} WHERE {ts} < :cutoff",
        )

    def purge_sql(self) -> str:
        """Statement irreversibly deleting archive rows older than ``:cutoff``."""
        return f"DELETE FROM {self.archive_table} WHERE {self.timestamp_column} < :cutoff"
