"""
mvkeeper.config — YAML Configuration Loader
============================================

Reads ``config.yaml`` for everything that shapes a maintenance run: the
organisation the schedule belongs to, the ordered list of view categories,
where the DDL files live, and the refresh / archival defaults.  Secrets
(``DATABASE_URL``, ``JWT_SECRET``) stay in ``.env``.

Usage::

    from mvkeeper.config import load_config

    cfg = load_config()                 # reads ./config.yaml by default
    print(cfg.category_keys)            # ('core', 'hierarchy', ...)
    print(cfg.refresh.stale_threshold_hours)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ViewCategory:
    """A named group of materialized views.

    Categories are kept in configuration order.  That order is the assumed
    dependency order (base facts before the rollups that read them); it is
    enforced as ordering only, never verified against the view SQL.
    """

    key: str
    name: str
    views: tuple[str, ...]
    description: str = ""


@dataclass(frozen=True, slots=True)
class RefreshDefaults:
    """Knobs applied when a caller does not pass its own."""

    stagger_delay_ms: int = 0
    delay_between_categories_ms: int = 5_000
    allow_blocking_refresh: bool = False
    stale_threshold_hours: int = 6


@dataclass(frozen=True, slots=True)
class ArchivalDefaults:
    """Audit archive windows (days)."""

    archive_after_days: int = 365
    purge_after_days: int = 2_555
    job_hour: int = 2
    job_minute: int = 30


@dataclass(frozen=True, slots=True)
class ScheduleDefaults:
    """Initial refresh schedule used until an admin writes one."""

    schedule_time: str = "05:00"
    timezone: str = "Europe/London"
    is_enabled: bool = True
    post_ingestion_enabled: bool = False


@dataclass(frozen=True, slots=True)
class SchemaFiles:
    """Paths of the DDL files supplied by the schema module."""

    performance_indexes: tuple[Path, ...] = ()
    materialized_views: tuple[Path, ...] = ()
    view_indexes: tuple[Path, ...] = ()
    optimization_tables: tuple[Path, ...] = ()
    optimization_table_names: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class MvKeeperConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    organisation_id: str
    categories: tuple[ViewCategory, ...]
    schema: SchemaFiles = field(default_factory=SchemaFiles)
    refresh: RefreshDefaults = field(default_factory=RefreshDefaults)
    archival: ArchivalDefaults = field(default_factory=ArchivalDefaults)
    schedule: ScheduleDefaults = field(default_factory=ScheduleDefaults)

    @property
    def category_keys(self) -> tuple[str, ...]:
        return tuple(c.key for c in self.categories)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------
def _parse_categories(raw: list) -> tuple[ViewCategory, ...]:
    """Build the ordered category list, rejecting duplicates.

    A view may only appear in one category; otherwise the registration order
    of "all views" would be ambiguous.
    """
    categories: list[ViewCategory] = []
    seen_keys: set[str] = set()
    seen_views: set[str] = set()
    for item in raw:
        key = str(item["key"])
        if key in seen_keys:
            raise ValueError(f"Duplicate view category: {key!r}")
        seen_keys.add(key)

        views = tuple(str(v) for v in item.get("views", []))
        for view in views:
            if view in seen_views:
                raise ValueError(f"View {view!r} is listed in more than one category")
            seen_views.add(view)

        categories.append(ViewCategory(
            key=key,
            name=str(item.get("name", key)),
            views=views,
            description=str(item.get("description", "")),
        ))
    return tuple(categories)


def _paths(base: Path, raw: list | str | None) -> tuple[Path, ...]:
    if not raw:
        return ()
    if isinstance(raw, str):
        raw = [raw]
    return tuple((base / p).resolve() for p in raw)


def _parse_schema(base: Path, raw: dict | None) -> SchemaFiles:
    raw = raw or {}
    return SchemaFiles(
        performance_indexes=_paths(base, raw.get("performance_indexes")),
        materialized_views=_paths(base, raw.get("materialized_views")),
        view_indexes=_paths(base, raw.get("view_indexes")),
        optimization_tables=_paths(base, raw.get("optimization_tables")),
        optimization_table_names=tuple(raw.get("optimization_table_names", [])),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def config_from_dict(raw: dict, base_dir: str | Path = ".") -> MvKeeperConfig:
    """Build a :class:`MvKeeperConfig` from an already-parsed mapping.

    Relative DDL paths are resolved against *base_dir* (the directory of the
    YAML file when called from :func:`load_config`).
    """
    base = Path(base_dir)
    refresh = raw.get("refresh") or {}
    archival = raw.get("archival") or {}
    schedule = raw.get("schedule") or {}

    return MvKeeperConfig(
        organisation_id=str(raw["organisation_id"]),
        categories=_parse_categories(raw.get("categories") or []),
        schema=_parse_schema(base, raw.get("schema")),
        refresh=RefreshDefaults(
            stagger_delay_ms=int(refresh.get("stagger_delay_ms", 0)),
            delay_between_categories_ms=int(
                refresh.get("delay_between_categories_ms", 5_000)
            ),
            allow_blocking_refresh=bool(refresh.get("allow_blocking_refresh", False)),
            stale_threshold_hours=int(refresh.get("stale_threshold_hours", 6)),
        ),
        archival=ArchivalDefaults(
            archive_after_days=int(archival.get("archive_after_days", 365)),
            purge_after_days=int(archival.get("purge_after_days", 2_555)),
            job_hour=int(archival.get("job_hour", 2)),
            job_minute=int(archival.get("job_minute", 30)),
        ),
        schedule=ScheduleDefaults(
            schedule_time=str(schedule.get("schedule_time", "05:00")),
            timezone=str(schedule.get("timezone", "Europe/London")),
            is_enabled=bool(schedule.get("is_enabled", True)),
            post_ingestion_enabled=bool(schedule.get("post_ingestion_enabled", False)),
        ),
    )


def load_config(path: str | Path = "config.yaml") -> MvKeeperConfig:
    """Read *path* and return a :class:`MvKeeperConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    ValueError
        If a category or view is declared twice.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh)

    return config_from_dict(raw, base_dir=config_path.resolve().parent)
