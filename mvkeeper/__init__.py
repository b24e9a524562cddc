"""
mvkeeper — Materialized-View Refresh & Database Maintenance
============================================================
Keeps PostgreSQL materialized views fresh without locking out readers,
records every refresh attempt in an append-only ledger, and moves old
audit events into cold storage.

Package layout::

    mvkeeper/
    ├── config.py          # YAML → typed Python config
    ├── __main__.py        # CLI (python -m mvkeeper …)
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── executor.py    # execute / query primitives + error taxonomy
    │   └── models.py      # mv_refresh_history, mv_refresh_schedule
    ├── schema/
    │   └── provider.py    # DDL statements, view categories, archive SQL
    ├── services/
    │   ├── refresh_engine.py     # Single-view refresh + blocking policy
    │   ├── batch_orchestrator.py # All / category / staggered refreshes
    │   ├── history_ledger.py     # Refresh ledger + freshness monitor
    │   ├── schedule_service.py   # Refresh schedule upsert
    │   ├── provisioning.py       # Idempotent index/view/table creation
    │   ├── archival.py           # Audit event archive + purge
    │   └── maintenance.py        # Facade used by API, CLI and jobs
    ├── jobs/
    │   └── scheduler.py   # APScheduler cron jobs
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Engine, service, admin JWT dependencies
        └── routes/        # /admin/db-optimization endpoints
"""

__version__ = "0.1.0"
