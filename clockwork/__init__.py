"""
Clockwork — Guild Achievement Progression Engine
==================================================
Tracks per-user progress toward guild achievements organised into
multi-tier series (Bronze → Master), scales requirements and rewards per
tier, detects completions, unlocks successor tiers, and surfaces freshly
completed achievements to the UI exactly once.

Package layout::

    clockwork/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Categories, reward formatting
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # Catalog + ledger ORM models
    ├── engine/
    │   ├── tiers.py       # Static tier catalog + scaling
    │   ├── events.py      # ProgressEvent envelope
    │   ├── progression.py # Pure progression rules (chains, cursor)
    │   ├── cache.py       # In-memory catalog cache
    │   └── errors.py      # Typed domain errors
    ├── services/
    │   ├── progress_service.py     # Ledger updates, claims, listings
    │   ├── catalog_service.py      # Audit-logged catalog mutations
    │   ├── notification_service.py # Watermark notifier + payloads
    │   ├── price_service.py        # TTL cache with fallback policy
    │   └── seed.py                 # YAML catalog seeder
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Engine, config, JWT identity
        └── routes/        # Public, user and admin REST endpoints
"""

__version__ = "0.1.0"
