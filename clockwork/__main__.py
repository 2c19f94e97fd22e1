"""
clockwork.__main__ — Entry point for ``python -m clockwork``
=============================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (soft settings).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Seed the default catalog if needed.
5. Serve the API with uvicorn (blocking).

Run with::

    python -m clockwork
"""

from __future__ import annotations

import logging

import uvicorn
from dotenv import load_dotenv

from clockwork.config import load_config
from clockwork.database.engine import create_db_engine, init_db
from clockwork.services.seed import seed_database

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("clockwork")


def main() -> None:
    """Bootstrap the database and run the Clockwork API."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    cfg = load_config()
    logger.info("Config loaded — Community: %s", cfg.community_name)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. Default catalog (idempotent).
    seed_database(engine)
    engine.dispose()

    # 5. API (the app builds its own engine and catalog cache).
    uvicorn.run("clockwork.api.main:app", host="0.0.0.0", port=cfg.dashboard_port)


if __name__ == "__main__":
    main()
