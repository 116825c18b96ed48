"""Dramatiq worker configuration.

This module initialises Sentry, makes sure the tables exist and imports
all tasks so they are registered when the worker starts.

Run with:
    dramatiq receiptsync.worker
"""

import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Load the repo root .env explicitly to avoid relying on CWD
repo_root = Path(__file__).resolve().parents[2]
root_env = repo_root / ".env"
if root_env.exists():
    load_dotenv(dotenv_path=str(root_env), override=False)

from receiptsync.core.config import settings  # noqa: E402
from receiptsync.core.database import init_db  # noqa: E402
from receiptsync.core.observability import init_sentry  # noqa: E402

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("receiptsync.worker")

if init_sentry("worker"):
    logger.info("[worker] Sentry SDK initialized")

if settings.ENVIRONMENT != "production":
    asyncio.run(init_db())

# Import tasks to register them with the broker
from receiptsync.core.tasks import (  # noqa: E402,F401
    broker,
    process_receipt,
    process_stripe_event,
    run_export_job,
    sync_receipt,
)

logger.info("[worker] tasks registered: %s", ", ".join(sorted(broker.get_declared_actors())))
