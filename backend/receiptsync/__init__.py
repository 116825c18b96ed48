"""Top-level package for the ReceiptSync backend.

ReceiptSync ingests receipt images, extracts structured financial data
from them and keeps the extracted records in sync with external
destinations such as Google Sheets and Notion. The package contains the
SQLAlchemy models, pydantic schemas, the service layer (fingerprinting,
deduplication, admission control, connection and destination
management, export/sync orchestration), the FastAPI routers and the
Dramatiq actors used by the background worker.

To run the API locally you can execute:

```bash
uvicorn receiptsync.api.main:app --reload
```

and start a worker with:

```bash
dramatiq receiptsync.worker --processes 1 --threads 4
```

The default configuration uses a local SQLite database stored in
``receiptsync.db`` when ``DB_DEV_FALLBACK_SQLITE`` is enabled. Override
configuration values using environment variables or a ``.env`` file at
the project root.
"""

__all__: list[str] = []  # explicit for linters; populated dynamically elsewhere if needed
