"""Root pytest configuration.

Test settings are forced before any ``sheetwise`` module is imported:
the database module builds its engine at import time and the tasks
module picks its broker at import time.
"""

import os

os.environ.setdefault("DB_DEV_FALLBACK_SQLITE", "true")
os.environ.setdefault("STORAGE_BACKEND", "filesystem")
os.environ.setdefault("DRAMATIQ_TESTING", "true")
os.environ.setdefault("SENTRY_DSN", "")
