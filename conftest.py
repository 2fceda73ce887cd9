"""
Root pytest configuration.

Declares plugins at the root level and provides the settings the app
requires before any `app` module is imported.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("ACCOUNTING_API_URL", "")
os.environ.setdefault("SYNC_RETRY_ENABLED", "false")

# Explicitly enable pytest-asyncio at the root level
pytest_plugins = ("pytest_asyncio",)
