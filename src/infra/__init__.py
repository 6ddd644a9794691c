"""
Infrastructure module for Receipt Insights.

This module provides the storage plumbing shared by the services:
- Async SQLAlchemy engine / session factory and table creation
- Local upload store for receipt images
"""

from src.infra.database import (
    SessionFactory,
    check_database,
    create_engine_and_factory,
    init_models,
)
from src.infra.file_store import LocalFileStore, safe_file_name

__all__ = [
    # Database
    "SessionFactory",
    "check_database",
    "create_engine_and_factory",
    "init_models",
    # Uploads
    "LocalFileStore",
    "safe_file_name",
]
