"""Database layer for Codified with async SQLAlchemy."""

from codified.db.connection import get_session, init_db
from codified.db.models import (
    Base,
    CanonicalCodeModel,
    CodifiedExtractionModel,
    DataLibrarySnapshotModel,
    DocumentModel,
    MergeTaskModel,
    ProjectDataItemModel,
    ProjectModel,
)

__all__ = [
    "Base",
    "CanonicalCodeModel",
    "CodifiedExtractionModel",
    "DataLibrarySnapshotModel",
    "DocumentModel",
    "MergeTaskModel",
    "ProjectDataItemModel",
    "ProjectModel",
    "get_session",
    "init_db",
]
