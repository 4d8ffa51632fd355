"""
Storage

SQLite-backed persistence for sessions, transcript segments and the
per-class knowledge base.
"""

from classpartner_core.storage.database import Base, DatabaseManager
from classpartner_core.storage.store import TranscriptStore, format_time

__all__ = ["Base", "DatabaseManager", "TranscriptStore", "format_time"]
