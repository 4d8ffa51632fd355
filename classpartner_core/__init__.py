"""
ClassPartner Core
=================

Live lecture transcription and study-assistant engine.

This package provides:
- A resilient streaming transcription connection
- A rolling transcript buffer with throttled AI summaries
- Multi-provider LLM failover
- Embedding, indexing and hybrid retrieval over sessions and class material
- Vector persistence on SQLite
"""

__version__ = "0.4.0"
