"""
AI pipeline: rolling buffer, throttled summarization, hybrid retrieval
and the worker actor with its host.
"""

from classpartner_core.pipeline.buffer import RollingBuffer
from classpartner_core.pipeline.messages import Message, MessageChannel, MessageType
from classpartner_core.pipeline.pipeline import AIPipeline
from classpartner_core.pipeline.requests import PendingRequests
from classpartner_core.pipeline.retrieval import HybridRetriever, format_hit, format_offset, keyword_score
from classpartner_core.pipeline.summarizer import ThrottledSummarizer
from classpartner_core.pipeline.worker import AIWorker, WorkerState

__all__ = [
    "AIPipeline",
    "AIWorker",
    "WorkerState",
    "RollingBuffer",
    "ThrottledSummarizer",
    "HybridRetriever",
    "PendingRequests",
    "Message",
    "MessageChannel",
    "MessageType",
    "keyword_score",
    "format_hit",
    "format_offset",
]
