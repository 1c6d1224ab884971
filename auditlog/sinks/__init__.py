"""Storage backends for audit events."""
from .base import ArchivalSink, AuditSink, QueryableSink, SinkCapabilities
from .blob import BlobStorageSink, LocalBlobContainer
from .database import DatabaseSink

__all__ = [
    "ArchivalSink",
    "AuditSink",
    "BlobStorageSink",
    "DatabaseSink",
    "LocalBlobContainer",
    "QueryableSink",
    "SinkCapabilities",
]
