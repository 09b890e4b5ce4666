"""Utilities for ingesting Terraforming Mars replay logs into SQLite."""

from .blob_store import HttpBlobStore, LocalBlobStore
from .db import SQLiteStore
from .document import DocumentValidationError, RawLogDocument, load_document, parse_document
from .extract import ExtractionError, FactExtractor
from .ingest import IngestionService
from .writer import TransactionalWriter

__all__ = [
    "DocumentValidationError",
    "ExtractionError",
    "FactExtractor",
    "HttpBlobStore",
    "IngestionService",
    "LocalBlobStore",
    "RawLogDocument",
    "SQLiteStore",
    "TransactionalWriter",
    "load_document",
    "parse_document",
]
