"""
Core module for MusterPoint

Contains configuration management, logging, the document store,
the advisory lock service and the background task queue.
"""

from .database import (
    DatabaseError,
    TransientStoreError,
    DocumentNotFoundError,
    DatabaseManager,
    DocumentStore,
    DocumentTransaction,
    Subscription,
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    ArrayAppend,
)
from .locks import AdvisoryLockService, LockUnavailable
from .task_queue import BackgroundTaskQueue

__all__ = [
    'DatabaseError',
    'TransientStoreError',
    'DocumentNotFoundError',
    'DatabaseManager',
    'DocumentStore',
    'DocumentTransaction',
    'Subscription',
    'DELETE_FIELD',
    'SERVER_TIMESTAMP',
    'ArrayAppend',
    'AdvisoryLockService',
    'LockUnavailable',
    'BackgroundTaskQueue',
]
