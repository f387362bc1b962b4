"""Persistence — SQLite primary, in-memory fallback, reconciliation."""

from .base import DuplicateCheckError, Store, StoreError, StoreUnavailable
from .memory import DirtySnapshot, MemoryStore
from .prober import ReachabilityProber
from .reconciler import Reconciler
from .resilient import ResilientStore, StoreState
from .sqlite import SqliteDatabase, SqliteStore
