"""
Declarative seed-row reconciliation.

Keeps reference/lookup tables in line with a fixed set of seed rows:
- match each seed row against stored rows by its constraint columns
- update matches in place, insert the rest, all in one transaction
- realign the primary-key sequence with explicitly seeded ids
"""

from seedsync.errors import ConfigurationError, PersistenceError, SequenceRepairWarning
from seedsync.reconciler import SeedReconciler, reconcile, seed, seed_once
from seedsync.store import EntityType, PostgresStore, Record, SequenceAware, SqlStore, create_engine, store_for

__all__ = [
    "ConfigurationError",
    "EntityType",
    "PersistenceError",
    "PostgresStore",
    "Record",
    "SeedReconciler",
    "SequenceAware",
    "SequenceRepairWarning",
    "SqlStore",
    "create_engine",
    "reconcile",
    "seed",
    "seed_once",
    "store_for",
]
