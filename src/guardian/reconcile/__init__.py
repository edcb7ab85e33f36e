"""
Policy reconciliation: change events, backoff, the engine and the cluster API
adapters it drives.
"""

from guardian.reconcile.api import PolicyApi
from guardian.reconcile.backoff import Backoff
from guardian.reconcile.engine import ReconcileCounters, ReconcileEngine, ReconcilePhase
from guardian.reconcile.events import ChangeEvent, DeleteEvent, UpsertEvent
from guardian.reconcile.memory import InMemoryPolicyApi

__all__ = [
    "Backoff",
    "ChangeEvent",
    "DeleteEvent",
    "InMemoryPolicyApi",
    "PolicyApi",
    "ReconcileCounters",
    "ReconcileEngine",
    "ReconcilePhase",
    "UpsertEvent",
]
