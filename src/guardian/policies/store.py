"""
Copy-on-write policy store for one cluster.

Writers build a new immutable snapshot and swap the reference; readers keep
whatever snapshot they captured, so a read never waits for a writer and never
sees a half-applied change.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterator, Mapping

import structlog

from guardian.policies.models import Policy

logger = structlog.get_logger()


@dataclass(frozen=True)
class PolicySnapshot:
    """Immutable point-in-time policy set, iterated in id order."""

    version: int = 0
    policies: tuple[Policy, ...] = ()
    _index: Mapping[str, Policy] = field(default_factory=lambda: MappingProxyType({}), repr=False)

    @classmethod
    def build(cls, version: int, by_id: dict[str, Policy]) -> PolicySnapshot:
        ordered = tuple(by_id[key] for key in sorted(by_id))
        return cls(version=version, policies=ordered, _index=MappingProxyType(dict(by_id)))

    def get(self, policy_id: str) -> Policy | None:
        return self._index.get(policy_id)

    def __contains__(self, policy_id: object) -> bool:
        return policy_id in self._index

    def __iter__(self) -> Iterator[Policy]:
        return iter(self.policies)

    def __len__(self) -> int:
        return len(self.policies)


class PolicyStore:
    """In-memory policy set of one cluster."""

    def __init__(self, cluster_id: str = "local") -> None:
        self.cluster_id = cluster_id
        self._snapshot = PolicySnapshot()
        self._write_lock = threading.Lock()
        self._synced = asyncio.Event()

    def snapshot(self) -> PolicySnapshot:
        """Return the current snapshot. Never blocks."""
        return self._snapshot

    def get(self, policy_id: str) -> Policy | None:
        return self._snapshot.get(policy_id)

    def __len__(self) -> int:
        return len(self._snapshot)

    def upsert(self, policy: Policy) -> bool:
        """
        Insert or replace a policy.

        A policy whose generation is not newer than the stored one is ignored;
        stale and duplicate change events are expected under at-least-once
        delivery.

        Returns:
            True if the store changed
        """
        with self._write_lock:
            current = self._snapshot.get(policy.id)
            if current is not None and policy.generation <= current.generation:
                logger.debug(
                    "policy_upsert_ignored",
                    cluster_id=self.cluster_id,
                    policy=policy.id,
                    generation=policy.generation,
                    stored_generation=current.generation,
                )
                return False

            by_id = dict(self._snapshot._index)
            by_id[policy.id] = policy
            self._snapshot = PolicySnapshot.build(self._snapshot.version + 1, by_id)
            return True

    def replace(self, policy: Policy) -> None:
        """Overwrite the stored copy of a policy at the same generation.

        Used by the reconcile engine to record metadata it changed itself,
        such as an attached finalizer.
        """
        with self._write_lock:
            by_id = dict(self._snapshot._index)
            by_id[policy.id] = policy
            self._snapshot = PolicySnapshot.build(self._snapshot.version + 1, by_id)

    def remove(self, policy_id: str) -> bool:
        """Remove a policy. Returns True if it was present."""
        with self._write_lock:
            if policy_id not in self._snapshot:
                return False
            by_id = dict(self._snapshot._index)
            del by_id[policy_id]
            self._snapshot = PolicySnapshot.build(self._snapshot.version + 1, by_id)
            return True

    @property
    def synced(self) -> bool:
        """Readiness predicate: true once the initial sync completed."""
        return self._synced.is_set()

    def mark_synced(self) -> None:
        if not self._synced.is_set():
            logger.info("policy_store_synced", cluster_id=self.cluster_id, policies=len(self))
        self._synced.set()

    async def fetch_snapshot(self) -> PolicySnapshot:
        """Wait for the initial sync, then return the current snapshot."""
        if not self._synced.is_set():
            await self._synced.wait()
        return self._snapshot
