"""In-memory cluster API for local development and tests."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from dataclasses import replace
from typing import AsyncIterator

from guardian.core.errors import ConflictError, GuardianError, NotFoundError
from guardian.policies.models import Policy, PolicyStatus
from guardian.reconcile.events import ChangeEvent, DeleteEvent, UpsertEvent


class InMemoryPolicyApi:
    """
    Simple asyncio-backed stand-in for a cluster's GuardianPolicy API.

    ``apply`` and ``delete`` play the part of a user editing resources;
    every change is published to ``watch()`` subscribers. Failures can be
    scripted per method with ``fail_next``.
    """

    def __init__(self, ping_delay: float = 0.0) -> None:
        self.objects: dict[str, Policy] = {}
        self.deleting: set[str] = set()
        self.status_writes: list[tuple[str, PolicyStatus]] = []
        self.ping_delay = ping_delay
        self._failures: dict[str, deque[GuardianError]] = defaultdict(deque)
        self._subscribers: list[asyncio.Queue[ChangeEvent]] = []

    def fail_next(self, method: str, error: GuardianError, times: int = 1) -> None:
        for _ in range(times):
            self._failures[method].append(error)

    def _maybe_fail(self, method: str) -> None:
        pending = self._failures.get(method)
        if pending:
            raise pending.popleft()

    def _publish(self, event: ChangeEvent) -> None:
        for queue in self._subscribers:
            queue.put_nowait(event)

    # -- user side --

    def apply(self, policy: Policy) -> Policy:
        """Create or update a policy, bumping the generation on spec changes."""
        current = self.objects.get(policy.name)
        if current is None:
            stored = replace(policy, generation=max(policy.generation, 1))
        else:
            spec_changed = (
                current.severity,
                current.rules,
                current.enabled,
            ) != (policy.severity, policy.rules, policy.enabled)
            stored = replace(
                policy,
                generation=current.generation + 1 if spec_changed else current.generation,
                finalizer_present=current.finalizer_present,
                status=current.status,
                deleting=current.deleting,
            )
        self.objects[stored.name] = stored
        self._publish(UpsertEvent(stored))
        return stored

    def delete(self, name: str) -> None:
        """Request deletion; objects holding a finalizer linger until it clears."""
        if name not in self.objects:
            raise NotFoundError("policy not found", {"policy": name})
        if self.objects[name].finalizer_present:
            self.deleting.add(name)
            self.objects[name] = replace(self.objects[name], deleting=True)
        else:
            del self.objects[name]
        self._publish(DeleteEvent(name))

    # -- PolicyApi --

    async def get_policy(self, name: str) -> Policy:
        self._maybe_fail("get_policy")
        try:
            return self.objects[name]
        except KeyError:
            raise NotFoundError("policy not found", {"policy": name}) from None

    async def update_status(self, name: str, generation: int, status: PolicyStatus) -> None:
        self._maybe_fail("update_status")
        current = await self.get_policy(name)
        if current.generation != generation:
            raise ConflictError(
                "policy changed since it was read",
                {"policy": name, "generation": generation, "current": current.generation},
            )
        self.objects[name] = replace(current, status=status)
        self.status_writes.append((name, status))

    async def add_finalizer(self, name: str) -> None:
        self._maybe_fail("add_finalizer")
        current = await self.get_policy(name)
        self.objects[name] = replace(current, finalizer_present=True)

    async def remove_finalizer(self, name: str) -> None:
        self._maybe_fail("remove_finalizer")
        current = await self.get_policy(name)
        if name in self.deleting:
            self.deleting.discard(name)
            del self.objects[name]
        else:
            self.objects[name] = replace(current, finalizer_present=False)

    async def list_policies(self) -> list[Policy]:
        """List every object, including those waiting on a finalizer to be deleted."""
        self._maybe_fail("list_policies")
        return [self.objects[name] for name in sorted(self.objects)]

    async def watch(self) -> AsyncIterator[ChangeEvent]:
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(queue)

    async def ping(self) -> None:
        self._maybe_fail("ping")
        if self.ping_delay:
            await asyncio.sleep(self.ping_delay)

    async def aclose(self) -> None:
        return None
