"""
Cluster API surface the reconcile engine and aggregator depend on.

Implementations raise the errors from ``guardian.core.errors``:
ConflictError / ApiTimeoutError / TransientApiError for retryable failures and
NotFoundError when the object is gone.
"""

from __future__ import annotations

from typing import AsyncIterator, Protocol

from guardian.policies.models import Policy, PolicyStatus
from guardian.reconcile.events import ChangeEvent


class PolicyApi(Protocol):
    async def get_policy(self, name: str) -> Policy: ...

    async def update_status(self, name: str, generation: int, status: PolicyStatus) -> None: ...

    async def add_finalizer(self, name: str) -> None: ...

    async def remove_finalizer(self, name: str) -> None: ...

    async def list_policies(self) -> list[Policy]: ...

    def watch(self) -> AsyncIterator[ChangeEvent]: ...

    async def ping(self) -> None: ...

    async def aclose(self) -> None: ...
