"""Change events delivered by the cluster watch feed."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from guardian.policies.models import Policy


@dataclass(frozen=True)
class UpsertEvent:
    policy: Policy

    @property
    def key(self) -> str:
        return self.policy.id


@dataclass(frozen=True)
class DeleteEvent:
    policy_id: str

    @property
    def key(self) -> str:
        return self.policy_id


ChangeEvent = Union[UpsertEvent, DeleteEvent]
