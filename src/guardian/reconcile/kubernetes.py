"""
Kubernetes-backed GuardianPolicy API.

Talks to the cluster through the official ``kubernetes`` client
(CustomObjectsApi, guardian.io/v1 ``guardianpolicies``). The client is
synchronous, so every call runs in the default executor.

Configuration:
    kubeconfig: Path to kubeconfig file (optional)
    context: Kubeconfig context to use (optional)
    timeout: API request timeout in seconds

Without kubeconfig or context the in-cluster service account is used.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from functools import partial
from typing import Any, AsyncIterator

import structlog

from guardian.core.errors import (
    ApiTimeoutError,
    ConflictError,
    GuardianError,
    NotFoundError,
    TransientApiError,
    ValidationError,
)
from guardian.policies.models import Policy, PolicyStatus
from guardian.policies.schema import (
    GROUP,
    PLURAL,
    VERSION,
    is_being_deleted,
    policy_from_resource,
)
from guardian.reconcile.events import ChangeEvent, DeleteEvent, UpsertEvent

logger = structlog.get_logger()

_STREAM_END = object()


def translate_api_error(exc: Exception, **details: Any) -> GuardianError:
    """Map a kubernetes client exception onto the Guardian error taxonomy."""
    from kubernetes.client.exceptions import ApiException
    from urllib3.exceptions import HTTPError, TimeoutError

    if isinstance(exc, ApiException):
        details = {"status": exc.status, **details}
        if exc.status == 404:
            return NotFoundError("object not found", details)
        if exc.status == 409:
            return ConflictError("object was modified concurrently", details)
        if exc.status in (408, 504):
            return ApiTimeoutError("cluster API timed out", details)
        if exc.status == 429 or (exc.status or 0) >= 500:
            return TransientApiError(f"cluster API error: {exc.reason}", details)
        return GuardianError(f"cluster API rejected the request: {exc.reason}", details)
    if isinstance(exc, TimeoutError):
        return ApiTimeoutError("cluster API timed out", {"error": str(exc), **details})
    if isinstance(exc, (HTTPError, OSError)):
        return TransientApiError("cluster API unreachable", {"error": str(exc), **details})
    return GuardianError(str(exc), details)


@dataclass
class KubernetesPolicyApi:
    """GuardianPolicy access for one cluster."""

    kubeconfig: str | None = None
    context: str | None = None
    timeout: float = 10.0
    finalizer_name: str = "guardian.io/finalizer"
    watch_timeout: int = 300

    # Internal state
    _api_client: Any = field(default=None, repr=False, compare=False)
    _list_resource_version: str | None = field(default=None, repr=False, compare=False)

    def _ensure_initialized(self) -> Any:
        if self._api_client is not None:
            return self._api_client

        from kubernetes import client, config

        try:
            if self.kubeconfig or self.context:
                self._api_client = config.new_client_from_config(
                    config_file=self.kubeconfig,
                    context=self.context,
                )
            else:
                configuration = client.Configuration()
                config.load_incluster_config(client_configuration=configuration)
                self._api_client = client.ApiClient(configuration)
        except config.ConfigException as e:
            raise GuardianError(
                "failed to load Kubernetes config",
                {"context": self.context, "error": str(e)},
            ) from e

        return self._api_client

    def _custom_objects(self) -> Any:
        from kubernetes import client

        return client.CustomObjectsApi(self._ensure_initialized())

    async def _run_sync(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Run a synchronous kubernetes API call in the executor."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(func, *args, **kwargs))
        except GuardianError:
            raise
        except Exception as exc:
            raise translate_api_error(exc, context=self.context) from exc

    async def _get_raw(self, name: str) -> dict[str, Any]:
        api = self._custom_objects()
        return await self._run_sync(
            api.get_cluster_custom_object,
            GROUP,
            VERSION,
            PLURAL,
            name,
            _request_timeout=self.timeout,
        )

    async def get_policy(self, name: str) -> Policy:
        return policy_from_resource(await self._get_raw(name), self.finalizer_name)

    async def update_status(self, name: str, generation: int, status: PolicyStatus) -> None:
        raw = await self._get_raw(name)
        current = (raw.get("metadata") or {}).get("generation", 1)
        if current != generation:
            raise ConflictError(
                "policy changed since it was read",
                {"policy": name, "generation": generation, "current": current},
            )
        raw["status"] = status.to_dict()
        api = self._custom_objects()
        # The body carries metadata.resourceVersion, so a racing write yields 409.
        await self._run_sync(
            api.replace_cluster_custom_object_status,
            GROUP,
            VERSION,
            PLURAL,
            name,
            raw,
            _request_timeout=self.timeout,
        )

    async def _patch_finalizers(self, name: str, add: bool) -> None:
        raw = await self._get_raw(name)
        metadata = raw.get("metadata") or {}
        finalizers = list(metadata.get("finalizers") or [])

        if add == (self.finalizer_name in finalizers):
            return
        if add:
            finalizers.append(self.finalizer_name)
        else:
            finalizers = [f for f in finalizers if f != self.finalizer_name]

        body = {
            "metadata": {
                "finalizers": finalizers,
                "resourceVersion": metadata.get("resourceVersion"),
            }
        }
        api = self._custom_objects()
        await self._run_sync(
            api.patch_cluster_custom_object,
            GROUP,
            VERSION,
            PLURAL,
            name,
            body,
            _request_timeout=self.timeout,
        )

    async def add_finalizer(self, name: str) -> None:
        await self._patch_finalizers(name, add=True)

    async def remove_finalizer(self, name: str) -> None:
        await self._patch_finalizers(name, add=False)

    async def list_policies(self) -> list[Policy]:
        """
        List every GuardianPolicy, remembering the listing's resourceVersion.

        Objects already being deleted are included with ``deleting`` set so a
        resync can still clear their finalizer.
        """
        api = self._custom_objects()
        listing = await self._run_sync(
            api.list_cluster_custom_object,
            GROUP,
            VERSION,
            PLURAL,
            _request_timeout=self.timeout,
        )
        self._list_resource_version = (listing.get("metadata") or {}).get("resourceVersion")

        policies = []
        for item in listing.get("items", []):
            try:
                policies.append(policy_from_resource(item, self.finalizer_name))
            except ValidationError as exc:
                logger.warning("policy_undecodable", problems=exc.problems)
        return policies

    def _to_event(self, raw_event: dict[str, Any]) -> ChangeEvent | None:
        event_type = raw_event.get("type")
        obj = raw_event.get("object") or {}

        if event_type == "ERROR":
            raise TransientApiError("watch stream error", {"object": obj})

        name = (obj.get("metadata") or {}).get("name")
        if not name:
            return None
        if event_type == "DELETED" or is_being_deleted(obj):
            return DeleteEvent(name)
        return UpsertEvent(policy_from_resource(obj, self.finalizer_name))

    async def watch(self) -> AsyncIterator[ChangeEvent]:
        """
        Stream change events starting at the last listing.

        The blocking watch runs on a thread of its own, not in the default
        executor, so a long-lived stream never holds a worker that request
        calls of this or any other cluster are waiting for. Events are handed
        over through an asyncio queue. The iterator ends when the server
        closes the stream.
        """
        from kubernetes import watch

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Any] = asyncio.Queue()
        watcher = watch.Watch()
        api = self._custom_objects()
        stopped = threading.Event()

        def hand_off(item: Any) -> None:
            if stopped.is_set():
                return
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # The loop closed while the stream was still open.
                stopped.set()

        def pump() -> None:
            try:
                for raw_event in watcher.stream(
                    api.list_cluster_custom_object,
                    GROUP,
                    VERSION,
                    PLURAL,
                    resource_version=self._list_resource_version,
                    timeout_seconds=self.watch_timeout,
                ):
                    if stopped.is_set():
                        break
                    hand_off(raw_event)
            except Exception as exc:  # handed to the consumer
                hand_off(exc)
            finally:
                hand_off(_STREAM_END)

        thread = threading.Thread(
            target=pump, name=f"guardian-watch-{self.context or 'in-cluster'}", daemon=True
        )
        thread.start()
        try:
            while True:
                item = await queue.get()
                if item is _STREAM_END:
                    break
                if isinstance(item, Exception):
                    raise translate_api_error(item, context=self.context) from item
                event = self._to_event(item)
                if event is not None:
                    yield event
        finally:
            stopped.set()
            watcher.stop()

    async def ping(self) -> None:
        from kubernetes import client

        api = client.VersionApi(self._ensure_initialized())
        await self._run_sync(api.get_code, _request_timeout=self.timeout)

    async def aclose(self) -> None:
        if self._api_client is not None:
            self._api_client.close()
            self._api_client = None
