"""Kubernetes API client for reading policies/namespaces and writing policy status."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Protocol, runtime_checkable

from pydantic import ValidationError

from timesync.config import load_operator_config
from timesync.core.errors import ClusterError, ConflictError, NotFoundError, ReadError, WriteError
from timesync.core.models import Namespace, TimeSyncPolicy

logger = logging.getLogger(__name__)

_api_client = None
_core_v1_api = None
_custom_objects_api = None
_config_loaded = False
_init_lock = threading.Lock()


@dataclass(frozen=True)
class WatchEvent:
    """One watch notification. `obj` is None when the object could not be parsed."""

    type: str
    obj: Any
    resource_version: Optional[str]


@runtime_checkable
class ClusterClient(Protocol):
    def get_policy(self, name: str) -> TimeSyncPolicy: ...

    def list_policies(self) -> List[TimeSyncPolicy]: ...

    def list_namespaces(self) -> List[Namespace]: ...

    def get_namespace(self, name: str) -> Namespace: ...

    def update_policy_status(self, policy: TimeSyncPolicy) -> TimeSyncPolicy: ...


class DefaultClusterClient:
    def get_policy(self, name: str) -> TimeSyncPolicy:
        return get_policy(name)

    def list_policies(self) -> List[TimeSyncPolicy]:
        return list_policies()

    def list_namespaces(self) -> List[Namespace]:
        return list_namespaces()

    def get_namespace(self, name: str) -> Namespace:
        return get_namespace(name)

    def update_policy_status(self, policy: TimeSyncPolicy) -> TimeSyncPolicy:
        return update_policy_status(policy)

    def watch_policies(self, *, resource_version: Optional[str], timeout_seconds: int) -> Iterator[WatchEvent]:
        return watch_policies(resource_version=resource_version, timeout_seconds=timeout_seconds)

    def watch_namespaces(self, *, resource_version: Optional[str], timeout_seconds: int) -> Iterator[WatchEvent]:
        return watch_namespaces(resource_version=resource_version, timeout_seconds=timeout_seconds)


def get_cluster_client() -> DefaultClusterClient:
    """Seam for swapping client implementations (tests inject fakes instead)."""
    return DefaultClusterClient()


def _ensure_config_loaded() -> None:
    """Load in-cluster config, falling back to kubeconfig. Caller holds `_init_lock`."""
    global _config_loaded
    if _config_loaded:
        return
    from kubernetes import config

    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()
    _config_loaded = True


def _get_api_client():
    """Return a cached ApiClient (used for (de)serialization of typed objects)."""
    global _api_client
    if _api_client is not None:
        return _api_client

    with _init_lock:
        if _api_client is not None:
            return _api_client
        from kubernetes import client

        _ensure_config_loaded()
        _api_client = client.ApiClient()
        return _api_client


def _get_core_v1():
    """Return a cached CoreV1Api client (thread-safe lazy init)."""
    global _core_v1_api
    if _core_v1_api is not None:
        return _core_v1_api

    api_client = _get_api_client()
    with _init_lock:
        if _core_v1_api is not None:
            return _core_v1_api
        from kubernetes import client

        _core_v1_api = client.CoreV1Api(api_client)
        return _core_v1_api


def _get_custom_objects():
    """Return a cached CustomObjectsApi client (thread-safe lazy init)."""
    global _custom_objects_api
    if _custom_objects_api is not None:
        return _custom_objects_api

    api_client = _get_api_client()
    with _init_lock:
        if _custom_objects_api is not None:
            return _custom_objects_api
        from kubernetes import client

        _custom_objects_api = client.CustomObjectsApi(api_client)
        return _custom_objects_api


def _policy_coords() -> Dict[str, str]:
    cfg = load_operator_config()
    return {"group": cfg.api_group, "version": cfg.api_version, "plural": cfg.plural}


def _translate_error(e: Exception, *, action: str, write: bool = False) -> ClusterError:
    """
    Map a client exception onto the operator's error taxonomy.

    ApiException details (reason/body) are preserved in the message.
    """
    if isinstance(e, ClusterError):
        return e

    from kubernetes.client.rest import ApiException

    if isinstance(e, ApiException):
        msg = f"Kubernetes API error while {action}: {e.reason} - {e.body}"
        if e.status == 404:
            return NotFoundError(msg, status=404)
        if write and e.status == 409:
            return ConflictError(msg, status=409)
        if write:
            return WriteError(msg, status=e.status)
        return ReadError(msg, status=e.status)

    if write:
        return WriteError(f"Failed {action}: {str(e)}")
    return ReadError(f"Failed {action}: {str(e)}")


def _namespace_from_api(obj: Any) -> Namespace:
    if isinstance(obj, dict):
        return Namespace.model_validate(obj)
    return Namespace.model_validate(_get_api_client().sanitize_for_serialization(obj))


def _policy_from_api(obj: Dict[str, Any]) -> TimeSyncPolicy:
    try:
        return TimeSyncPolicy.model_validate(obj)
    except ValidationError as e:
        name = ((obj or {}).get("metadata") or {}).get("name")
        raise ReadError(f"Malformed TimeSyncPolicy {name!r}: {e}") from e


def get_policy(name: str) -> TimeSyncPolicy:
    """Fetch one (cluster-scoped) TimeSyncPolicy by name."""
    try:
        api = _get_custom_objects()
        obj = api.get_cluster_custom_object(name=name, **_policy_coords())
    except Exception as e:
        raise _translate_error(e, action=f"reading TimeSyncPolicy {name}") from e
    return _policy_from_api(obj)


def list_policies() -> List[TimeSyncPolicy]:
    """
    List all TimeSyncPolicies, sorted by name.

    Sorting gives first-match selection a deterministic tie-break. Objects that do not
    validate are skipped (logged) so one bad object cannot hide every other policy.
    """
    try:
        api = _get_custom_objects()
        resp = api.list_cluster_custom_object(**_policy_coords())
    except Exception as e:
        raise _translate_error(e, action="listing TimeSyncPolicies") from e

    policies: List[TimeSyncPolicy] = []
    for item in (resp or {}).get("items") or []:
        try:
            policies.append(_policy_from_api(item))
        except ReadError as e:
            logger.warning("Skipping policy: %s", e)
    policies.sort(key=lambda p: p.name)
    return policies


def list_namespaces() -> List[Namespace]:
    try:
        v1 = _get_core_v1()
        ns_list = v1.list_namespace()
        return [_namespace_from_api(ns) for ns in ns_list.items or []]
    except Exception as e:
        raise _translate_error(e, action="listing namespaces") from e


def get_namespace(name: str) -> Namespace:
    try:
        v1 = _get_core_v1()
        ns = v1.read_namespace(name=name)
        return _namespace_from_api(ns)
    except Exception as e:
        raise _translate_error(e, action=f"reading namespace {name}") from e


def update_policy_status(policy: TimeSyncPolicy) -> TimeSyncPolicy:
    """
    Persist `policy.status` through the status subresource.

    The body carries `metadata.resourceVersion`; a stale version is rejected by the API
    server with 409 and surfaces as `ConflictError`.
    """
    try:
        api = _get_custom_objects()
        obj = api.replace_cluster_custom_object_status(name=policy.name, body=policy.to_k8s(), **_policy_coords())
    except Exception as e:
        raise _translate_error(e, action=f"updating status of TimeSyncPolicy {policy.name}", write=True) from e
    return _policy_from_api(obj)


def _raw_resource_version(raw: Any) -> Optional[str]:
    if isinstance(raw, dict):
        return ((raw.get("metadata") or {}).get("resourceVersion")) or None
    return getattr(getattr(raw, "metadata", None), "resource_version", None)


def _watch_stream(list_func: Any, convert: Any, *, resource_version: Optional[str], timeout_seconds: int, **kwargs):
    from kubernetes import watch

    w = watch.Watch()
    if resource_version:
        kwargs["resource_version"] = resource_version
    try:
        for event in w.stream(list_func, timeout_seconds=timeout_seconds, **kwargs):
            event_type = str(event.get("type", ""))
            raw = event.get("object")
            if event_type == "ERROR":
                code = raw.get("code") if isinstance(raw, dict) else getattr(raw, "code", None)
                raise ReadError(f"watch error event: {raw}", status=code)
            if raw is None:
                continue
            try:
                obj = convert(raw)
            except ReadError as e:
                # Skip the object but keep its resourceVersion so a restart resumes past it.
                logger.warning("Skipping %s watch event: %s", event_type, e)
                yield WatchEvent(type=event_type, obj=None, resource_version=_raw_resource_version(raw))
                continue
            yield WatchEvent(type=event_type, obj=obj, resource_version=obj.metadata.resource_version)
    except ClusterError:
        raise
    except Exception as e:
        raise _translate_error(e, action="watching") from e
    finally:
        w.stop()


def watch_policies(*, resource_version: Optional[str], timeout_seconds: int) -> Iterator[WatchEvent]:
    """Stream TimeSyncPolicy events. Without a resource version the stream starts with the current state."""
    return _watch_stream(
        _get_custom_objects().list_cluster_custom_object,
        _policy_from_api,
        resource_version=resource_version,
        timeout_seconds=timeout_seconds,
        **_policy_coords(),
    )


def watch_namespaces(*, resource_version: Optional[str], timeout_seconds: int) -> Iterator[WatchEvent]:
    """Stream Namespace events. Without a resource version the stream starts with the current state."""
    return _watch_stream(
        _get_core_v1().list_namespace,
        _namespace_from_api,
        resource_version=resource_version,
        timeout_seconds=timeout_seconds,
    )
