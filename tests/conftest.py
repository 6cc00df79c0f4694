"""
Pytest config.

Pins the repo root on sys.path so `import timesync` works when invoking a global
`pytest` entrypoint without an editable install, and provides an in-memory cluster
client so no test needs a kubeconfig.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from timesync.core.errors import NotFoundError  # noqa: E402
from timesync.core.models import Namespace, TimeSyncPolicy  # noqa: E402


class FakeClusterClient:
    """
    In-memory stand-in for `DefaultClusterClient`.

    Policies are listed in insertion order. `fail` maps a method name to the exception
    that method should raise.
    """

    def __init__(
        self,
        *,
        policies: Iterable[TimeSyncPolicy] = (),
        namespaces: Iterable[Namespace] = (),
        fail: Optional[Dict[str, Exception]] = None,
    ) -> None:
        self.policies: Dict[str, TimeSyncPolicy] = {p.name: p for p in policies}
        self.namespaces: Dict[str, Namespace] = {ns.name: ns for ns in namespaces}
        self.fail = dict(fail or {})
        self.status_updates: List[TimeSyncPolicy] = []
        self.calls: List[str] = []

    def _maybe_fail(self, method: str) -> None:
        self.calls.append(method)
        err = self.fail.get(method)
        if err is not None:
            raise err

    def get_policy(self, name: str) -> TimeSyncPolicy:
        self._maybe_fail("get_policy")
        if name not in self.policies:
            raise NotFoundError(f"timesyncpolicies {name!r} not found", status=404)
        return self.policies[name].model_copy(deep=True)

    def list_policies(self) -> List[TimeSyncPolicy]:
        self._maybe_fail("list_policies")
        return [p.model_copy(deep=True) for p in self.policies.values()]

    def list_namespaces(self) -> List[Namespace]:
        self._maybe_fail("list_namespaces")
        return [ns.model_copy(deep=True) for ns in self.namespaces.values()]

    def get_namespace(self, name: str) -> Namespace:
        self._maybe_fail("get_namespace")
        if name not in self.namespaces:
            raise NotFoundError(f"namespaces {name!r} not found", status=404)
        return self.namespaces[name].model_copy(deep=True)

    def update_policy_status(self, policy: TimeSyncPolicy) -> TimeSyncPolicy:
        self._maybe_fail("update_policy_status")
        stored = policy.model_copy(deep=True)
        self.status_updates.append(stored)
        self.policies[policy.name] = stored
        return stored


@pytest.fixture
def fake_cluster():
    return FakeClusterClient


def make_policy(
    name: str,
    *,
    match_labels: Optional[Dict[str, str]] = None,
    match_expressions: Optional[List[Dict[str, Any]]] = None,
    enable: bool = True,
    image: str = "timesync:latest",
    matched: int = 0,
) -> TimeSyncPolicy:
    selector: Dict[str, Any] = {}
    if match_labels is not None:
        selector["matchLabels"] = match_labels
    if match_expressions is not None:
        selector["matchExpressions"] = match_expressions
    return TimeSyncPolicy.model_validate(
        {
            "metadata": {"name": name, "resourceVersion": "1"},
            "spec": {"namespaceSelector": selector, "enable": enable, "image": image},
            "status": {"matchedNamespaces": matched},
        }
    )


def make_namespace(name: str, labels: Optional[Dict[str, str]] = None) -> Namespace:
    return Namespace.model_validate({"metadata": {"name": name, "labels": labels}})


@pytest.fixture
def policy_factory():
    return make_policy


@pytest.fixture
def namespace_factory():
    return make_namespace


@pytest.fixture(autouse=True)
def _fresh_operator_config() -> Any:
    """`load_operator_config` is lru_cached; tests that set env vars must not leak into others."""
    from timesync.config import load_operator_config

    load_operator_config.cache_clear()
    yield
    load_operator_config.cache_clear()
