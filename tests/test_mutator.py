from __future__ import annotations

import logging

import pytest

from timesync.core.errors import NotAPodError, NotFoundError, ReadError
from timesync.core.models import Pod
from timesync.webhook.mutator import (
    IMAGE_ANNOTATION,
    INJECTED_BY_ANNOTATION,
    PodMutator,
    SidecarTemplate,
    has_timesync_sidecar,
    injected_by,
)


def _pod(namespace: str = "test-namespace", containers=None, annotations=None) -> Pod:
    return Pod.model_validate(
        {
            "metadata": {"name": "test-pod", "namespace": namespace, "annotations": annotations},
            "spec": {"containers": containers if containers is not None else [{"name": "app", "image": "nginx"}]},
        }
    )


@pytest.fixture
def env_test_cluster(fake_cluster, policy_factory, namespace_factory):
    return fake_cluster(
        policies=[policy_factory("timesync", match_labels={"env": "test"}, image="timesync:latest")],
        namespaces=[namespace_factory("test-namespace", {"env": "test"}), namespace_factory("bare", None)],
    )


def test_has_timesync_sidecar() -> None:
    assert has_timesync_sidecar(_pod(containers=[{"name": "timesync"}])) is True
    assert has_timesync_sidecar(_pod(containers=[])) is False
    # The marker alone does not count: the container must be there.
    assert has_timesync_sidecar(_pod(annotations={INJECTED_BY_ANNOTATION: "p"})) is False


def test_injects_sidecar_for_matching_namespace(env_test_cluster) -> None:
    pod = _pod(containers=[{"name": "app"}])
    mutated = PodMutator(env_test_cluster).mutate_pod(pod)

    assert [c.to_k8s() for c in mutated.spec.containers] == [
        {"name": "app"},
        {"name": "timesync", "image": "timesync:latest", "args": ["sleep", "infinity"]},
    ]
    assert injected_by(mutated) == ("timesync", "timesync:latest")
    assert mutated.metadata.annotations[IMAGE_ANNOTATION] == "timesync:latest"
    # Input untouched.
    assert pod.container_names() == ["app"]
    assert pod.metadata.annotations == {}


def test_second_invocation_does_not_duplicate(env_test_cluster) -> None:
    mutator = PodMutator(env_test_cluster)
    once = mutator.mutate_pod(_pod())
    twice = mutator.mutate_pod(once)
    assert twice is once
    assert twice.container_names().count("timesync") == 1


def test_marker_without_container_is_reinjected(env_test_cluster, caplog) -> None:
    pod = _pod(
        containers=[{"name": "app"}],
        annotations={INJECTED_BY_ANNOTATION: "old-policy", IMAGE_ANNOTATION: "timesync:0.9"},
    )
    with caplog.at_level(logging.WARNING):
        mutated = PodMutator(env_test_cluster).mutate_pod(pod)

    assert mutated.container_names() == ["app", "timesync"]
    assert mutated.spec.containers[-1].image == "timesync:latest"
    assert injected_by(mutated) == ("timesync", "timesync:latest")
    assert "was injected from old-policy (timesync:0.9) but timesync now selects it (timesync:latest)" in caplog.text


def test_existing_container_named_timesync_is_left_alone(env_test_cluster) -> None:
    pod = _pod(containers=[{"name": "app"}, {"name": "timesync", "image": "old:1"}])
    mutated = PodMutator(env_test_cluster).mutate_pod(pod)
    assert mutated is pod
    assert mutated.spec.containers[1].image == "old:1"
    # Short-circuits before any cluster read.
    assert env_test_cluster.calls == []


def test_namespace_without_labels_is_not_mutated(env_test_cluster) -> None:
    pod = _pod(namespace="bare")
    assert PodMutator(env_test_cluster).mutate_pod(pod) is pod


@pytest.mark.parametrize(
    "failing",
    [
        {"get_namespace": ReadError("connection refused")},
        {"get_namespace": NotFoundError("namespaces 'x' not found", status=404)},
        {"list_policies": ReadError("timeout")},
    ],
)
def test_read_failures_fail_open(fake_cluster, policy_factory, namespace_factory, failing, caplog) -> None:
    cluster = fake_cluster(
        policies=[policy_factory("p", match_labels={"env": "test"})],
        namespaces=[namespace_factory("test-namespace", {"env": "test"})],
        fail=failing,
    )
    pod = _pod()
    with caplog.at_level(logging.ERROR):
        result = PodMutator(cluster).mutate_pod(pod)
    assert result is pod
    assert "admitting pod without sidecar" in caplog.text


def test_missing_namespace_fails_open(fake_cluster, policy_factory) -> None:
    cluster = fake_cluster(policies=[policy_factory("p")])
    pod = _pod(namespace="nowhere")
    assert PodMutator(cluster).mutate_pod(pod) is pod


def test_first_enabled_policy_wins(fake_cluster, policy_factory, namespace_factory, caplog) -> None:
    cluster = fake_cluster(
        policies=[
            policy_factory("p1", match_labels={"env": "test"}, image="p1:1"),
            policy_factory("p2", match_labels={"env": "test"}, image="p2:1"),
        ],
        namespaces=[namespace_factory("test-namespace", {"env": "test"})],
    )
    with caplog.at_level(logging.WARNING):
        mutated = PodMutator(cluster).mutate_pod(_pod())
    assert mutated.spec.containers[-1].image == "p1:1"
    assert "Multiple enabled TimeSyncPolicies match (p1, p2); using p1" in caplog.text


def test_disabled_policy_never_injects(fake_cluster, policy_factory, namespace_factory) -> None:
    cluster = fake_cluster(
        policies=[
            policy_factory("off", match_labels={"env": "test"}, enable=False, image="off:1"),
            policy_factory("elsewhere", match_labels={"env": "prod"}, image="prod:1"),
        ],
        namespaces=[namespace_factory("test-namespace", {"env": "test"})],
    )
    pod = _pod()
    assert PodMutator(cluster).mutate_pod(pod) is pod


def test_disabled_policy_does_not_shadow_later_enabled_one(fake_cluster, policy_factory, namespace_factory) -> None:
    cluster = fake_cluster(
        policies=[
            policy_factory("a-off", match_labels={"env": "test"}, enable=False, image="off:1"),
            policy_factory("b-on", match_labels={"env": "test"}, image="on:1"),
        ],
        namespaces=[namespace_factory("test-namespace", {"env": "test"})],
    )
    assert PodMutator(cluster).mutate_pod(_pod()).spec.containers[-1].image == "on:1"


def test_custom_sidecar_template(env_test_cluster) -> None:
    mutator = PodMutator(env_test_cluster, sidecar=SidecarTemplate(name="chrony", args=("chronyd", "-d")))
    mutated = mutator.mutate_pod(_pod())
    assert mutated.spec.containers[-1].to_k8s() == {
        "name": "chrony",
        "image": "timesync:latest",
        "args": ["chronyd", "-d"],
    }


def test_accepts_wire_dict_and_rejects_non_pods(env_test_cluster) -> None:
    mutator = PodMutator(env_test_cluster)
    mutated = mutator.mutate_pod(
        {"kind": "Pod", "metadata": {"name": "x", "namespace": "test-namespace"}, "spec": {"containers": []}}
    )
    assert mutated.container_names() == ["timesync"]

    with pytest.raises(NotAPodError, match="expected a Pod object but got Deployment"):
        mutator.mutate_pod({"kind": "Deployment", "metadata": {"name": "d"}})
    with pytest.raises(NotAPodError):
        mutator.mutate_pod("not a pod")
