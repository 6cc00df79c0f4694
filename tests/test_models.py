def test_policy_parses_wire_shape() -> None:
    from timesync.core.models import TimeSyncPolicy

    p = TimeSyncPolicy.model_validate(
        {
            "apiVersion": "sync.example.com/v1alpha1",
            "kind": "TimeSyncPolicy",
            "metadata": {"name": "timesync", "resourceVersion": "42", "labels": None},
            "spec": {
                "namespaceSelector": {
                    "matchLabels": {"env": "test"},
                    "matchExpressions": [{"key": "tier", "operator": "Exists", "values": None}],
                },
                "enable": True,
                "image": "timesync:latest",
            },
        }
    )
    assert p.name == "timesync"
    assert p.enabled is True
    assert p.sidecar_image == "timesync:latest"
    assert p.selector.match_labels == {"env": "test"}
    assert p.selector.match_expressions[0].values == []
    assert p.metadata.labels == {}
    # Status is optional on freshly created objects.
    assert p.observed_match_count == 0


def test_null_spec_and_selector_are_tolerated() -> None:
    from timesync.core.models import TimeSyncPolicy

    p = TimeSyncPolicy.model_validate({"metadata": {"name": "p"}, "spec": None, "status": None})
    assert p.enabled is False
    assert p.selector.match_labels == {}
    assert p.selector.match_expressions == []

    p = TimeSyncPolicy.model_validate({"metadata": {"name": "p"}, "spec": {"namespaceSelector": {"matchLabels": None}}})
    assert p.selector.match_labels == {}


def test_to_k8s_keeps_unknown_fields_and_uses_aliases() -> None:
    from timesync.core.models import Pod

    raw = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"generateName": "web-", "namespace": "ns", "ownerReferences": [{"kind": "ReplicaSet"}]},
        "spec": {"containers": [{"name": "app", "ports": [{"containerPort": 80}]}], "restartPolicy": "Always"},
    }
    pod = Pod.model_validate(raw)
    assert pod.name == "web-"
    assert pod.namespace == "ns"

    out = pod.to_k8s()
    assert out["metadata"]["generateName"] == "web-"
    assert out["metadata"]["ownerReferences"] == [{"kind": "ReplicaSet"}]
    assert out["spec"]["restartPolicy"] == "Always"
    assert out["spec"]["containers"] == [{"name": "app", "ports": [{"containerPort": 80}]}]


def test_status_dump_uses_wire_name() -> None:
    from timesync.core.models import TimeSyncPolicy

    p = TimeSyncPolicy.model_validate({"metadata": {"name": "p"}, "status": {"matchedNamespaces": 3}})
    assert p.to_k8s()["status"] == {"matchedNamespaces": 3}
