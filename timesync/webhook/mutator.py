"""
Pod admission mutator: inject the timesync sidecar for namespaces selected by an
enabled TimeSyncPolicy.

The mutator is fail-open: if the namespace or the policy list cannot be read, the pod
is admitted unmodified rather than blocking workload creation. It never writes to the
cluster; the admission response carries the change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from pydantic import ValidationError

from timesync.config import OperatorConfig
from timesync.core.errors import NotAPodError
from timesync.core.matching import find_first_enabled_match, policies_matching_labels
from timesync.core.models import API_GROUP, Container, Pod, TimeSyncPolicy
from timesync.providers.k8s_provider import ClusterClient

logger = logging.getLogger(__name__)

INJECTED_BY_ANNOTATION = f"{API_GROUP}/timesync-injected-by"
IMAGE_ANNOTATION = f"{API_GROUP}/timesync-image"


@dataclass(frozen=True)
class SidecarTemplate:
    name: str = "timesync"
    args: Tuple[str, ...] = ("sleep", "infinity")

    @classmethod
    def from_config(cls, cfg: OperatorConfig) -> "SidecarTemplate":
        return cls(name=cfg.sidecar_name, args=tuple(cfg.sidecar_args))

    def build(self, image: str) -> Container:
        return Container(name=self.name, image=image, args=list(self.args))


def has_timesync_sidecar(pod: Pod, sidecar_name: str = "timesync") -> bool:
    """True when the pod already has a container with the reserved sidecar name."""
    return any(c.name == sidecar_name for c in pod.spec.containers)


def injected_by(pod: Pod) -> Optional[Tuple[str, str]]:
    """(policy name, image) recorded at injection time, if any. Informational only."""
    policy = pod.metadata.annotations.get(INJECTED_BY_ANNOTATION)
    if policy is None:
        return None
    return policy, pod.metadata.annotations.get(IMAGE_ANNOTATION, "")


def as_pod(obj: Any) -> Pod:
    if isinstance(obj, Pod):
        return obj
    if isinstance(obj, dict):
        kind = obj.get("kind") or "Pod"
        if kind != "Pod":
            raise NotAPodError(f"expected a Pod object but got {kind}")
        try:
            return Pod.model_validate(obj)
        except ValidationError as e:
            raise NotAPodError(f"expected a Pod object but got an invalid payload: {e}") from e
    raise NotAPodError(f"expected a Pod object but got {type(obj).__name__}")


class PodMutator:
    def __init__(self, client: ClusterClient, sidecar: Optional[SidecarTemplate] = None) -> None:
        self.client = client
        self.sidecar = sidecar or SidecarTemplate()

    def mutate_pod(self, obj: Any) -> Pod:
        """
        Return the pod, with the sidecar appended when an enabled policy selects its namespace.

        The input object is never modified; a mutated copy is returned.
        """
        pod = as_pod(obj)
        logger.info("Webhook triggered for Pod %s in namespace %s", pod.name, pod.namespace)

        if has_timesync_sidecar(pod, self.sidecar.name):
            marker = injected_by(pod)
            logger.info(
                "Timesync sidecar already present on %s/%s (policy=%s, image=%s); skipping",
                pod.namespace,
                pod.name,
                marker[0] if marker else "unknown",
                marker[1] if marker else "unknown",
            )
            return pod

        try:
            namespace = self.client.get_namespace(pod.namespace)
        except Exception as e:
            logger.error("Failed to get namespace %s (admitting pod without sidecar): %s", pod.namespace, e)
            return pod

        try:
            policies = self.client.list_policies()
        except Exception as e:
            logger.error("Failed to list TimeSyncPolicies (admitting pod without sidecar): %s", e)
            return pod

        policy = find_first_enabled_match(policies, namespace.labels)
        if policy is None:
            return pod

        self._warn_on_ambiguity(policy, policies, namespace.labels)
        self._warn_on_stale_marker(pod, policy)
        return self._inject(pod, policy)

    def _warn_on_ambiguity(self, winner: TimeSyncPolicy, policies: Any, labels: Any) -> None:
        candidates = [p.name for p in policies_matching_labels(policies, labels) if p.enabled]
        if len(candidates) > 1:
            logger.warning(
                "Multiple enabled TimeSyncPolicies match (%s); using %s",
                ", ".join(candidates),
                winner.name,
            )

    def _warn_on_stale_marker(self, pod: Pod, policy: TimeSyncPolicy) -> None:
        # Marker without the container: the sidecar was stripped after injection.
        marker = injected_by(pod)
        if marker is None:
            return
        recorded_policy, recorded_image = marker
        if (recorded_policy, recorded_image) != (policy.name, policy.sidecar_image):
            logger.warning(
                "Pod %s/%s was injected from %s (%s) but %s now selects it (%s); re-injecting",
                pod.namespace,
                pod.name,
                recorded_policy,
                recorded_image,
                policy.name,
                policy.sidecar_image,
            )
        else:
            logger.warning("Pod %s/%s carries a timesync marker but no sidecar; re-injecting", pod.namespace, pod.name)

    def _inject(self, pod: Pod, policy: TimeSyncPolicy) -> Pod:
        logger.info("Injecting timesync sidecar from policy %s into %s/%s", policy.name, pod.namespace, pod.name)
        mutated = pod.model_copy(deep=True)
        mutated.spec.containers.append(self.sidecar.build(policy.sidecar_image))
        mutated.metadata.annotations[INJECTED_BY_ANNOTATION] = policy.name
        mutated.metadata.annotations[IMAGE_ANNOTATION] = policy.sidecar_image
        return mutated
