"""
TimeSyncPolicy reconciliation.

One reconcile cycle: load the policy, list namespaces, count the namespaces its
selector matches, and write `.status.matchedNamespaces` only when the count changed.

Errors:
- policy gone (NotFoundError): successful no-op;
- malformed selector: logged, counted as 0, not an error;
- read/write failures (incl. ConflictError on a stale resourceVersion): raised to the
  invoking runner, which owns retry/backoff. Nothing is retried here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from timesync.core.errors import ClusterError, NotFoundError
from timesync.core.matching import evaluate_policy, policies_matching_labels
from timesync.core.models import Namespace
from timesync.providers.k8s_provider import ClusterClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    requeue: bool = False
    matched_namespaces: int = 0
    updated: bool = False
    found: bool = True


class TimeSyncPolicyReconciler:
    def __init__(self, client: ClusterClient) -> None:
        self.client = client

    def reconcile(self, name: str) -> ReconcileResult:
        try:
            policy = self.client.get_policy(name)
        except NotFoundError:
            logger.debug("TimeSyncPolicy %s not found; nothing to reconcile", name)
            return ReconcileResult(found=False)

        logger.info("Reconciling TimeSyncPolicy %s", name)

        namespaces = self.client.list_namespaces()
        evaluation = evaluate_policy(policy, namespaces)
        if evaluation.error is not None:
            # A bad selector cannot be fixed by retrying; the next policy edit re-triggers us.
            # Unlike a plain log-and-return, the 0 is still persisted so the status
            # never reports a count for a selector that no longer parses.
            logger.error("Invalid namespaceSelector on TimeSyncPolicy %s: %s", name, evaluation.error)
        elif evaluation.selector is not None:
            logger.debug(
                "TimeSyncPolicy %s selector [%s] matches %d namespace(s)",
                name,
                "everything" if evaluation.selector.empty() else evaluation.selector,
                evaluation.count,
            )

        count = evaluation.count
        if policy.status.matched_namespaces == count:
            logger.info("TimeSyncPolicy %s reconciled (matchedNamespaces=%d, unchanged)", name, count)
            return ReconcileResult(matched_namespaces=count)

        updated = policy.model_copy(deep=True)
        updated.status.matched_namespaces = count
        try:
            self.client.update_policy_status(updated)
        except Exception as e:
            logger.error("Failed to update status of TimeSyncPolicy %s: %s", name, e)
            raise

        logger.info(
            "TimeSyncPolicy %s reconciled (matchedNamespaces %d -> %d)",
            name,
            policy.status.matched_namespaces,
            count,
        )
        return ReconcileResult(matched_namespaces=count, updated=True)

    def map_namespace_to_policies(self, namespace: Namespace) -> List[str]:
        """
        Names of the policies whose selector matches the namespace's current labels.

        Full scan over the current policy set. The event source has no error channel,
        so a listing failure maps to no requests (logged).
        """
        try:
            policies = self.client.list_policies()
        except ClusterError as e:
            logger.warning("Failed to list TimeSyncPolicies for namespace %s: %s", namespace.name, e)
            return []
        return [p.name for p in policies_matching_labels(policies, namespace.labels)]
