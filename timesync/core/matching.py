"""
Policy matching engine shared by the reconciler and the admission mutator.

Both call sites evaluate the same primitive (policy selector over namespace labels):
- the reconciler counts namespaces selected by one policy;
- the mutator looks for the first enabled policy selecting one namespace.

A malformed selector never aborts a batch: the policy is treated as non-matching for
this evaluation and the parse error is logged (or returned, see `evaluate_policy`).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional

from timesync.core.errors import SelectorParseError
from timesync.core.models import Namespace, TimeSyncPolicy
from timesync.core.selector import Selector, parse_selector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicyEvaluation:
    policy_name: str
    count: int
    matched: List[str]
    error: Optional[SelectorParseError] = None
    selector: Optional[Selector] = None


def evaluate_policy(policy: TimeSyncPolicy, namespaces: Iterable[Namespace]) -> PolicyEvaluation:
    """
    Evaluate `policy.selector` against every namespace.

    On a selector parse failure the count short-circuits to 0 and the error is returned
    on the evaluation instead of raised.
    """
    try:
        selector = parse_selector(policy.selector)
    except SelectorParseError as e:
        return PolicyEvaluation(policy_name=policy.name, count=0, matched=[], error=e)

    matched = [ns.name for ns in namespaces if selector.matches(ns.labels)]
    return PolicyEvaluation(policy_name=policy.name, count=len(matched), matched=matched, selector=selector)


def count_matching_namespaces(policy: TimeSyncPolicy, namespaces: Iterable[Namespace]) -> int:
    evaluation = evaluate_policy(policy, namespaces)
    if evaluation.error is not None:
        logger.warning("Invalid namespaceSelector on policy %s: %s", policy.name, evaluation.error)
    return evaluation.count


def policies_matching_labels(policies: Iterable[TimeSyncPolicy], labels: Mapping[str, str]) -> List[TimeSyncPolicy]:
    """Every policy (enabled or not) whose selector matches `labels`, in supplied order."""
    out: List[TimeSyncPolicy] = []
    for policy in policies:
        try:
            selector = parse_selector(policy.selector)
        except SelectorParseError as e:
            logger.debug("Skipping policy %s with invalid namespaceSelector: %s", policy.name, e)
            continue
        if selector.matches(labels):
            out.append(policy)
    return out


def find_first_enabled_match(
    policies: Iterable[TimeSyncPolicy], namespace_labels: Mapping[str, str]
) -> Optional[TimeSyncPolicy]:
    """
    Return the first enabled policy (in supplied order) whose selector matches.

    Ordering is the listing collaborator's; `DefaultClusterClient.list_policies` sorts by
    name so the winner among several enabled matches is deterministic.
    """
    for policy in policies:
        if not policy.enabled:
            continue
        try:
            selector = parse_selector(policy.selector)
        except SelectorParseError as e:
            logger.debug("Skipping policy %s with invalid namespaceSelector: %s", policy.name, e)
            continue
        if selector.matches(namespace_labels):
            return policy
    return None
