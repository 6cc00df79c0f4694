"""Canonical domain models (single source of truth).

Models mirror the Kubernetes wire shape (camelCase aliases) so they can be validated
straight from API payloads / AdmissionReview objects and dumped back with
`model_dump(by_alias=True)`.

Design note:
- Kubernetes objects are permissive (`extra="allow"`): we only model the fields the
  operator reads or writes, everything else must survive a round trip untouched.
- Selector operators are kept as plain strings. A malformed selector must still load;
  it only fails when compiled by `timesync.core.selector`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

API_GROUP = "sync.example.com"
API_VERSION = "v1alpha1"
POLICY_KIND = "TimeSyncPolicy"
POLICY_PLURAL = "timesyncpolicies"


class K8sModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def to_k8s(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ObjectMeta(K8sModel):
    name: str = ""
    generate_name: Optional[str] = Field(default=None, alias="generateName")
    namespace: Optional[str] = None
    uid: Optional[str] = None
    resource_version: Optional[str] = Field(default=None, alias="resourceVersion")
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)

    @field_validator("labels", "annotations", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        # The API omits (or nulls) empty maps.
        return v or {}


class LabelSelectorRequirement(K8sModel):
    key: str = ""
    operator: str = ""
    values: List[str] = Field(default_factory=list)

    @field_validator("values", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return v or []


class LabelSelector(K8sModel):
    match_labels: Dict[str, str] = Field(default_factory=dict, alias="matchLabels")
    match_expressions: List[LabelSelectorRequirement] = Field(default_factory=list, alias="matchExpressions")

    @field_validator("match_labels", mode="before")
    @classmethod
    def _none_labels_is_empty(cls, v: Any) -> Any:
        return v or {}

    @field_validator("match_expressions", mode="before")
    @classmethod
    def _none_expressions_is_empty(cls, v: Any) -> Any:
        return v or []


class TimeSyncPolicySpec(K8sModel):
    namespace_selector: LabelSelector = Field(default_factory=LabelSelector, alias="namespaceSelector")
    enable: bool = False
    image: str = ""


class TimeSyncPolicyStatus(K8sModel):
    matched_namespaces: int = Field(default=0, alias="matchedNamespaces")


class TimeSyncPolicy(K8sModel):
    api_version: str = Field(default=f"{API_GROUP}/{API_VERSION}", alias="apiVersion")
    kind: str = POLICY_KIND
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: TimeSyncPolicySpec = Field(default_factory=TimeSyncPolicySpec)
    status: TimeSyncPolicyStatus = Field(default_factory=TimeSyncPolicyStatus)

    @field_validator("spec", "status", mode="before")
    @classmethod
    def _none_is_default(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def selector(self) -> LabelSelector:
        return self.spec.namespace_selector

    @property
    def enabled(self) -> bool:
        return self.spec.enable

    @property
    def sidecar_image(self) -> str:
        return self.spec.image

    @property
    def observed_match_count(self) -> int:
        return self.status.matched_namespaces


class Namespace(K8sModel):
    api_version: str = Field(default="v1", alias="apiVersion")
    kind: str = "Namespace"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def labels(self) -> Dict[str, str]:
        return self.metadata.labels


class Container(K8sModel):
    name: str
    image: Optional[str] = None
    args: Optional[List[str]] = None


class PodSpec(K8sModel):
    containers: List[Container] = Field(default_factory=list)

    @field_validator("containers", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return v or []


class Pod(K8sModel):
    api_version: str = Field(default="v1", alias="apiVersion")
    kind: str = "Pod"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: PodSpec = Field(default_factory=PodSpec)

    @property
    def name(self) -> str:
        # Pods created by controllers only carry generateName at admission time.
        return self.metadata.name or self.metadata.generate_name or ""

    @property
    def namespace(self) -> str:
        return self.metadata.namespace or ""

    def container_names(self) -> List[str]:
        return [c.name for c in self.spec.containers]
