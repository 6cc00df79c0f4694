"""
Mutating admission webhook server.

Receives `admission.k8s.io/v1` AdmissionReview requests for pods and answers with a
JSONPatch that appends the timesync sidecar when a TimeSyncPolicy selects the pod's
namespace. TLS material is provisioned externally (cert-manager / Secret mount).
"""

from __future__ import annotations

import base64
import json
import logging
import time
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from timesync.config import load_operator_config
from timesync.core.errors import NotAPodError
from timesync.core.models import Pod
from timesync.providers.k8s_provider import get_cluster_client
from timesync.webhook.mutator import PodMutator, SidecarTemplate, as_pod

logger = logging.getLogger(__name__)

MUTATE_POD_PATH = "/mutate--v1-pod"


class AdmissionRequest(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    uid: str
    kind: Dict[str, str] = Field(default_factory=dict)
    namespace: Optional[str] = None
    operation: str = "CREATE"
    obj: Optional[Dict[str, Any]] = Field(default=None, alias="object")


class AdmissionReview(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    api_version: str = Field(default="admission.k8s.io/v1", alias="apiVersion")
    kind: str = "AdmissionReview"
    request: Optional[AdmissionRequest] = None


@lru_cache(maxsize=1)
def get_pod_mutator() -> PodMutator:
    """Dependency seam: one mutator per process, collaborator injected explicitly."""
    return PodMutator(get_cluster_client(), sidecar=SidecarTemplate.from_config(load_operator_config()))


def _escape_pointer(token: str) -> str:
    # RFC 6901: annotation keys contain '/'.
    return token.replace("~", "~0").replace("/", "~1")


def build_patch(original: Pod, mutated: Pod) -> List[Dict[str, Any]]:
    """JSONPatch (RFC 6902) turning `original` into `mutated`: appended containers + new annotations."""
    ops: List[Dict[str, Any]] = []
    for container in mutated.spec.containers[len(original.spec.containers) :]:
        ops.append({"op": "add", "path": "/spec/containers/-", "value": container.to_k8s()})

    before = original.metadata.annotations
    added = {k: v for k, v in mutated.metadata.annotations.items() if before.get(k) != v}
    if added and not before:
        ops.append({"op": "add", "path": "/metadata/annotations", "value": dict(mutated.metadata.annotations)})
    else:
        for k, v in added.items():
            ops.append({"op": "add", "path": f"/metadata/annotations/{_escape_pointer(k)}", "value": v})
    return ops


def _review_response(api_version: str, response: Dict[str, Any]) -> Dict[str, Any]:
    return {"apiVersion": api_version, "kind": "AdmissionReview", "response": response}


def _deny(api_version: str, uid: str, code: int, message: str) -> Dict[str, Any]:
    return _review_response(
        api_version, {"uid": uid, "allowed": False, "status": {"code": code, "message": message}}
    )


app = FastAPI(title="TimeSync pod mutating webhook")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming HTTP requests."""
    start_time = time.time()
    try:
        response = await call_next(request)
        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
        raise


@app.get("/healthz")
def healthz() -> Dict[str, Any]:
    return {"ok": True}


@app.get("/readyz")
def readyz() -> Dict[str, Any]:
    return {"ok": True}


@app.post(MUTATE_POD_PATH)
def mutate_pod(
    payload: Dict[str, Any] = Body(...),
    mutator: PodMutator = Depends(get_pod_mutator),
) -> Dict[str, Any]:
    try:
        review = AdmissionReview.model_validate(payload)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"invalid AdmissionReview: {e}")
    req = review.request
    if req is None:
        raise HTTPException(status_code=400, detail="AdmissionReview has no request")

    allowed = _review_response(review.api_version, {"uid": req.uid, "allowed": True})
    if req.operation in ("DELETE", "CONNECT"):
        return allowed

    kind = (req.kind or {}).get("kind") or "Pod"
    if kind != "Pod":
        return _deny(review.api_version, req.uid, 400, f"expected a Pod object but got {kind}")

    obj = dict(req.obj or {})
    # Namespace may be absent from the object on create; the request always carries it.
    if req.namespace:
        meta = dict(obj.get("metadata") or {})
        meta.setdefault("namespace", req.namespace)
        obj["metadata"] = meta

    try:
        original = as_pod(obj)
        mutated = mutator.mutate_pod(original)
    except NotAPodError as e:
        return _deny(review.api_version, req.uid, 400, str(e))

    if mutated is original:
        return allowed

    patch = build_patch(original, mutated)
    if not patch:
        return allowed
    encoded = base64.b64encode(json.dumps(patch, separators=(",", ":")).encode("utf-8")).decode("ascii")
    allowed["response"].update({"patchType": "JSONPatch", "patch": encoded})
    return allowed


def run(host: str = "0.0.0.0", port: int = 9443) -> None:
    import uvicorn

    cfg = load_operator_config()

    # Configure logging for the application
    log_level = cfg.log_level
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    ssl_kwargs: Dict[str, Any] = {}
    if cfg.tls_enabled:
        ssl_kwargs = {"ssl_certfile": cfg.tls_cert_file, "ssl_keyfile": cfg.tls_key_file}
    else:
        logger.warning("WEBHOOK_TLS_CERT_FILE/WEBHOOK_TLS_KEY_FILE not set; serving plain HTTP (dev only)")

    logger.info("Starting webhook server on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level, **ssl_kwargs)
