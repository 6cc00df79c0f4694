from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Tuple

from timesync.core.models import API_GROUP, API_VERSION, POLICY_PLURAL


def _env_str(name: str, default: str) -> str:
    return (os.getenv(name, "") or "").strip() or default


def _env_opt(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _split_csv(raw: str) -> List[str]:
    return [x.strip() for x in (raw or "").split(",") if x.strip()]


@dataclass(frozen=True)
class OperatorConfig:
    # Custom resource coordinates
    api_group: str = API_GROUP
    api_version: str = API_VERSION
    plural: str = POLICY_PLURAL

    # Sidecar template
    sidecar_name: str = "timesync"
    sidecar_args: Tuple[str, ...] = ("sleep", "infinity")

    # Admission server
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 9443
    tls_cert_file: Optional[str] = None
    tls_key_file: Optional[str] = None

    # Reconciliation runner
    workers: int = 2
    requeue_base_seconds: int = 1
    requeue_max_seconds: int = 300
    watch_timeout_seconds: int = 300

    log_level: str = "INFO"

    @property
    def tls_enabled(self) -> bool:
        """TLS is on only when both the certificate and the key are configured."""
        return bool(self.tls_cert_file and self.tls_key_file)


@lru_cache(maxsize=1)
def load_operator_config() -> OperatorConfig:
    """
    Load operator configuration from env (ConfigMap/Deployment friendly).

    Recommended vars:
    - TIMESYNC_API_GROUP=sync.example.com
    - TIMESYNC_API_VERSION=v1alpha1
    - TIMESYNC_PLURAL=timesyncpolicies
    - TIMESYNC_SIDECAR_NAME=timesync
    - TIMESYNC_SIDECAR_ARGS=sleep,infinity
    - WEBHOOK_HOST=0.0.0.0
    - WEBHOOK_PORT=9443
    - WEBHOOK_TLS_CERT_FILE=/tmp/k8s-webhook-server/serving-certs/tls.crt
    - WEBHOOK_TLS_KEY_FILE=/tmp/k8s-webhook-server/serving-certs/tls.key
    - CONTROLLER_WORKERS=2
    - CONTROLLER_REQUEUE_BASE_SECONDS=1
    - CONTROLLER_REQUEUE_MAX_SECONDS=300
    - CONTROLLER_WATCH_TIMEOUT_SECONDS=300
    - LOG_LEVEL=info
    """
    args = _split_csv(os.getenv("TIMESYNC_SIDECAR_ARGS", ""))
    base = max(1, _env_int("CONTROLLER_REQUEUE_BASE_SECONDS", 1))

    return OperatorConfig(
        api_group=_env_str("TIMESYNC_API_GROUP", API_GROUP),
        api_version=_env_str("TIMESYNC_API_VERSION", API_VERSION),
        plural=_env_str("TIMESYNC_PLURAL", POLICY_PLURAL),
        sidecar_name=_env_str("TIMESYNC_SIDECAR_NAME", "timesync"),
        sidecar_args=tuple(args) if args else ("sleep", "infinity"),
        webhook_host=_env_str("WEBHOOK_HOST", "0.0.0.0"),
        webhook_port=max(1, min(_env_int("WEBHOOK_PORT", 9443), 65535)),
        tls_cert_file=_env_opt("WEBHOOK_TLS_CERT_FILE"),
        tls_key_file=_env_opt("WEBHOOK_TLS_KEY_FILE"),
        workers=max(1, min(_env_int("CONTROLLER_WORKERS", 2), 32)),
        requeue_base_seconds=base,
        requeue_max_seconds=max(base, _env_int("CONTROLLER_REQUEUE_MAX_SECONDS", 300)),
        watch_timeout_seconds=max(10, _env_int("CONTROLLER_WATCH_TIMEOUT_SECONDS", 300)),
        log_level=_env_str("LOG_LEVEL", "info").upper(),
    )
