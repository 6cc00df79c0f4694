"""Pod mutating admission webhook (sidecar injection)."""
