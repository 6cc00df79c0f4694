#!/usr/bin/env python3
"""
TimeSync operator - TimeSyncPolicy controller and pod sidecar-injection webhook.
"""

import argparse
import json
import logging
import os
import sys

# Configure logging
logging.basicConfig(
    level=getattr(logging, (os.getenv("LOG_LEVEL") or "info").strip().upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
)

#
# NOTE: Keep timesync imports lazy (inside functions) so `--help` works without a
# kubeconfig and each mode only pulls in what it needs.
#


def reconcile_once(name: str) -> None:
    """Run a single reconcile cycle for one policy and print the result as JSON."""
    from dataclasses import asdict

    from timesync.controller.reconciler import TimeSyncPolicyReconciler
    from timesync.providers.k8s_provider import get_cluster_client

    result = TimeSyncPolicyReconciler(get_cluster_client()).reconcile(name)
    print(json.dumps({"ok": True, "policy": name, **asdict(result)}, indent=2, sort_keys=False))


def show_matching_namespaces(name: str) -> None:
    """Print the namespaces a policy currently selects (read-only)."""
    from timesync.core.matching import evaluate_policy
    from timesync.providers.k8s_provider import get_cluster_client

    client = get_cluster_client()
    policy = client.get_policy(name)
    evaluation = evaluate_policy(policy, client.list_namespaces())
    print(
        json.dumps(
            {
                "policy": name,
                "enabled": policy.enabled,
                "image": policy.sidecar_image,
                "selector": str(evaluation.selector) if evaluation.selector is not None else None,
                "matched_namespaces": evaluation.matched,
                "count": evaluation.count,
                "status_count": policy.observed_match_count,
                "selector_error": str(evaluation.error) if evaluation.error else None,
            },
            indent=2,
            sort_keys=False,
        )
    )


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="TimeSyncPolicy controller and timesync sidecar injection webhook",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the admission webhook (TLS from WEBHOOK_TLS_CERT_FILE / WEBHOOK_TLS_KEY_FILE)
  python main.py --serve-webhook --port 9443

  # Run the reconciliation controller
  python main.py --run-controller

  # Reconcile one policy and print the outcome
  python main.py --reconcile my-policy
        """,
    )

    parser.add_argument(
        "--serve-webhook",
        action="store_true",
        help="Run the HTTPS server answering pod mutating admission requests (in-cluster)",
    )
    parser.add_argument(
        "--run-controller",
        action="store_true",
        help="Run the TimeSyncPolicy controller (watches policies and namespaces, maintains status)",
    )
    parser.add_argument("--reconcile", metavar="NAME", help="Reconcile a single TimeSyncPolicy once and exit")
    parser.add_argument(
        "--match-namespaces", metavar="NAME", help="Print the namespaces a TimeSyncPolicy currently selects"
    )
    parser.add_argument("--host", default=None, help="Webhook server bind host (default: WEBHOOK_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Webhook server listen port (default: WEBHOOK_PORT or 9443)")

    args = parser.parse_args()

    try:
        if args.serve_webhook:
            from timesync.config import load_operator_config
            from timesync.webhook.server import run as run_webhook

            cfg = load_operator_config()
            run_webhook(host=args.host or cfg.webhook_host, port=args.port or cfg.webhook_port)
            return

        if args.run_controller:
            from timesync.controller.runner import run_controller_forever

            run_controller_forever()
            return

        if args.reconcile:
            reconcile_once(args.reconcile)
            return

        if args.match_namespaces:
            show_matching_namespaces(args.match_namespaces)
            return

        parser.print_help()

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()
