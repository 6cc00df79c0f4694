"""TimeSyncPolicy controller: status reconciliation and the watch-driven runner.

The reconciler is framework-agnostic (plain calls, errors raised); the runner supplies
event delivery, de-duplication and retry/backoff around it.
"""
