# tasks/__init__.py
from tasks.reconciliation import (
    get_reconciliation_stats,
    reconciliation_loop,
    run_reconcile_pass,
)

__all__ = [
    "get_reconciliation_stats",
    "reconciliation_loop",
    "run_reconcile_pass",
]
