from paperseal.ops.reconciliation import audit_selection_counts, reconcile_finalizations

__all__ = [
    "audit_selection_counts",
    "reconcile_finalizations",
]
