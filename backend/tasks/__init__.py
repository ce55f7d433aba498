"""
Scheduled Tasks Package.

This package contains all task implementations that can be scheduled
via the task engine.
"""

from tasks.catalog_reconciliation import CatalogReconciliationTask

__all__ = [
    "CatalogReconciliationTask",
]
