"""
Client state reconciliation
"""

from .state_reconciliation import LocalStateCache, StateReconciler

__all__ = ['LocalStateCache', 'StateReconciler']
