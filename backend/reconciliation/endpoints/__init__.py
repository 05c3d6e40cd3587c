"""
Reconciliation HTTP endpoints.
"""
