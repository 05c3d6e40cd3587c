"""
Reconciliation services: run orchestration, sales import, mismatch resolution.
"""
