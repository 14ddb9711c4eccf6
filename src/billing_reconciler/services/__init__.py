"""
Reconciliation services
"""
