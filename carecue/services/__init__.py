"""Scheduling policy, reconciliation and the adapters around it."""
