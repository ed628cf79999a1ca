"""CareCue: reminder scheduling and adherence reconciliation engine."""

__version__ = "0.1.0"
