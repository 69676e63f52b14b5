"""NoCheck reconciliation core: offline sync, cross validation and action plan escalation."""

__version__ = "1.0.0"
