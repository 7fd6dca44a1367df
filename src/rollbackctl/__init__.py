"""rollbackctl - Deployment rollback orchestrator."""

__version__ = "0.1.0"
