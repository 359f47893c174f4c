"""stackforge — idempotent, phase-ordered project bootstrap orchestrator."""

__version__ = "0.1.0"
