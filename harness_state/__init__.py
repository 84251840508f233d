"""Harness state - task state machine and coherence checks for feature workflows."""

# No imports at package level to avoid circular import issues
# Import modules directly where needed

__version__ = "1.0.0"

__all__ = [
    "coherence",
    "exceptions",
    "models",
    "state_logging",
    "state_machine",
    "validation",
    "workflow",
    "workspace",
]
