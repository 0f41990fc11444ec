"""Exit execution."""

from strangler.execution.exit_manager import ExitManager, ExitReason

__all__ = ["ExitManager", "ExitReason"]
