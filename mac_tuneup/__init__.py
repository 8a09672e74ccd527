"""
Maintenance advisor for macOS: measure the machine, propose optimizations and run them safely.
"""

__all__ = ["actions", "catalog", "executor", "system_state", "updates", "whitelist", "cli"]
__version__ = "0.1.0"
