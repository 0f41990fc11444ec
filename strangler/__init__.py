"""Strangle position resilience core.

Keeps a local ledger of short strangle positions consistent with the
broker's positions and delivers close orders through retry and polling.
"""

__version__ = "0.1.0"
