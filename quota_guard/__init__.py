"""
Quota Guard: token budgets for subscription AI coding agents.
"""

__version__ = "0.1.0"
