"""
ccost - fast Claude Code usage and cost tracker.
"""

__version__ = "0.1.0"
