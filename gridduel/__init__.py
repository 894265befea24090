"""
GridDuel: connect-N match rules engine with Elo rating and head-to-head records.
"""

__version__ = "0.1.0"
