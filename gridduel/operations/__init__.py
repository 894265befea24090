"""
Operations Layer

Business logic that composes the rules engine with persistence. Each
operations module owns one concern:
- MatchOperations: room lifecycle and every match transition
- RatingOperations: outcome finalization, ratings, leaderboard, head-to-head
- HistoryOperations: per-player match history and archiving

Architecture:
- Engine layer: pure rules, no I/O
- Database layer: models and session management
- Operations layer: transactional workflows on top of both
"""
