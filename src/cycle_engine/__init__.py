"""
Cycle Engine Orchestrator.

Off-chain coordinator for a daily ten-fixture prediction contest. Selects a
slate, opens the on-chain cycle, indexes slips, collects fixture results,
resolves the cycle on-chain, scores every slip and projects leaderboards and
user statistics into PostgreSQL.
"""

__version__ = "0.1.0"
