"""Projection of chain events and cycle evaluations into PostgreSQL."""
from .projector import Projector
from .stats import StatsProjector, compute_user_stats

__all__ = ["Projector", "StatsProjector", "compute_user_stats"]
