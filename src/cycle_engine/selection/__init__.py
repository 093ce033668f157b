"""Match selection: picks the ten fixtures of a cycle's slate."""
from .selector import DEFAULT_LEAGUE_PRIORITIES, MatchSelector, Selection, SelectionConfig

__all__ = ["DEFAULT_LEAGUE_PRIORITIES", "MatchSelector", "Selection", "SelectionConfig"]
