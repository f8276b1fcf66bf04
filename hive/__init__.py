"""Hive control plane: scheduling, health, merge queue and manager loop for agent teams."""

__version__ = "0.4.0"
