"""
Core entity engine.
"""

from .engine import EntityEngine, create_engine

__all__ = ["EntityEngine", "create_engine"]
