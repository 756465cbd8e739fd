"""
Data models used by the command line demos.
"""

from .cat import CATS_KEY, Cat, CatRead, CatRepository, create_demo_engine

__all__ = ["CATS_KEY", "Cat", "CatRead", "CatRepository", "create_demo_engine"]
