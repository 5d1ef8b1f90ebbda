"""
CLI package for the order settlement core

Provides command-line interface for back-office settlement operations.
"""

from .main import main, cli

__all__ = ["main", "cli"]
