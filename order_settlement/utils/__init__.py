"""
Utilities package for the order settlement core

Contains the persistence contract and its backends, configuration loading
and logging helpers.
"""

from .store import SettlementStore, StoreTransaction
from .database import DatabaseManager
from .memory_store import InMemoryStore
from .config import SettlementConfig, load_config
from .logger import setup_logger, get_logger, set_log_context, LoggerContext

__all__ = [
    "SettlementStore",
    "StoreTransaction",
    "DatabaseManager",
    "InMemoryStore",
    "SettlementConfig",
    "load_config",
    "setup_logger",
    "get_logger",
    "set_log_context",
    "LoggerContext"
]
