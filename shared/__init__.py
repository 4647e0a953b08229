"""
Shared utilities for the A-share collectors

This package provides common functionality used by the data collection modules:
- store: JSON key-value store files with backup-before-overwrite
- stock_data: named stores (stock basic info, finance, held stocks, forecasts)
- loop_runner: per-stock loop with failure isolation and a fixed delay

Usage:
    from shared.store import JsonStore
    from shared.stock_data import StockDataService, StorageConfig
    from shared.loop_runner import StockLoopRunner
"""

__version__ = "1.0.0"

from .store import (
    BACKUP_SUFFIX,
    BackupError,
    CommitError,
    JsonSerializer,
    JsonStore,
    StoreDecodeError,
    StoreError,
    StoreNotFoundError,
)
from .loop_runner import EntityResult, LoopReport, StockLoopRunner

__all__ = [
    'BACKUP_SUFFIX',
    'BackupError',
    'CommitError',
    'JsonSerializer',
    'JsonStore',
    'StoreDecodeError',
    'StoreError',
    'StoreNotFoundError',
    'EntityResult',
    'LoopReport',
    'StockLoopRunner',
]
