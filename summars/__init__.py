"""
cl-summars package

This package contains the core modules for the summars plugin:
- ledger_cache: Incremental forwards/pays/invoices cache
- channel_state: Channel state classification and peer availability
- columns: Column catalogs, sorting, filtering and cell formatting
- locale_format: Locale-aware number and date formatting
- node_snapshot: RPC access with retries and the alias cache
- report_builder: One report pass from snapshot to Report
- renderer: Text tables and structured output
- config: Configuration and option validation
- database: SQLite storage layer
"""

from .channel_state import AvailabilityTracker, ShortChannelState, StateExclusion, classify
from .columns import ReportKind
from .config import Config, ReportConfig
from .database import Database
from .exceptions import ConfigError, LedgerInvariantError
from .ledger_cache import LedgerCache, LedgerStatus
from .node_snapshot import AliasCache, NodeSnapshotProvider
from .renderer import render
from .report_builder import Report, ReportBuilder

__all__ = [
    'AliasCache',
    'AvailabilityTracker',
    'Config',
    'ConfigError',
    'Database',
    'LedgerCache',
    'LedgerInvariantError',
    'LedgerStatus',
    'NodeSnapshotProvider',
    'Report',
    'ReportBuilder',
    'ReportConfig',
    'ReportKind',
    'ShortChannelState',
    'StateExclusion',
    'classify',
    'render',
]
