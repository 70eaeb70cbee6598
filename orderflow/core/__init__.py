"""
Core module initialization.
Exports configuration, logging utilities and workflow errors.
"""

from orderflow.core.config import get_settings, setup_logging, Settings, EnvironmentMode
from orderflow.core.exceptions import (
    OrderWorkflowError,
    OrderNotFound,
    InvalidStatus,
    OrderValidationError,
    AlreadyClaimed,
    ItemUnavailable,
    TerminalState,
    StorageUnavailable,
)

__all__ = [
    "get_settings",
    "setup_logging",
    "Settings",
    "EnvironmentMode",
    "OrderWorkflowError",
    "OrderNotFound",
    "InvalidStatus",
    "OrderValidationError",
    "AlreadyClaimed",
    "ItemUnavailable",
    "TerminalState",
    "StorageUnavailable",
]
