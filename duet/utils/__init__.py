"""
Utility modules for Duet.
"""

from .paths import get_paths, Paths, PATH_MODE
from .logger import (
    setup_main_logger,
    get_call_logger,
    set_log_level,
    cleanup_old_logs
)

__all__ = [
    'get_paths',
    'Paths',
    'PATH_MODE',
    'setup_main_logger',
    'get_call_logger',
    'set_log_level',
    'cleanup_old_logs',
]
