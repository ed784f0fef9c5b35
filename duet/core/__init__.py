"""
Core application logic: call settings and per-user call management.
"""

from .settings import CallSettings, load_call_settings, save_call_settings
from .call_manager import CallManager, IncomingCall

__all__ = [
    'CallSettings',
    'load_call_settings',
    'save_call_settings',
    'CallManager',
    'IncomingCall',
]
