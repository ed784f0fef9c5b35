"""
Duet - application layer for two-party calls.

- utils: logging and path management
- core: call settings and the per-user CallManager
"""

from .version import APP_NAME, VERSION, get_version_string

__all__ = ["APP_NAME", "VERSION", "get_version_string"]
