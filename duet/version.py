"""
Version information for Duet.

Override with environment variables for CI/CD builds.
"""

import os

VERSION = os.getenv('DUET_VERSION', '0.1.0')
BUILD_CODENAME = os.getenv('DUET_CODENAME', 'Handshake')
APP_NAME = 'Duet'


def get_version_string():
    """Get formatted version string."""
    return f"{APP_NAME} {VERSION}"


def get_full_version_info():
    """Get full version info dictionary."""
    return {
        'app_name': APP_NAME,
        'version': VERSION,
        'codename': BUILD_CODENAME,
    }
