"""
Path management for Duet.

Three path modes:
- dev: Local paths (./duet_dev_paths/*) - default for development
- xdg: XDG paths (~/.config, ~/.local/share) - XDG standard
- dot: Dot directory (~/.duet/*)

Toggle via the DUET_PATH_MODE environment variable (or main.py flags).
"""

import os
from pathlib import Path
from typing import Optional


# Path mode: 'dev', 'xdg', or 'dot'
PATH_MODE = os.getenv('DUET_PATH_MODE', 'dev').lower()


class Paths:
    """
    Centralized path management for the application.
    """

    def __init__(self, profile: str = 'default', mode: Optional[str] = None,
                 home: Optional[Path] = None, project_root: Optional[Path] = None):
        """
        Args:
            profile: Profile name for multi-profile support
            mode: Path mode override (default: DUET_PATH_MODE)
            home: Home directory override
            project_root: Root for dev mode paths
        """
        self.profile = profile
        self.mode = (mode or os.getenv('DUET_PATH_MODE', PATH_MODE)).lower()
        self._home = Path(home) if home else Path.home()
        self._project_root = Path(project_root) if project_root else Path(__file__).parent.parent.parent

    def _base(self, kind: str) -> Path:
        if self.mode == 'xdg':
            xdg_roots = {
                'config': self._home / '.config',
                'data': self._home / '.local' / 'share',
            }
            root = xdg_roots[kind]
            root.mkdir(parents=True, mode=0o700, exist_ok=True)
            return root / 'duet'
        if self.mode == 'dot':
            dot_root = self._home / '.duet'
            dot_root.mkdir(parents=True, mode=0o700, exist_ok=True)
            return dot_root / kind
        return self._project_root / 'duet_dev_paths' / kind

    def _profile_dir(self, base: Path) -> Path:
        path = base / self.profile if self.profile != 'default' else base
        path.mkdir(parents=True, exist_ok=True, mode=0o700)
        return path

    @property
    def config_dir(self) -> Path:
        """Configuration directory (calls.json, xmpp.yaml)."""
        return self._profile_dir(self._base('config'))

    @property
    def data_dir(self) -> Path:
        """Data directory."""
        return self._profile_dir(self._base('data'))

    @property
    def log_dir(self) -> Path:
        """Log directory."""
        if self.mode == 'xdg':
            path = self.data_dir / 'logs'
            path.mkdir(parents=True, exist_ok=True, mode=0o700)
            return path
        return self._profile_dir(self._base('logs'))

    def main_log_path(self) -> Path:
        """Main application log path."""
        return self.log_dir / 'main.log'

    def call_settings_path(self) -> Path:
        return self.config_dir / 'calls.json'

    def xmpp_config_path(self) -> Path:
        return self.config_dir / 'xmpp.yaml'


# Global instance for default profile
_default_paths: Optional[Paths] = None


def get_paths(profile: str = 'default') -> Paths:
    """
    Get Paths instance for a profile.

    Args:
        profile: Profile name (default: 'default')
    """
    global _default_paths

    if profile == 'default':
        if _default_paths is None:
            _default_paths = Paths(profile)
        return _default_paths

    return Paths(profile)
