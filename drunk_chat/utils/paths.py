"""
Path management for DrunkChat.

Three path modes:
- dev: Use local paths (./chat_dev_paths/*) - default for development
- xdg: Use XDG paths (~/.config, ~/.local/share) - XDG standard
- dot: Use dot directory (~/.drunk-chat/*) - simple, supports gocryptfs

Toggle via DRUNK_CHAT_PATH_MODE environment variable (main.py sets it from --xdg / --dot-data-dir).
"""

import os
from pathlib import Path
from typing import Optional


# Path mode: 'dev', 'xdg', or 'dot'
PATH_MODE = os.getenv('DRUNK_CHAT_PATH_MODE', 'dev').lower()

APP_DIR_NAME = 'drunk-chat'


def _private_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True, mode=0o700)
    return path


def _safe_jid(jid: str) -> str:
    return jid.replace('/', '_').replace('@', '_at_')


class Paths:
    """
    Config, data and log locations of one profile.
    """

    def __init__(self, profile: str = 'default'):
        """
        Args:
            profile: Profile name for multi-profile support (e.g., 'default', 'work')
        """
        self.profile = profile
        self._project_root = Path(__file__).parent.parent.parent

    def _base(self, kind: str) -> Path:
        """Root of 'config', 'data' or 'logs' for the current path mode."""
        if PATH_MODE == 'xdg':
            if kind == 'config':
                return Path.home() / '.config' / APP_DIR_NAME
            if kind == 'data':
                return Path.home() / '.local' / 'share' / APP_DIR_NAME
            return self.data_dir / 'logs'
        if PATH_MODE == 'dot':
            return Path.home() / f'.{APP_DIR_NAME}' / kind
        return self._project_root / 'chat_dev_paths' / kind

    def _profile_dir(self, kind: str) -> Path:
        base = self._base(kind)
        if self.profile != 'default':
            base = base / self.profile
        return _private_dir(base)

    @property
    def config_dir(self) -> Path:
        """Configuration directory (YAML config)."""
        return self._profile_dir('config')

    @property
    def data_dir(self) -> Path:
        """Data directory (message database)."""
        return self._profile_dir('data')

    @property
    def log_dir(self) -> Path:
        # xdg logs already live under the profile's data dir
        if PATH_MODE == 'xdg':
            return _private_dir(self._base('logs'))
        return self._profile_dir('logs')

    @property
    def database_path(self) -> Path:
        """Message database file path."""
        db_path = self.data_dir / 'drunk-chat.db'
        # Ensure secure permissions (0600)
        if db_path.exists():
            os.chmod(db_path, 0o600)
        return db_path

    @property
    def config_path(self) -> Path:
        return self.config_dir / 'config.yaml'

    def account_app_log_path(self, account: str) -> Path:
        """
        Application log path for a specific account.

        Args:
            account: Account bare JID

        Returns:
            Path to application log file
        """
        return self.log_dir / f'account-{_safe_jid(account)}-app.log'

    def main_log_path(self) -> Path:
        """Main application log path (global, not account-specific)."""
        return self.log_dir / 'main.log'


# Global instance for default profile
_default_paths: Optional[Paths] = None


def get_paths(profile: str = 'default') -> Paths:
    """
    Get Paths instance for a profile.

    Args:
        profile: Profile name (default: 'default')

    Returns:
        Paths instance
    """
    global _default_paths

    if profile == 'default':
        if _default_paths is None:
            _default_paths = Paths(profile)
        return _default_paths

    return Paths(profile)
