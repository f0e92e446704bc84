"""
Chat settings and configuration loading.

Global chat settings live in the database settings table as strings; ChatSettings
parses them with defaults. Account/logging configuration comes from a YAML file.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from .constants import SecurityMode, SpamFilterMode


logger = logging.getLogger('drunk_chat.settings')


TRUE_VALUES = ('true', '1', 'yes')


class ChatSettings:
    """Typed access to global chat settings."""

    DEFAULTS = {
        'events_on_chat': 'true',
        'events_on_muc': 'true',
        'spam_filter_mode': SpamFilterMode.DISABLED.value,
        'security_otr_mode': SecurityMode.DISABLED.value,
        'notification_desktop_enabled': 'false',
        'notification_show_body': 'true',
        'notification_show_sender': 'true',
    }

    def __init__(self, db):
        """
        Args:
            db: Database instance (get_setting / set_setting)
        """
        self.db = db

    def get(self, key: str) -> str:
        return self.db.get_setting(key, default=self.DEFAULTS.get(key))

    def get_bool(self, key: str) -> bool:
        value = self.get(key)
        return str(value).lower() in TRUE_VALUES

    def set(self, key: str, value: Any):
        if isinstance(value, bool):
            value = 'true' if value else 'false'
        elif hasattr(value, 'value'):
            value = value.value
        self.db.set_setting(key, value)

    @property
    def events_on_chat(self) -> bool:
        """Notify about one-to-one messages by default."""
        return self.get_bool('events_on_chat')

    @property
    def events_on_muc(self) -> bool:
        """Notify about group chat messages by default."""
        return self.get_bool('events_on_muc')

    @property
    def spam_filter_mode(self) -> SpamFilterMode:
        return SpamFilterMode.normalize(self.get('spam_filter_mode'))

    @property
    def security_mode(self) -> SecurityMode:
        return SecurityMode.normalize(self.get('security_otr_mode'))

    @property
    def desktop_notifications(self) -> bool:
        return self.get_bool('notification_desktop_enabled')

    @property
    def show_body(self) -> bool:
        return self.get_bool('notification_show_body')

    @property
    def show_sender(self) -> bool:
        return self.get_bool('notification_show_sender')

    def apply(self, values: Dict[str, Any]):
        """Store a mapping of settings (e.g. the 'settings' section of the YAML config)."""
        for key, value in (values or {}).items():
            self.set(key, value)
        if values:
            logger.info(f"Applied {len(values)} setting(s) from configuration")


def load_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Expected layout:
        accounts:
          - jid: alice@example.com
            password: secret
            rooms: [room@conference.example.com]
            contacts: [bob@example.com]
        settings:
          spam_filter_mode: auth_captcha
        logging:
          level: INFO

    Args:
        config_path: Path to YAML file

    Returns:
        Config dict (empty dict for an empty file)
    """
    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        raise ValueError(f"Config {config_path} must be a mapping, got {type(config).__name__}")
    return config
