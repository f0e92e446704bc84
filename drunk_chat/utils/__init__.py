"""
Utility modules for DrunkChat.
"""

from .paths import get_paths, Paths, PATH_MODE
from .logger import (
    setup_main_logger,
    setup_account_logger,
    get_account_logger,
)
from .jid_utils import generate_resource, parse_jid, split_resource

__all__ = [
    'get_paths',
    'Paths',
    'PATH_MODE',
    'setup_main_logger',
    'setup_account_logger',
    'get_account_logger',
    'generate_resource',
    'parse_jid',
    'split_resource',
]
