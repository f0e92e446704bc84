"""
Logging setup for DrunkChat.

main.log collects the 'drunk_chat' and 'drunk-xmpp' facilities; each account can get
its own app log. All files rotate.
"""

import logging
import sys
from typing import Optional
from logging.handlers import RotatingFileHandler

from .paths import get_paths, Paths


# Log format
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Maximum log file size before rotation (10 MB)
MAX_LOG_SIZE = 10 * 1024 * 1024

# Number of backup files to keep
BACKUP_COUNT = 5


def _rotating_handler(path, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=MAX_LOG_SIZE, backupCount=BACKUP_COUNT, encoding='utf-8')
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    return handler


def _console_handler(level: int, prefix: str = '') -> logging.StreamHandler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(prefix + LOG_FORMAT, LOG_DATE_FORMAT))
    return handler


def _reset(logger: logging.Logger, level: int, propagate: bool = True) -> logging.Logger:
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = propagate
    return logger


def setup_main_logger(log_level: str = 'INFO', paths: Optional[Paths] = None) -> logging.Logger:
    """
    Setup the main application logger (global, not account-specific).

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        paths: Paths of the active profile (default profile if omitted)

    Returns:
        Main logger instance
    """
    paths = paths or get_paths()
    level = getattr(logging, log_level.upper())
    main_log_path = paths.main_log_path()

    # 'drunk-xmpp' is not a child of 'drunk_chat', so it gets its own handlers on the same file
    for name in ('drunk_chat', 'drunk-xmpp'):
        facility = _reset(logging.getLogger(name), level, propagate=(name == 'drunk_chat'))
        facility.addHandler(_console_handler(level))
        facility.addHandler(_rotating_handler(main_log_path, level))

    logger = logging.getLogger('drunk_chat')
    logger.info(f"Main logger initialized (level: {log_level}, log: {main_log_path})")

    def exception_hook(exc_type, exc_value, exc_traceback):
        """Log uncaught exceptions to file instead of just stderr."""
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        logger.critical("Uncaught exception:", exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_hook
    return logger


def setup_account_logger(
    account: str,
    log_level: str = 'INFO',
    app_log_enabled: bool = True,
    paths: Optional[Paths] = None
) -> Optional[logging.Logger]:
    """
    Setup the app log of one XMPP account.

    Args:
        account: Account bare JID
        log_level: Logging level
        app_log_enabled: Enable application logging
        paths: Paths of the active profile (default profile if omitted)

    Returns:
        Application logger instance (or None if disabled)
    """
    if not app_log_enabled:
        return None

    paths = paths or get_paths()
    level = getattr(logging, log_level.upper())

    # Don't propagate to main logger
    app_logger = _reset(get_account_logger(account), level, propagate=False)
    app_logger.addHandler(_console_handler(level, prefix=f'[{account}] '))
    app_logger.addHandler(_rotating_handler(paths.account_app_log_path(account), level))

    app_logger.info(f"Account {account} app logger initialized (level: {log_level})")
    return app_logger


def get_account_logger(account: str) -> logging.Logger:
    """
    Logger of an account.

    A logger that was never set up propagates to the main 'drunk_chat' logger.
    """
    return logging.getLogger(f'drunk_chat.account-{account}')
