#!/usr/bin/env python3
"""
DrunkChat - headless XMPP chat engine

Main entry point: connects the configured accounts and keeps their conversations
(history, send queues, notifications) running until interrupted.
"""

import sys
import os
import argparse


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='DrunkChat - headless XMPP chat engine'
    )
    parser.add_argument(
        '--profile',
        default='default',
        help='Profile name (default: default)'
    )
    parser.add_argument(
        '--config',
        default=None,
        help='YAML config with accounts and settings (default: <config dir>/config.yaml)'
    )
    parser.add_argument(
        '--log-level',
        default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Log level (default: INFO)'
    )
    parser.add_argument(
        '--xdg',
        action='store_true',
        help='Use XDG Base Directory paths (~/.config, ~/.local/share)'
    )
    parser.add_argument(
        '--dot-data-dir',
        action='store_true',
        help='Use ~/.drunk-chat directory for all data'
    )
    return parser.parse_args()


def main():
    """Main application entry point."""
    args = parse_args()

    # paths.py reads the mode at import time, so this must happen first
    if args.dot_data_dir:
        os.environ['DRUNK_CHAT_PATH_MODE'] = 'dot'
    elif args.xdg:
        os.environ['DRUNK_CHAT_PATH_MODE'] = 'xdg'

    import asyncio
    import logging
    import signal

    import qasync
    from PySide6.QtCore import QCoreApplication

    from drunk_chat.core import ChatContext, ConversationBrewery
    from drunk_chat.core.settings import load_config
    from drunk_chat.db.database import Database
    from drunk_chat.utils import (
        generate_resource, get_paths, setup_account_logger, setup_main_logger, split_resource,
    )
    from drunk_chat.version import get_version_string
    from drunk_xmpp import DrunkXMPP, XmppTransport

    paths = get_paths(args.profile)

    config_path = args.config or paths.config_path
    config = {}
    if os.path.exists(config_path):
        try:
            config = load_config(config_path)
        except (OSError, ValueError) as e:
            # Can't log yet, just print to console
            print(f"Warning: Failed to load config {config_path}: {e}")

    logging_config = config.get('logging') or {}
    # Command line --log-level takes precedence over config file
    log_level = args.log_level if args.log_level != 'INFO' else logging_config.get('level', 'INFO')
    logger = setup_main_logger(log_level, paths)

    logger.info("=" * 60)
    logger.info(f"{get_version_string()} Starting...")
    logger.info("=" * 60)
    logger.info(f"Profile: {args.profile}")
    logger.info(f"Config: {config_path}")
    logger.info(f"Database: {paths.database_path}")

    # Shared XML protocol log for all connections
    if logging_config.get('xml_log_enabled', False):
        from logging.handlers import RotatingFileHandler
        xml_logger = logging.getLogger('slixmpp.xmlstream.xmlstream')
        xml_logger.setLevel(logging.DEBUG)
        xml_logger.propagate = False
        xml_handler = RotatingFileHandler(
            paths.log_dir / 'xmpp-protocol.log',
            maxBytes=10*1024*1024,
            backupCount=5,
            encoding='utf-8'
        )
        xml_handler.setFormatter(logging.Formatter('%(asctime)s - %(message)s'))
        xml_logger.addHandler(xml_handler)

    logger.info("Initializing database...")
    db = Database(paths.database_path)
    try:
        db.acquire_lock()
        db.initialize()
        logger.info("Database initialized successfully")
    except RuntimeError as e:
        logger.error(f"Failed to initialize database: {e}")
        print(f"\nERROR: {e}")
        print("Please close the other instance before starting a new one.\n")
        return 1

    app = QCoreApplication(sys.argv)
    app.setApplicationName("DrunkChat")

    # Create asyncio event loop integrated with Qt
    loop = qasync.QEventLoop(app)
    asyncio.set_event_loop(loop)

    transport = XmppTransport()
    context = ChatContext.create(db, transport, loop=loop)
    context.settings.apply(config.get('settings') or {})
    brewery = ConversationBrewery(context)
    transport.set_listener(brewery)

    clients = []
    for account_config in config.get('accounts') or []:
        jid, resource = split_resource(account_config['jid'])
        # Stable per-account resource unless the config pins one
        resource = resource or generate_resource(jid)
        setup_account_logger(jid, log_level, paths=paths)
        rooms = {}
        for room in account_config.get('rooms') or []:
            if isinstance(room, str):
                room = {'jid': room}
            rooms[room['jid']] = room
            context.rooms.add_room(jid, room['jid'])
        for contact in account_config.get('contacts') or []:
            context.roster.add_configured_contact(jid, contact)

        client = DrunkXMPP(
            f"{jid}/{resource}",
            account_config['password'],
            rooms=rooms,
            keepalive_interval=account_config.get('keepalive_interval', 60),
        )
        transport.attach(jid, client)
        clients.append(client)

    brewery.on_load()

    def handle_exit_signal(signum, frame):
        """Handle SIGINT (Ctrl+C) and SIGTERM gracefully."""
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        for client in clients:
            client.disconnect(disable_auto_reconnect=True)
        loop.call_later(1.0, loop.stop)

    signal.signal(signal.SIGINT, handle_exit_signal)
    signal.signal(signal.SIGTERM, handle_exit_signal)

    for client in clients:
        client.connect()
    logger.info(f"Connecting {len(clients)} account(s)")
    logger.info("=" * 60)

    with loop:
        loop.run_forever()

    db.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())
