#!/usr/bin/env python3
# PYTHON_ARGCOMPLETE_OK
"""SFTP Commander: a dual-pane terminal file manager for a local and a remote directory.

The left pane shows the local filesystem, the right pane a directory on a
remote host reached over SSH/SFTP. Files and whole directory trees are copied
between the two panes in the background while browsing continues.
"""
import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import argcomplete
from rich.console import Console
from rich.logging import RichHandler

from config_manager import (
    DEFAULT_CONFIG_PATH, PROGRAM_NAME, ConfigManager, build_auth_method, parse_destination, update_config,
)
from event_loop import EventLoop
from listing import LocalBackend, RemoteBackend
from pane_controller import PaneController
from ssh_manager import RemoteSession, open_session
from system_manager import setup_logging, startup_directory
from terminal import KeyReader, TerminalController
from transfer_manager import TransferEngine, TransferScheduler
from ui import FileManagerUI
from utils import RemoteSessionError, StartupError

__version__ = "1.0.0"

# The event loop only ever lists one directory at a time.
BROWSE_POOL_SIZE = 1


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROGRAM_NAME,
        description="A dual-pane terminal file manager for a local and a remote (SFTP) directory.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument('destination', nargs='?', metavar='USER@HOST', help='Remote user and host to connect to.')
    auth_group = parser.add_mutually_exclusive_group()
    auth_group.add_argument('-p', '--password', help='Authenticate with this password.')
    auth_group.add_argument('-i', '--identity', metavar='PRIVATE_KEY', help='Authenticate with this private key file.')
    auth_group.add_argument('--agent', action='store_true', help='Authenticate through the SSH agent (the default).')
    parser.add_argument('--pubkey', metavar='PUBLIC_KEY', help='(With -i) Public key matching the private key.')
    parser.add_argument('--passphrase', help='(With -i) Passphrase of the private key.')
    parser.add_argument('-a', '--all', action='store_true', help='Show hidden files.')
    parser.add_argument('-s', '--shortcuts', action='store_true', help='Start with the keyboard shortcut panel open.')
    parser.add_argument('-P', '--port', type=int, help='SSH port (default: from the configuration file, usually 22).')
    parser.add_argument('--config', default=str(DEFAULT_CONFIG_PATH), help='Path to the configuration file.')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging to file.')
    parser.add_argument('--check-config', action='store_true', help='Validate the configuration file and exit.')
    parser.add_argument('--version', action='store_true', help="Show program's version and config file path, then exit.")
    return parser


def _log_transfer_results(messages: List[str]) -> None:
    for message in messages:
        if message:
            logging.error(message)
    succeeded = sum(1 for message in messages if not message)
    if messages:
        logging.info(f"{succeeded} of {len(messages)} outstanding transfer(s) finished successfully.")


def _drain_transfers(scheduler: TransferScheduler) -> None:
    """Waits for outstanding transfers. A second Ctrl-c abandons them."""
    try:
        _log_transfer_results(scheduler.shutdown())
    except KeyboardInterrupt:
        logging.warning(f"Interrupted while waiting; abandoning {scheduler.pending_count()} transfer(s).")


def run_session(args: argparse.Namespace, config_manager: ConfigManager, rich_handler: Optional[logging.Handler]) -> None:
    """Connects, shows the dual-pane UI and blocks until the user quits.

    Raises:
        StartupError: If anything needed before the UI comes up fails.
    """
    settings = config_manager.get_settings()
    show_hidden = args.all or settings.show_hidden
    show_help = args.shortcuts or settings.show_help
    port = args.port if args.port is not None else settings.port

    terminal = TerminalController.for_stdin()
    local_dir = startup_directory()
    destination = parse_destination(args.destination)
    auth = build_auth_method(args.password, args.identity, args.pubkey, args.passphrase)
    logging.info(f"Connecting to {destination.user}@{destination.host} ({destination.address}:{port}) "
                 f"using {type(auth).__name__}.")

    browse_session: Optional[RemoteSession] = None
    transfer_session: Optional[RemoteSession] = None
    scheduler: Optional[TransferScheduler] = None
    try:
        try:
            browse_session = open_session(destination.address, port, destination.user, auth, BROWSE_POOL_SIZE)
            transfer_session = open_session(destination.address, port, destination.user, auth,
                                            settings.max_concurrent_transfers)
            remote_dir = browse_session.home_directory()
        except RemoteSessionError as e:
            raise StartupError(str(e)) from e

        controller = PaneController.create(
            LocalBackend(), RemoteBackend(browse_session), local_dir, remote_dir, show_hidden=show_hidden,
        )
        engine = TransferEngine(
            transfer_session,
            dir_probe_attempts=settings.dir_probe_attempts,
            dir_probe_delay=settings.dir_probe_delay_ms / 1000.0,
        )
        scheduler = TransferScheduler(engine, max_workers=settings.max_concurrent_transfers)

        ui = FileManagerUI(controller, rich_handler=rich_handler, show_help=show_help)
        loop = EventLoop(
            controller, scheduler, ui,
            draw_rate=settings.draw_rate,
            refresh_rate=settings.refresh_rate,
            notice_seconds=settings.notice_seconds,
        )
        key_reader = KeyReader(terminal.stdin_fd, loop.post_key)
        with terminal.cbreak_mode(), ui:
            key_reader.start()
            try:
                loop.run()
            finally:
                key_reader.stop()
    finally:
        try:
            if scheduler is not None:
                _drain_transfers(scheduler)
        finally:
            for session in (browse_session, transfer_session):
                if session is not None:
                    session.close()
            logging.info("All SSH connections have been closed.")


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the application.

    This function is responsible for:
    -   Parsing command-line arguments.
    -   Creating or updating, then validating the configuration file.
    -   Setting up file and console logging.
    -   Running the interactive session and draining outstanding transfers.

    Returns:
        0 on successful execution, 1 on error.
    """
    parser = build_arg_parser()
    argcomplete.autocomplete(parser)
    args = parser.parse_args(argv)

    if args.version:
        print(f"{PROGRAM_NAME} {__version__}")
        print(f"Configuration file: {args.config}")
        return 0

    config_path = Path(args.config).expanduser()
    try:
        setup_logging(config_path.parent / 'logs', args.debug)
    except OSError as e:
        print(f"ERROR: Couldn't set up logging: {e}", file=sys.stderr)
        return 1

    log_level = logging.DEBUG if args.debug else logging.INFO
    rich_handler = RichHandler(level=log_level, show_path=False, rich_tracebacks=True, markup=False,
                               console=Console(stderr=True))
    rich_handler.setFormatter(logging.Formatter('%(message)s'))
    logging.getLogger().addHandler(rich_handler)
    logging.info(f"Using configuration file: {config_path}")

    if args.check_config:
        logging.info("--- Running Configuration Check ---")
        try:
            ConfigManager(str(config_path))
        except StartupError:
            logging.error("FAILURE: Configuration file has errors.")
            return 1
        logging.info("SUCCESS: Configuration file appears to be valid.")
        return 0

    if not args.destination:
        parser.print_usage(sys.stderr)
        print(f"{PROGRAM_NAME}: error: the USER@HOST argument is required", file=sys.stderr)
        return 1

    update_config(str(config_path))
    try:
        config_manager = ConfigManager(str(config_path))
        run_session(args, config_manager, rich_handler)
    except StartupError as e:
        logging.debug(f"Startup failed: {e}")
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logging.error(f"An unexpected error occurred in main: {e}", exc_info=True)
        return 1
    finally:
        logging.info("--- SFTP Commander finished ---")
    return 0


if __name__ == "__main__":
    sys.exit(main())
