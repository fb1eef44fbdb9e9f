"""Manages loading, updating, and validating the application's configuration.

This module is responsible for handling the `config.ini` file and for turning
command-line input into connection parameters. It includes functionality to:
- Create a new configuration file from the built-in template if one doesn't exist.
- Update an existing configuration file with new options from the template
  while preserving user-defined values.
- Validate the configuration to ensure all options have sensible values.
- Parse the `user@host` destination and resolve the host to an IPv4 address.
- Model the mutually exclusive SSH authentication methods.
"""
import configparser
import ipaddress
import logging
import shutil
import socket
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import configupdater

from utils import StartupError

PROGRAM_NAME = "sftp-commander"
DEFAULT_CONFIG_PATH = Path.home() / '.config' / 'sftp_commander' / 'config.ini'
DEFAULT_PORT = 22

CONFIG_TEMPLATE = """\
[SETTINGS]
# Show hidden (dot) files when the program starts.
show_hidden = false
# Open the keyboard shortcut panel when the program starts.
show_help = false
# SSH port used when --port is not given.
port = 22
# Number of transfers that may run at the same time.
max_concurrent_transfers = 4
# Screen redraws per second.
draw_rate = 60
# Directory refreshes per second.
refresh_rate = 1
# How long transfer error notices stay on screen.
notice_seconds = 3

[TRANSFER]
# A directory created on the remote host may not be visible to SFTP right
# away. Before uploading a file into it, probe it this many times...
dir_probe_attempts = 5
# ...waiting this long between probes.
dir_probe_delay_ms = 20
"""


def update_config(config_path: str, template_text: str = CONFIG_TEMPLATE) -> None:
    """Updates an existing config.ini from the template, preserving user values.

    This function compares the user's configuration file with the template. It
    adds any new sections or options present in the template to the user's
    config file. Existing user-defined values, comments, and file structure are
    preserved.

    If the configuration file is modified, a timestamped backup of the original
    file is created in a `backup` subdirectory. If no configuration file exists
    at `config_path`, one is created from the template.

    Args:
        config_path: The path to the user's configuration file.
        template_text: The template contents.

    Raises:
        SystemExit: If a new config cannot be created or the update fails.
    """
    config_file = Path(config_path)
    logging.debug("Checking for configuration updates...")

    if not config_file.is_file():
        logging.info(f"Configuration file not found at '{config_path}'. Creating it from the template.")
        try:
            config_file.parent.mkdir(parents=True, exist_ok=True)
            config_file.write_text(template_text, encoding='utf-8')
        except OSError as e:
            logging.error(f"FATAL: Could not create config file: {e}")
            sys.exit(1)
        return

    try:
        updater = configupdater.ConfigUpdater()
        updater.read(config_file, encoding='utf-8')
        template_updater = configupdater.ConfigUpdater()
        template_updater.read_string(template_text)

        changes_made = False
        for section_name in template_updater.sections():
            template_section = template_updater[section_name]
            if not updater.has_section(section_name):
                user_section = updater.add_section(section_name)
                for key, opt in template_section.items():
                    user_section.set(key, opt.value)
                changes_made = True
                logging.info(f"CONFIG: Added new section to config: [{section_name}]")
            else:
                user_section = updater[section_name]
                for key, opt in template_section.items():
                    if not user_section.has_option(key):
                        user_section.set(key, opt.value)
                        changes_made = True
                        logging.info(f"CONFIG: Added new option in [{section_name}]: {key}")

        if changes_made:
            backup_dir = config_file.parent / 'backup'
            backup_dir.mkdir(exist_ok=True)
            backup_filename = f"{config_file.stem}.bak_{time.strftime('%Y%m%d-%H%M%S')}"
            backup_path = backup_dir / backup_filename
            shutil.copy2(config_file, backup_path)
            logging.info(f"CONFIG: Backed up existing configuration to '{backup_path}'")
            with config_file.open('w', encoding='utf-8') as f:
                updater.write(f)
            logging.info("CONFIG: Configuration file has been updated with new options.")
        else:
            logging.debug("CONFIG: Configuration file is already up-to-date.")
    except Exception as e:
        logging.error(f"FATAL: An error occurred during config update: {e}", exc_info=True)
        sys.exit(1)


def load_config(config_path: str) -> configparser.ConfigParser:
    """Loads the configuration from the specified .ini file.

    A missing file yields the template defaults, so the program still starts
    when the config directory is not writable.
    """
    config = configparser.ConfigParser()
    config.read_string(CONFIG_TEMPLATE)
    config_file = Path(config_path)
    if config_file.is_file():
        config.read(config_file, encoding='utf-8')
    else:
        logging.warning(f"Configuration file '{config_path}' not found, using defaults.")
    return config


class ConfigValidator:
    """Validates the values of the application's configuration.

    Attributes:
        config (configparser.ConfigParser): The configuration object to validate.
        errors (List[str]): Critical error messages. If this list is not empty
            after validation, the configuration is considered invalid.
        warnings (List[str]): Non-critical warning messages.
    """

    BOOLEAN_OPTIONS = {
        'SETTINGS': ['show_hidden', 'show_help'],
    }

    INTEGER_OPTIONS = {
        ('SETTINGS', 'port'): (1, 65535),
        ('SETTINGS', 'max_concurrent_transfers'): (1, 32),
        ('SETTINGS', 'notice_seconds'): (1, 60),
        ('TRANSFER', 'dir_probe_attempts'): (1, 50),
        ('TRANSFER', 'dir_probe_delay_ms'): (1, 1000),
    }

    FLOAT_OPTIONS = {
        ('SETTINGS', 'draw_rate'): (1.0, 120.0),
        ('SETTINGS', 'refresh_rate'): (0.1, 10.0),
    }

    def __init__(self, config: configparser.ConfigParser):
        self.config = config
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate(self) -> bool:
        """Runs all validation checks and prints resulting errors or warnings.

        Returns:
            `True` if the configuration is valid (no errors), `False` otherwise.
        """
        self._check_boolean_values()
        self._check_numeric_values()

        if self.errors:
            print("Configuration errors found:", file=sys.stderr)
            for error in self.errors:
                print(f" ❌ {error}", file=sys.stderr)
            return False

        if self.warnings:
            print("Configuration warnings:", file=sys.stderr)
            for warning in self.warnings:
                print(f" ⚠️ {warning}", file=sys.stderr)

        return True

    def _check_boolean_values(self) -> None:
        for section, options in self.BOOLEAN_OPTIONS.items():
            if not self.config.has_section(section):
                continue
            for option in options:
                if not self.config.has_option(section, option):
                    continue
                try:
                    self.config.getboolean(section, option)
                except ValueError:
                    self.errors.append(f"Option '{option}' in [{section}] must be true or false")

    def _check_numeric_values(self) -> None:
        """Validates that numeric options parse and are within a recommended range."""
        checks = [(key, bounds, self.config.getint, "an integer") for key, bounds in self.INTEGER_OPTIONS.items()]
        checks += [(key, bounds, self.config.getfloat, "a number") for key, bounds in self.FLOAT_OPTIONS.items()]
        for (section, option), (min_val, max_val), getter, kind in checks:
            if not self.config.has_option(section, option):
                continue
            try:
                value = getter(section, option)
            except ValueError:
                self.errors.append(f"Option '{option}' in [{section}] must be {kind}")
                continue
            if value <= 0:
                self.errors.append(f"Option '{option}' in [{section}] must be positive")
            elif not (min_val <= value <= max_val):
                self.warnings.append(
                    f"{option}={value} is outside recommended range [{min_val}-{max_val}]"
                )


@dataclass(frozen=True)
class Settings:
    """Typed view of the [SETTINGS] and [TRANSFER] sections."""
    show_hidden: bool = False
    show_help: bool = False
    port: int = DEFAULT_PORT
    max_concurrent_transfers: int = 4
    draw_rate: float = 60.0
    refresh_rate: float = 1.0
    notice_seconds: int = 3
    dir_probe_attempts: int = 5
    dir_probe_delay_ms: int = 20


class ConfigManager:
    """Loads, validates and exposes the configuration file."""

    def __init__(self, config_path: str):
        self.config_path = config_path
        self.config = load_config(config_path)
        validator = ConfigValidator(self.config)
        if not validator.validate():
            raise StartupError(f"Invalid configuration file '{config_path}'.")

    def get_settings(self) -> Settings:
        settings = self.config['SETTINGS']
        transfer = self.config['TRANSFER']
        return Settings(
            show_hidden=settings.getboolean('show_hidden', False),
            show_help=settings.getboolean('show_help', False),
            port=settings.getint('port', DEFAULT_PORT),
            max_concurrent_transfers=settings.getint('max_concurrent_transfers', 4),
            draw_rate=settings.getfloat('draw_rate', 60.0),
            refresh_rate=settings.getfloat('refresh_rate', 1.0),
            notice_seconds=settings.getint('notice_seconds', 3),
            dir_probe_attempts=transfer.getint('dir_probe_attempts', 5),
            dir_probe_delay_ms=transfer.getint('dir_probe_delay_ms', 20),
        )


# --- Authentication ---

@dataclass(frozen=True)
class PasswordAuth:
    password: str


@dataclass(frozen=True)
class PrivateKeyAuth:
    private_key: str
    public_key: Optional[str] = None
    passphrase: Optional[str] = None


@dataclass(frozen=True)
class AgentAuth:
    pass


AuthMethod = Union[PasswordAuth, PrivateKeyAuth, AgentAuth]


def build_auth_method(password: Optional[str] = None, identity: Optional[str] = None,
                      pubkey: Optional[str] = None, passphrase: Optional[str] = None) -> AuthMethod:
    """Resolves the authentication flags into exactly one method.

    Raises:
        StartupError: If the flags are contradictory or a key file is missing.
    """
    if password is not None and identity is not None:
        raise StartupError("--password and --identity cannot be used together.")
    if password is not None:
        return PasswordAuth(password)
    if identity is not None:
        for key_path in filter(None, (identity, pubkey)):
            if not Path(key_path).expanduser().is_file():
                raise StartupError(f"Key file not found: {key_path}")
        return PrivateKeyAuth(
            private_key=str(Path(identity).expanduser()),
            public_key=str(Path(pubkey).expanduser()) if pubkey else None,
            passphrase=passphrase,
        )
    if pubkey is not None or passphrase is not None:
        raise StartupError("--pubkey and --passphrase require --identity.")
    return AgentAuth()


# --- Destination ---

@dataclass(frozen=True)
class Destination:
    user: str
    host: str
    address: str


def _usage_hint() -> str:
    return f"Example usage: {PROGRAM_NAME} user@192.168.0.8"


def resolve_host(host: str) -> str:
    """Returns `host` if it is a literal IPv4 address, otherwise its DNS lookup."""
    try:
        return str(ipaddress.IPv4Address(host))
    except ipaddress.AddressValueError:
        pass
    try:
        return socket.gethostbyname(host)
    except (socket.gaierror, UnicodeError) as e:
        logging.debug(f"DNS lookup for '{host}' failed: {e}")
        raise StartupError(f"Couldn't resolve remote server {host}.\n{_usage_hint()}") from e


def parse_destination(destination: str) -> Destination:
    """Splits `user@host` on the first '@' and resolves the host.

    Raises:
        StartupError: If the argument is malformed or the host can't be resolved.
    """
    user, sep, host = destination.partition('@')
    if not sep or not user or not host:
        raise StartupError(f"Invalid destination '{destination}', expected user@host.\n{_usage_hint()}")
    return Destination(user=user, host=host, address=resolve_host(host))
