import logging
import os
import time
from pathlib import Path

from utils import StartupError

LOG_FILE_PREFIX = "sftp_commander"


def setup_logging(log_dir: Path, debug: bool) -> Path:
    """Configures the root logger for file-based logging.

    This function sets up a file handler that logs messages to a timestamped
    file in `log_dir`. It sets the base logging level for the application.
    Console logging (RichHandler) is configured separately in `main`, and is
    swapped for the UI's own handler while the full-screen display is up.

    Args:
        log_dir: The directory for log files. Created if missing.
        debug: If True, sets the logging level to DEBUG, otherwise INFO.

    Returns:
        The path of the log file.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = time.strftime("%Y-%m-%d_%H-%M-%S")
    log_file_path = log_dir / f"{LOG_FILE_PREFIX}_{timestamp}.log"

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if debug else logging.INFO)

    if logger.hasHandlers():
        logger.handlers.clear()

    file_handler = logging.FileHandler(log_file_path, mode='w', encoding='utf-8')
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    logger.addHandler(file_handler)

    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.info("--- SFTP Commander started (logging to file) ---")
    return log_file_path


def startup_directory() -> str:
    """Returns the absolute current working directory.

    Raises:
        StartupError: If the working directory no longer exists or is unreadable.
    """
    try:
        cwd = os.getcwd()
    except OSError as e:
        raise StartupError(f"Couldn't determine the current directory: {e}") from e
    if not os.access(cwd, os.R_OK | os.X_OK):
        raise StartupError(f"Current directory '{cwd}' is not readable.")
    return cwd
