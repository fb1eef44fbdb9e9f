import time
import logging
import os
from functools import wraps
from typing import Callable, Any

class Timeouts:
    SSH_CONNECT = int(os.getenv('SC_SSH_CONNECT_TIMEOUT', '5'))
    SSH_EXEC = int(os.getenv('SC_SSH_EXEC_TIMEOUT', '60'))
    POOL_WAIT = int(os.getenv('SC_POOL_WAIT_TIMEOUT', '120'))

def retry(tries: int = 2, delay: float = 5, backoff: int = 1, log_level: int = logging.WARNING) -> Callable:
    """Creates a decorator that retries a function call.

    This decorator will re-invoke the decorated function upon exceptions up to
    a specified number of times, with an optional exponential backoff.

    Args:
        tries: The maximum number of attempts.
        delay: The initial delay between retries in seconds.
        backoff: The factor by which the delay should be multiplied after each
            failed attempt. A value of 1 results in a fixed delay.
        log_level: The level used for the per-attempt retry message. Tight
            polling loops pass DEBUG here.

    Returns:
        A decorator that can be applied to a function.
    """
    def deco_retry(f: Callable) -> Callable:
        @wraps(f)
        def f_retry(*args: Any, **kwargs: Any) -> Any:
            _tries, _delay = tries, delay
            for attempt in range(1, _tries + 1):
                try:
                    return f(*args, **kwargs)
                except Exception as e:
                    if attempt == _tries:
                        logging.log(log_level, f"'{f.__name__}' failed on the final attempt ({attempt}/{_tries}): {e}")
                        raise

                    msg = (f"'{f.__name__}' failed with '{e}'. Attempt {attempt}/{_tries}. "
                           f"Retrying in {_delay} seconds...")
                    logging.log(log_level, msg)
                    time.sleep(_delay)
                    _delay *= backoff
        return f_retry
    return deco_retry


class TransferError(Exception):
    """Raised when a file or directory transfer cannot be completed."""
    pass


class ListingError(Exception):
    """Raised when a directory cannot be listed."""
    pass


class RemoteSessionError(Exception):
    """Raised when the remote session cannot be established or used."""
    pass


class StartupError(Exception):
    """A fatal error before the UI is up. The message is shown to the user as-is."""
    pass
