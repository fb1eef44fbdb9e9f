"""Directory listings for the local filesystem and the remote session.

Both panes share the same listing rules: names only, no `.`/`..`, hidden
names dropped unless requested, sorted case-insensitively. The sort is stable,
so names that differ only in case keep the order the backend returned them in.
"""
import logging
import os
import posixpath
from typing import Iterable, List, Set

import paramiko

from ssh_manager import RemoteSession, join_remote
from utils import ListingError

logger = logging.getLogger(__name__)


class LocalBackend:
    """Pane operations on the local filesystem."""

    label = "Local"

    def join(self, directory: str, name: str) -> str:
        return os.path.join(directory, name)

    def parent(self, path: str) -> str:
        # dirname of the root is the root itself
        return os.path.dirname(os.path.normpath(path))

    def is_directory(self, path: str) -> bool:
        return os.path.isdir(path)

    def list_names(self, path: str) -> List[str]:
        try:
            with os.scandir(path) as entries:
                return [entry.name for entry in entries]
        except OSError as e:
            raise ListingError(f"Cannot list local directory '{path}': {e}") from e


class RemoteBackend:
    """Pane operations on the remote session."""

    label = "Remote"

    def __init__(self, session: RemoteSession):
        self.session = session

    def join(self, directory: str, name: str) -> str:
        return join_remote(directory, name)

    def parent(self, path: str) -> str:
        return posixpath.dirname(posixpath.normpath(path))

    def is_directory(self, path: str) -> bool:
        # stat on the server, never a guess from the listing
        try:
            return self.session.is_directory(path)
        except (IOError, paramiko.SSHException, TimeoutError) as e:
            logger.debug(f"Remote stat of '{path}' failed: {e}")
            return False

    def list_names(self, path: str) -> List[str]:
        try:
            return [entry.name for entry in self.session.list(path, want_hidden=True)]
        except (IOError, paramiko.SSHException, TimeoutError) as e:
            raise ListingError(f"Cannot list remote directory '{path}': {e}") from e


def sort_entry_names(names: Iterable[str], show_hidden: bool) -> List[str]:
    visible = [
        name for name in names
        if name not in ('.', '..') and (show_hidden or not name.startswith('.'))
    ]
    return sorted(visible, key=str.lower)


def list_directory(backend, path: str, show_hidden: bool) -> List[str]:
    """Returns the sorted child names of `path`.

    Raises:
        ListingError: If the directory cannot be read.
    """
    return sort_entry_names(backend.list_names(path), show_hidden)


class ListingRefresher:
    """Re-lists directories on refresh, degrading to an empty listing on failure.

    A failing path is logged once when it starts failing and once when it
    recovers, not on every refresh tick.
    """

    def __init__(self):
        self._failing: Set[str] = set()

    def refresh(self, backend, path: str, show_hidden: bool) -> List[str]:
        key = f"{backend.label}:{path}"
        try:
            names = list_directory(backend, path, show_hidden)
        except ListingError as e:
            if key not in self._failing:
                logger.warning(f"{e}. Showing an empty listing.")
                self._failing.add(key)
            return []
        if key in self._failing:
            logger.info(f"{backend.label} directory '{path}' is readable again.")
            self._failing.discard(key)
        return names
