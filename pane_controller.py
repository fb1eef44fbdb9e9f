"""Directory navigation for the local and remote panes.

`PaneController` owns the working directories, the listings and the selection
state. It is only ever used from the event loop thread.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import navigation
from listing import ListingRefresher, list_directory
from navigation import Pane
from transfer_manager import TransferDirection, TransferRequest
from utils import ListingError, StartupError

logger = logging.getLogger(__name__)


@dataclass
class WorkingDirs:
    local: str
    remote: str

    def get(self, pane: Pane) -> str:
        return self.local if pane is Pane.LOCAL else self.remote

    def set(self, pane: Pane, path: str) -> None:
        if pane is Pane.LOCAL:
            self.local = path
        else:
            self.remote = path


@dataclass
class PaneContents:
    local: List[str]
    remote: List[str]

    def get(self, pane: Pane) -> List[str]:
        return self.local if pane is Pane.LOCAL else self.remote

    def set(self, pane: Pane, names: List[str]) -> None:
        if pane is Pane.LOCAL:
            self.local = names
        else:
            self.remote = names


class PaneController:
    """Navigation, listing refresh and transfer snapshots for both panes.

    Attributes:
        backends: `LocalBackend` / `RemoteBackend` keyed by pane.
        working_dirs: The directory each pane is showing.
        contents: The current listing of each pane.
        selection: Cursor positions and the active pane.
        show_hidden: Whether dot files are listed.
    """

    def __init__(self, backends: Dict[Pane, object], working_dirs: WorkingDirs,
                 contents: PaneContents, show_hidden: bool = False):
        self.backends = backends
        self.working_dirs = working_dirs
        self.contents = contents
        self.show_hidden = show_hidden
        self.selection = navigation.initial_selection(len(contents.local), len(contents.remote))
        self._refresher = ListingRefresher()

    @classmethod
    def create(cls, local_backend, remote_backend, local_dir: str, remote_dir: str,
               show_hidden: bool = False) -> "PaneController":
        """Builds the starting state. Both panes must be listable.

        Raises:
            StartupError: If either starting directory cannot be listed.
        """
        try:
            local_names = list_directory(local_backend, local_dir, show_hidden)
            remote_names = list_directory(remote_backend, remote_dir, show_hidden)
        except ListingError as e:
            raise StartupError(f"Fatal error reading starting directory: {e}") from e
        return cls(
            backends={Pane.LOCAL: local_backend, Pane.REMOTE: remote_backend},
            working_dirs=WorkingDirs(local=local_dir, remote=remote_dir),
            contents=PaneContents(local=local_names, remote=remote_names),
            show_hidden=show_hidden,
        )

    # --- Queries ---

    @property
    def active(self) -> Pane:
        return self.selection.active

    def listing(self, pane: Pane) -> List[str]:
        return self.contents.get(pane)

    def selected_name(self, pane: Pane) -> Optional[str]:
        names = self.contents.get(pane)
        index = self.selection.index(pane)
        if not names or index is None or not 0 <= index < len(names):
            return None
        return names[index]

    # --- Cursor movement (active pane) ---

    def _active_length(self) -> int:
        return len(self.contents.get(self.active))

    def move_down(self) -> None:
        self.selection = navigation.move_down(self.selection, self._active_length())

    def move_up(self) -> None:
        self.selection = navigation.move_up(self.selection, self._active_length())

    def jump_top(self) -> None:
        self.selection = navigation.jump_top(self.selection, self._active_length())

    def jump_bottom(self) -> None:
        self.selection = navigation.jump_bottom(self.selection, self._active_length())

    def switch_pane(self) -> None:
        self.selection = navigation.switch_pane(self.selection)

    # --- Directory changes ---

    def _replace_listing(self, pane: Pane, path: str, names: List[str]) -> None:
        self.working_dirs.set(pane, path)
        self.contents.set(pane, names)
        self.selection = navigation.reset(self.selection, pane, len(names))

    def enter(self, pane: Optional[Pane] = None) -> bool:
        """Moves `pane` into the selected child directory.

        Selecting a file, a vanished entry or an unreadable directory is a
        no-op, not an error.

        Returns:
            True if the working directory changed.
        """
        pane = pane or self.active
        name = self.selected_name(pane)
        if name is None:
            return False
        backend = self.backends[pane]
        candidate = backend.join(self.working_dirs.get(pane), name)
        if not backend.is_directory(candidate):
            return False
        try:
            names = list_directory(backend, candidate, self.show_hidden)
        except ListingError as e:
            logger.debug(f"Not entering '{candidate}': {e}")
            return False
        self._replace_listing(pane, candidate, names)
        return True

    def exit(self, pane: Optional[Pane] = None) -> bool:
        """Moves `pane` to the parent directory. At the root this only re-lists.

        Returns:
            True if the working directory changed.
        """
        pane = pane or self.active
        backend = self.backends[pane]
        current = self.working_dirs.get(pane)
        parent = backend.parent(current)
        names = self._refresher.refresh(backend, parent, self.show_hidden)
        self._replace_listing(pane, parent, names)
        return parent != current

    def refresh(self, pane: Optional[Pane] = None) -> None:
        """Re-lists one pane (or both), keeping selections in range."""
        panes = [pane] if pane else [Pane.LOCAL, Pane.REMOTE]
        for p in panes:
            names = self._refresher.refresh(self.backends[p], self.working_dirs.get(p), self.show_hidden)
            self.contents.set(p, names)
            self.selection = navigation.clamp(self.selection, p, len(names))

    def toggle_hidden(self) -> None:
        self.show_hidden = not self.show_hidden
        self.refresh()

    # --- Transfers ---

    def snapshot_transfer(self) -> Optional[TransferRequest]:
        """Captures the selected entry of the active pane as a transfer request.

        Returns:
            None if nothing is selected (empty listing).
        """
        source_pane = self.active
        name = self.selected_name(source_pane)
        if name is None:
            return None
        dest_pane = source_pane.other
        source_path = self.backends[source_pane].join(self.working_dirs.get(source_pane), name)
        dest_path = self.backends[dest_pane].join(self.working_dirs.get(dest_pane), name)
        direction = TransferDirection.UPLOAD if source_pane is Pane.LOCAL else TransferDirection.DOWNLOAD
        return TransferRequest(source_path=source_path, dest_path=dest_path, direction=direction)
