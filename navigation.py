"""Cursor state for the two panes.

Every function here is pure: it takes a `SelectionState` and the length of
the listing it applies to and returns a new `SelectionState`. An empty listing
has no selection (`None`), and every index transition leaves it untouched.
"""
import enum
from dataclasses import dataclass, replace
from typing import Optional


class Pane(enum.Enum):
    LOCAL = "local"
    REMOTE = "remote"

    @property
    def other(self) -> "Pane":
        return Pane.REMOTE if self is Pane.LOCAL else Pane.LOCAL


@dataclass(frozen=True)
class SelectionState:
    local: Optional[int] = None
    remote: Optional[int] = None
    active: Pane = Pane.LOCAL

    def index(self, pane: Pane) -> Optional[int]:
        return self.local if pane is Pane.LOCAL else self.remote

    def with_index(self, pane: Pane, index: Optional[int]) -> "SelectionState":
        if pane is Pane.LOCAL:
            return replace(self, local=index)
        return replace(self, remote=index)

    @property
    def active_index(self) -> Optional[int]:
        return self.index(self.active)


def initial_selection(local_length: int, remote_length: int, active: Pane = Pane.LOCAL) -> SelectionState:
    return SelectionState(
        local=0 if local_length else None,
        remote=0 if remote_length else None,
        active=active,
    )


def move_down(state: SelectionState, length: int) -> SelectionState:
    if length == 0:
        return state
    current = state.active_index or 0
    return state.with_index(state.active, min(current + 1, length - 1))


def move_up(state: SelectionState, length: int) -> SelectionState:
    if length == 0:
        return state
    current = state.active_index or 0
    return state.with_index(state.active, max(min(current, length - 1) - 1, 0))


def jump_top(state: SelectionState, length: int) -> SelectionState:
    if length == 0:
        return state
    return state.with_index(state.active, 0)


def jump_bottom(state: SelectionState, length: int) -> SelectionState:
    if length == 0:
        return state
    return state.with_index(state.active, length - 1)


def switch_pane(state: SelectionState) -> SelectionState:
    return replace(state, active=state.active.other)


def reset(state: SelectionState, pane: Pane, length: int) -> SelectionState:
    """Selection after `pane` changed directory: first entry, or none."""
    return state.with_index(pane, 0 if length else None)


def clamp(state: SelectionState, pane: Pane, length: int) -> SelectionState:
    """Keeps `pane`'s index valid after its listing was refreshed in place."""
    if length == 0:
        return state.with_index(pane, None)
    index = state.index(pane)
    if index is None:
        return state.with_index(pane, 0)
    return state.with_index(pane, min(max(index, 0), length - 1))
