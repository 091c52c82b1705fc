"""Exception types shared by store access, discovery and panel loading."""

from __future__ import annotations


class ExplorerError(Exception):
    """Base class for all ensemble-explorer errors."""


class DiscoveryFailure(ExplorerError):
    """Store unreachable or ref not found. Fatal to initialization."""


class ProbeFailure(ExplorerError):
    """A single group/array could not be opened during discovery."""


class NodeNotFoundError(ExplorerError, KeyError):
    """No group or array metadata exists at the requested path."""

    def __init__(self, path: str):
        super().__init__(path)
        self.path = path

    def __str__(self) -> str:
        return f"Node not found: {self.path!r}"


class DecodeFailure(ExplorerError):
    """Chunk bytes could not be turned back into a typed buffer."""


class TimeParseFailure(ExplorerError):
    """Time units/calendar could not be interpreted."""


class InvalidRequest(ExplorerError, ValueError):
    """A caller-supplied value is out of range or of the wrong kind."""


class PanelNotFound(ExplorerError, KeyError):
    def __init__(self, panel_id: str):
        super().__init__(panel_id)
        self.panel_id = panel_id

    def __str__(self) -> str:
        return f"Unknown panel: {self.panel_id!r}"


class NotInitialized(ExplorerError):
    """The viewer has no store/hierarchy yet."""
