"""Tab model and target id resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass
class Tab:
    """A page target as reported by the debugger's ``/json/list``."""

    target_id: str
    title: str = ""
    url: str = ""
    ws_url: str | None = None
    type: str | None = None

    @classmethod
    def from_cdp(cls, item: dict[str, Any], default_url: str = "") -> Tab:
        """Build a tab from a raw CDP target descriptor."""
        return cls(
            target_id=str(item.get("id") or ""),
            title=str(item.get("title") or ""),
            url=str(item.get("url") or default_url),
            ws_url=item.get("webSocketDebuggerUrl") or None,
            type=item.get("type"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "targetId": self.target_id,
            "title": self.title,
            "url": self.url,
        }
        if self.ws_url is not None:
            data["wsUrl"] = self.ws_url
        if self.type is not None:
            data["type"] = self.type
        return data


@dataclass(frozen=True)
class Resolved:
    tab: Tab


@dataclass(frozen=True)
class Ambiguous:
    matches: list[Tab] = field(default_factory=list)


@dataclass(frozen=True)
class NotFound:
    pass


Resolution = Union[Resolved, Ambiguous, NotFound]


def resolve_tab(requested: str | None, tabs: list[Tab]) -> Resolution:
    """Resolve a requested target id (or prefix) against a tab list.

    With no id the first tab wins. An exact id match beats prefix matching;
    a prefix shared by several tabs is ambiguous. Pure: performs no I/O.
    """
    requested = (requested or "").strip()
    if not requested:
        return Resolved(tabs[0]) if tabs else NotFound()

    for tab in tabs:
        if tab.target_id == requested:
            return Resolved(tab)

    matches = [t for t in tabs if t.target_id.startswith(requested)]
    if len(matches) == 1:
        return Resolved(matches[0])
    if matches:
        return Ambiguous(matches)
    return NotFound()
