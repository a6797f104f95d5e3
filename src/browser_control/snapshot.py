"""Accessibility tree flattening.

Turns the flat node list returned by ``Accessibility.getFullAXTree`` into a
depth-annotated list of nodes with short stable refs (ax1, ax2, ...).
"""

from __future__ import annotations

from typing import Any

DEFAULT_SNAPSHOT_LIMIT = 500
MAX_SNAPSHOT_LIMIT = 2000


def clamp_limit(limit: int | None, default: int, maximum: int) -> int:
    if limit is None or limit <= 0:
        return default
    return min(int(limit), maximum)


class AXSnapshotBuilder:
    """Builds a flattened accessibility snapshot.

    Ignored nodes are skipped but their children are kept at the same depth.
    """

    def __init__(self, limit: int = DEFAULT_SNAPSHOT_LIMIT) -> None:
        self.limit = limit
        self.nodes: list[dict[str, Any]] = []
        self.truncated = False

    @staticmethod
    def _get_attr_value(node: dict[str, Any], key: str) -> Any:
        """Get attribute value from node (handles CDP AXValue format)."""
        val = node.get(key)
        if isinstance(val, dict) and "value" in val:
            return val["value"]
        return val

    def build_tree(self, nodes: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Build tree structure from flat CDP node list."""
        node_map = {n.get("nodeId"): n for n in nodes}
        listed: set[Any] = set()

        for node in nodes:
            children = [node_map[c] for c in node.get("childIds") or [] if c in node_map]
            node["_children"] = children
            listed.update(c.get("nodeId") for c in children)

        root_nodes = []
        for node in nodes:
            if node.get("nodeId") in listed:
                continue
            parent = node_map.get(node.get("parentId"))
            if parent is not None and parent is not node:
                # Parent reported via parentId only, without a childIds entry.
                parent["_children"].append(node)
            else:
                root_nodes.append(node)

        return root_nodes

    def add_node(self, node: dict[str, Any], depth: int) -> None:
        """Append a node and its descendants, stopping at the limit."""
        stack: list[tuple[dict[str, Any], int]] = [(node, depth)]
        while stack:
            current, current_depth = stack.pop()
            if len(self.nodes) >= self.limit:
                self.truncated = True
                return

            children = current.get("_children", [])
            if current.get("ignored"):
                stack.extend((child, current_depth) for child in reversed(children))
                continue

            self.nodes.append(
                {
                    "ref": f"ax{len(self.nodes) + 1}",
                    "role": str(self._get_attr_value(current, "role") or "unknown"),
                    "name": str(self._get_attr_value(current, "name") or ""),
                    "value": self._stringify(self._get_attr_value(current, "value")),
                    "description": self._stringify(
                        self._get_attr_value(current, "description")
                    ),
                    "depth": current_depth,
                }
            )
            stack.extend((child, current_depth + 1) for child in reversed(children))

    @staticmethod
    def _stringify(value: Any) -> str | None:
        if value is None or value == "":
            return None
        return str(value)

    def build(self, nodes: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for root in self.build_tree(nodes):
            self.add_node(root, 0)
            if self.truncated:
                break
        return self.nodes


def flatten_ax_tree(
    nodes: list[dict[str, Any]], limit: int | None = None
) -> dict[str, Any]:
    builder = AXSnapshotBuilder(
        clamp_limit(limit, DEFAULT_SNAPSHOT_LIMIT, MAX_SNAPSHOT_LIMIT)
    )
    flat = builder.build(nodes)
    return {"nodes": flat, "truncated": builder.truncated}
