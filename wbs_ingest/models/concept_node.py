from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

"""ConceptNode model (one node of the WBS tree).

Nodes are assembled and aggregated by services.hierarchy and are not modified after the
tree has been built. ``hierarchy_path`` holds every ancestor code plus the node's own code,
e.g. ``["5", "5.2", "5.2.1"]``.
"""

__all__ = [
    "ConceptNode",
    "NodeKind",
    "ASSET_COUNT_FIELDS",
]


class NodeKind(Enum):
    CATEGORY = "category"
    LEAF = "leaf"


# AssetType.value -> camelCase counter field
ASSET_COUNT_FIELDS = {
    "photo": "photoCount",
    "generator": "generatorCount",
    "spec": "specCount",
    "detail": "detailCount",
}


@dataclass
class ConceptNode:
    """WBS tree node with aggregated counts."""
    code: str
    hierarchy_path: list[str]
    name: str
    kind: NodeKind = NodeKind.LEAF
    parent_id: str | None = None
    row_count: int = 0  # aggregated (leaf: direct rows, category: sum of children)
    direct_row_count: int = 0  # rows tagged with exactly this code
    asset_counts: dict[str, int] = field(default_factory=dict)  # asset type -> count
    children: list[ConceptNode] = field(default_factory=list)

    @property
    def id(self) -> str:
        return f"node-{self.code}"

    @property
    def level(self) -> int:
        return len(self.hierarchy_path) - 1

    @property
    def is_leaf(self) -> bool:
        return not self.children

    @property
    def asset_count(self) -> int:
        return sum(self.asset_counts.values())

    def to_dict(self, include_children: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "code": self.code,
            "conceptCode": self.code,
            "hierarchyPath": list(self.hierarchy_path),
            "level": self.level,
            "name": self.name,
            "type": self.kind.value,
            "isLeaf": self.is_leaf,
            "parentId": self.parent_id,
            "rowCount": self.row_count,
            "directRowCount": self.direct_row_count,
            "assetCount": self.asset_count,
        }
        for asset_type, key in ASSET_COUNT_FIELDS.items():
            data[key] = self.asset_counts.get(asset_type, 0)
        if include_children:
            data["children"] = [child.to_dict(include_children=True) for child in self.children]
        return data
