from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any

from wbs_ingest.excel.reader import code_sort_key
from wbs_ingest.logging.error_log import ErrorLogBuffer
from wbs_ingest.models.asset_record import AssetType
from wbs_ingest.models.concept_node import ConceptNode, NodeKind
from wbs_ingest.models.error_record import ErrorType

"""WBS hierarchy builder.

Rows and assets are observed one at a time during extraction; ``build`` then creates a node
for every code prefix (implicit categories are named after their code), orders siblings
naturally and aggregates counts in a single post-order pass:

- leaf: rows/assets tagged with exactly its code
- category: sum of its direct children (its own tagged rows stay in ``directRowCount``)

The pre-order flat list is produced by the same traversal.
"""

__all__ = [
    "HierarchyBuilder",
    "ConceptTree",
    "DEFAULT_MAX_DEPTH",
]

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10
SEPARATOR = "."


@dataclass
class ConceptTree:
    roots: list[ConceptNode]
    flat: list[ConceptNode]  # pre-order
    max_depth: int  # deepest level + 1 (0 for an empty tree)

    @property
    def total_nodes(self) -> int:
        return len(self.flat)

    def find(self, code: str) -> ConceptNode | None:
        return next((n for n in self.flat if n.code == code), None)

    def to_dict(self) -> dict[str, Any]:
        """Persisted ``tree.json`` form."""
        return {
            "roots": [root.to_dict() for root in self.roots],
            "flatList": [node.to_dict(include_children=False) for node in self.flat],
            "totalNodes": self.total_nodes,
            "maxDepth": self.max_depth,
        }


class HierarchyBuilder:
    """Accumulates code observations for one job and builds the concept tree."""

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH, error_log: ErrorLogBuffer | None = None) -> None:
        self.max_depth = max_depth
        self.error_log = error_log
        self._rows: Counter[str] = Counter()
        self._assets: dict[str, Counter[str]] = {}
        self._labels: dict[str, str] = {}
        self._truncated: set[str] = set()

    def _bounded(self, code: str) -> str:
        parts = code.split(SEPARATOR)
        if len(parts) <= self.max_depth:
            return code
        bounded = SEPARATOR.join(parts[: self.max_depth])
        if code not in self._truncated:
            self._truncated.add(code)
            message = f"code {code} exceeds depth {self.max_depth}; counted under {bounded}"
            logger.warning(message)
            if self.error_log is not None:
                self.error_log.warn(ErrorType.HIERARCHY, message)
        return bounded

    def observe_row(self, code: str | None, label: str | None = None) -> None:
        if not code:
            return
        code = self._bounded(code)
        self._rows[code] += 1
        if label and code not in self._labels:
            self._labels[code] = label

    def observe_asset(self, code: str | None, asset_type: AssetType) -> None:
        if not code:
            return
        code = self._bounded(code)
        self._assets.setdefault(code, Counter())[asset_type.value] += 1

    @property
    def truncated_codes(self) -> list[str]:
        return sorted(self._truncated, key=code_sort_key)

    def build(self) -> ConceptTree:
        nodes: dict[str, ConceptNode] = {}
        for code in set(self._rows) | set(self._assets):
            parts = code.split(SEPARATOR)
            for depth in range(1, len(parts) + 1):
                prefix = SEPARATOR.join(parts[:depth])
                if prefix in nodes:
                    continue
                nodes[prefix] = ConceptNode(
                    code=prefix,
                    hierarchy_path=[SEPARATOR.join(parts[:d]) for d in range(1, depth + 1)],
                    name=self._labels.get(prefix, prefix),
                    parent_id=f"node-{SEPARATOR.join(parts[:depth - 1])}" if depth > 1 else None,
                )

        roots: list[ConceptNode] = []
        for code in sorted(nodes, key=code_sort_key):
            node = nodes[code]
            if len(node.hierarchy_path) == 1:
                roots.append(node)
            else:
                nodes[node.hierarchy_path[-2]].children.append(node)

        flat: list[ConceptNode] = []
        max_level = -1
        # pre-order append + post-order aggregation in one walk
        stack: list[tuple[ConceptNode, bool]] = [(root, False) for root in reversed(roots)]
        while stack:
            node, visited = stack.pop()
            if visited:
                self._aggregate(node)
                continue
            flat.append(node)
            max_level = max(max_level, node.level)
            stack.append((node, True))
            stack.extend((child, False) for child in reversed(node.children))

        logger.debug("hierarchy: %d nodes, %d roots, depth %d", len(flat), len(roots), max_level + 1)
        return ConceptTree(roots=roots, flat=flat, max_depth=max_level + 1)

    def _aggregate(self, node: ConceptNode) -> None:
        node.direct_row_count = self._rows.get(node.code, 0)
        if node.children:
            node.kind = NodeKind.CATEGORY
            node.row_count = sum(child.row_count for child in node.children)
            totals: Counter[str] = Counter()
            for child in node.children:
                totals.update(child.asset_counts)
            node.asset_counts = dict(totals)
        else:
            node.kind = NodeKind.LEAF
            node.row_count = node.direct_row_count
            node.asset_counts = dict(self._assets.get(node.code, {}))
