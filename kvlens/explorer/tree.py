"""Prefix tree of key names, split on a delimiter, plus filtered row views over it."""

import fnmatch
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from ..util.const import DEFAULTS

FILTER_MODES = ("fuzzy", "pattern")


@dataclass
class KeyTreeNode:
    segment: str
    path: str
    children: Dict[str, "KeyTreeNode"] = field(default_factory=dict)
    is_leaf: bool = False           # a key exists at exactly this path
    value_kind: Optional[str] = None  # backend type, known once the key was inspected

    @property
    def is_dir(self) -> bool:
        return bool(self.children)


@dataclass(frozen=True)
class TreeRow:
    path: str
    segment: str
    depth: int
    is_leaf: bool
    is_dir: bool
    value_kind: Optional[str]
    leaf_count: int


def _matcher(filter_text: str, mode: str):
    if mode not in FILTER_MODES:
        raise ValueError(f"unknown filter mode: {mode}")
    if mode == "fuzzy":
        needle = filter_text.lower()
        return lambda key: needle in key.lower()
    if "*" not in filter_text and "?" not in filter_text and "[" not in filter_text:
        return lambda key: key == filter_text
    return lambda key: fnmatch.fnmatchcase(key, filter_text)


class KeyTree:
    """Mutable tree owned by the explorer; readers get immutable rows."""

    def __init__(self, delimiter: str = DEFAULTS["KEY_DELIMITER"]) -> None:
        if not delimiter:
            raise ValueError("delimiter must not be empty")
        self.delimiter = delimiter
        self.root = KeyTreeNode(segment="", path="")
        self.version = 0
        self._leaves = 0

    def __len__(self) -> int:
        return self._leaves

    def __contains__(self, key: str) -> bool:
        node = self.find(key)
        return node is not None and node.is_leaf

    def insert(self, key: str) -> bool:
        """Merge one key into the tree; returns False if it was already there."""
        node = self.root
        parts = key.split(self.delimiter)
        for i, part in enumerate(parts):
            child = node.children.get(part)
            if child is None:
                child = KeyTreeNode(segment=part, path=self.delimiter.join(parts[:i + 1]))
                node.children[part] = child
            node = child
        if node.is_leaf:
            return False
        node.is_leaf = True
        self._leaves += 1
        self.version += 1
        return True

    def insert_many(self, keys: Iterable[str]) -> int:
        return sum(1 for key in keys if self.insert(key))

    def find(self, key: str) -> Optional[KeyTreeNode]:
        node = self.root
        for part in key.split(self.delimiter):
            node = node.children.get(part)
            if node is None:
                return None
        return node

    def set_kind(self, key: str, kind: Optional[str]) -> bool:
        node = self.find(key)
        if node is None or not node.is_leaf or node.value_kind == kind:
            return False
        node.value_kind = kind
        self.version += 1
        return True

    def leaves(self) -> List[str]:
        out: List[str] = []
        stack = [self.root]
        while stack:
            node = stack.pop()
            if node.is_leaf:
                out.append(node.path)
            stack.extend(node.children.values())
        return sorted(out)

    def shape(self) -> Tuple[Tuple[str, bool], ...]:
        """Order-independent structural fingerprint: every node's (path, is_leaf), sorted."""
        out: List[Tuple[str, bool]] = []
        stack = list(self.root.children.values())
        while stack:
            node = stack.pop()
            out.append((node.path, node.is_leaf))
            stack.extend(node.children.values())
        return tuple(sorted(out))

    def rows(self, filter_text: str = "", mode: str = "fuzzy") -> Tuple[TreeRow, ...]:
        """Depth-first rows, siblings sorted; a filter keeps matching keys and their ancestors.

        Walks with an explicit stack since key depth is unbounded.
        """
        match = _matcher(filter_text, mode) if filter_text else None
        rows: List[Optional[TreeRow]] = []

        # [node, depth, unvisited child segments (reversed), leaves below, row index, hit]
        stack: List[list] = [[self.root, -1, sorted(self.root.children, reverse=True), 0, -1, False]]
        while stack:
            frame = stack[-1]
            node, depth, pending = frame[0], frame[1], frame[2]
            if pending:
                child = node.children[pending.pop()]
                rows.append(None)  # placeholder until the subtree count is known
                hit = child.is_leaf and (match is None or match(child.path))
                stack.append([child, depth + 1, sorted(child.children, reverse=True), 0, len(rows) - 1, hit])
                continue

            stack.pop()
            below, at, hit = frame[3], frame[4], frame[5]
            if node is self.root:
                break
            if not hit and below == 0:
                del rows[at:]
                continue
            leaf_count = below + (1 if hit else 0)
            rows[at] = TreeRow(path=node.path, segment=node.segment, depth=depth, is_leaf=node.is_leaf,
                               is_dir=node.is_dir, value_kind=node.value_kind, leaf_count=leaf_count)
            stack[-1][3] += leaf_count
        return tuple(rows)
