from .tree import KeyTree, KeyTreeNode, TreeRow
from .scanner import ExplorerSnapshot, KeyDetail, KeyScanner, ScanBatch, ScanCursor

__all__ = ["KeyTree", "KeyTreeNode", "TreeRow", "ExplorerSnapshot", "KeyDetail", "KeyScanner",
           "ScanBatch", "ScanCursor"]
