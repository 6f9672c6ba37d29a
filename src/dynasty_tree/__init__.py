"""Dynasty Tree - family tree relationship graph core.

Keeps a symmetric, cycle-free set of parent/child/spouse edges per family
tree and projects it into per-member nodes for hierarchical rendering.
"""

__version__ = "0.1.0"

# Lazy imports to avoid circular dependencies
def __getattr__(name: str):
    if name == "FamilyTreeService":
        from dynasty_tree.service import FamilyTreeService
        return FamilyTreeService
    if name == "models":
        from dynasty_tree import models
        return models
    if name == "graph":
        from dynasty_tree import graph
        return graph
    if name == "store":
        from dynasty_tree import store
        return store
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
