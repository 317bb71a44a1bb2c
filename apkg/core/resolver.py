"""
Dependency expansion for apkg

Reachability over the catalog's dependency edges: no version constraints,
no conflict handling. Names missing from the catalog are kept as leaves;
the reconciler reports them when it tries to schedule them.
"""

from typing import Iterable, List, Set

from .catalog import Catalog


def resolve(names: Iterable[str], catalog: Catalog, expand_deps: bool) -> Set[str]:
    """Expand requested names into the install set.

    Args:
        names: Requested package names
        catalog: Merged catalog
        expand_deps: Follow dependency edges when True

    Returns:
        Set of names, always a superset of names
    """
    visited: Set[str] = set()

    def visit(name: str):
        if name in visited:
            return
        visited.add(name)
        if not expand_deps:
            return
        entry = catalog.get(name)
        if entry is None:
            return
        for dep in entry.deps:
            if dep and dep != name:
                visit(dep)

    for name in names:
        visit(name)

    return visited


def install_order(names: Iterable[str], catalog: Catalog) -> List[str]:
    """Order names so dependencies come before their dependents.

    Post-order DFS restricted to names; cycles are cut where they are
    first re-entered. Sorted traversal keeps the order deterministic.
    """
    wanted = set(names)
    order: List[str] = []
    visited: Set[str] = set()

    def visit(name: str):
        if name in visited:
            return
        visited.add(name)
        entry = catalog.get(name)
        if entry is not None:
            for dep in sorted(entry.deps):
                if dep in wanted and dep != name:
                    visit(dep)
        order.append(name)

    for name in sorted(wanted):
        visit(name)

    return order
