"""Tests for dependency expansion"""

from apkg.core.catalog import Catalog, CatalogEntry
from apkg.core.resolver import install_order, resolve


def _catalog(graph):
    catalog = Catalog()
    catalog.merge("https://repo.test", {
        name: CatalogEntry(name, '1.0', f"{name}-1.0.apk", tuple(deps))
        for name, deps in graph.items()
    })
    return catalog


class TestResolve:
    """Tests for resolve()."""

    def test_no_expansion(self):
        catalog = _catalog({'a': ['b'], 'b': []})
        assert resolve(['a'], catalog, False) == {'a'}

    def test_transitive(self):
        catalog = _catalog({'a': ['b'], 'b': ['c'], 'c': []})
        assert resolve(['a'], catalog, True) == {'a', 'b', 'c'}

    def test_cycle(self):
        catalog = _catalog({'a': ['b'], 'b': ['a']})
        assert resolve(['a'], catalog, True) == {'a', 'b'}

    def test_self_dependency(self):
        catalog = _catalog({'a': ['a']})
        assert resolve(['a'], catalog, True) == {'a'}

    def test_unknown_names_kept(self):
        catalog = _catalog({'a': ['ghost']})
        assert resolve(['a', 'missing'], catalog, True) == {'a', 'ghost', 'missing'}

    def test_superset_of_request(self):
        catalog = _catalog({'a': [], 'b': ['c'], 'c': []})
        assert {'a', 'b'} <= resolve(['a', 'b'], catalog, True)


class TestInstallOrder:
    """Tests for install_order()."""

    def test_dependencies_first(self):
        catalog = _catalog({'app': ['lib'], 'lib': ['libc'], 'libc': []})
        assert install_order({'app', 'lib', 'libc'}, catalog) == ['libc', 'lib', 'app']

    def test_cycle_terminates(self):
        catalog = _catalog({'a': ['b'], 'b': ['a']})
        assert sorted(install_order({'a', 'b'}, catalog)) == ['a', 'b']

    def test_unknown_name(self):
        catalog = _catalog({'a': []})
        assert install_order({'a', 'ghost'}, catalog) == ['a', 'ghost']
