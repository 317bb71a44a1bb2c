"""Core modules for apkg"""

from .catalog import Catalog, CatalogEntry, fetch_catalog
from .ledger import Ledger
from .operations import Reconciler

__all__ = ['Catalog', 'CatalogEntry', 'fetch_catalog', 'Ledger', 'Reconciler']
