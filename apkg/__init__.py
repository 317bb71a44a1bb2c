"""
apkg - Declarative package manager for Alpine repositories

Reconciles a declared package list against what is installed under a
target root:
- Merged catalog built from one or more APKINDEX repositories
- Optional transitive dependency expansion
- Per-package file manifests for precise uninstall
"""

__version__ = "0.3.0"
__author__ = "apkg contributors"
