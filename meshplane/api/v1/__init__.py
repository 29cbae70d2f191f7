# meshplane/api/v1/__init__.py
"""
API v1 modules
"""

from . import ipam, mesh

__all__ = ["ipam", "mesh"]
