# meshplane/__init__.py
"""
Meshplane - IP address management and WireGuard hub/spoke orchestration
"""

__version__ = "1.0.0"
