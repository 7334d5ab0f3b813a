# src/wg_overlay/__init__.py
"""
Gestion côté serveur d'un overlay WireGuard point-à-point.
"""

__version__ = "0.3.0"
