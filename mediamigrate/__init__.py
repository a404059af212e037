"""
MediaMigrate
============

Live, reversible migration of a file CDN's legacy ``images``/``docs`` storage
into a unified ``media`` model.
"""

__version__ = "0.1.0"
