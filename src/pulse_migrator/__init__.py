"""
Pulse Migrator: backup (and eventually restore) of hosted database projects

Database, storage, function configuration and auth users, driven by a
single-operation orchestration engine with a live event stream.
"""

try:
    from importlib.metadata import version
    __version__ = version("pulse-migrator")
except Exception:
    __version__ = "0.0.0"  # Fallback for development

__all__ = ["__version__"]
