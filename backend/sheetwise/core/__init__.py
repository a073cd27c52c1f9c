"""Core services and infrastructure layer.

Exports configuration settings so tests can use
``from sheetwise.core import settings``.
"""

from .config import settings  # noqa: F401
