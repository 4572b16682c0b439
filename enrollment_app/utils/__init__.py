"""
Shared application utilities.
"""

from .importer import is_importer_enabled, is_worker_enabled
from .logging_config import JSONFormatter, setup_logging

__all__ = ["JSONFormatter", "is_importer_enabled", "is_worker_enabled", "setup_logging"]
