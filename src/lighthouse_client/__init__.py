"""
Lighthouse issue tracker client

Client for the Lighthouse REST API, with tools to export a whole account to
an archive and to migrate such an archive into GitLab.
"""

from __future__ import annotations

from .archive import Export, read_export
from .cli import main
from .client import Lighthouse
from .exceptions import APIError, DecodeError, LighthouseError, MigrationError, NotFoundError, TransportError
from .export import Exporter, safe_name
from .gitlab_migration import LighthouseToGitlabMigrator
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "APIError",
    "DecodeError",
    "Export",
    "Exporter",
    "Lighthouse",
    "LighthouseError",
    "LighthouseToGitlabMigrator",
    "MigrationError",
    "NotFoundError",
    "TransportError",
    "main",
    "read_export",
    "safe_name",
    "setup_logging",
]
