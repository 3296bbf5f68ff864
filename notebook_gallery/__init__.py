"""Notebook Gallery: permission-scoped search, ranking and metrics for notebooks."""

from notebook_gallery.config import ConfigManager, GalleryConfig
from notebook_gallery.errors import (
    BackendUnavailable,
    DataUnavailable,
    FingerprintFailure,
    GalleryError,
    GenerationTimeout,
    InvalidQuery,
    NotebookNotFound,
)
from notebook_gallery.gallery import Gallery
from notebook_gallery.models import Group, Notebook, Principal, Summary, User
from notebook_gallery.permissions import Intent, PermissionBuilder
from notebook_gallery.ranking import RankingEngine, ResultPage

__version__ = "0.1.0"

__all__ = [
    # Config module
    "ConfigManager",
    "GalleryConfig",
    # Errors module
    "GalleryError",
    "InvalidQuery",
    "BackendUnavailable",
    "DataUnavailable",
    "GenerationTimeout",
    "FingerprintFailure",
    "NotebookNotFound",
    # Gallery module
    "Gallery",
    # Models module
    "User",
    "Group",
    "Principal",
    "Notebook",
    "Summary",
    # Permissions module
    "Intent",
    "PermissionBuilder",
    # Ranking module
    "RankingEngine",
    "ResultPage",
]
