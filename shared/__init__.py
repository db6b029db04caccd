"""
ArtScope Shared Module
======================

Common utilities and configuration management shared across the
ArtScope toolkit modules.
"""

from shared.config import ArtScopeConfig

__all__ = ["ArtScopeConfig"]
