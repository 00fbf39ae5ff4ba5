"""
leadquarry - resilient multi-source business contact discovery.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .container import DependencyContainer
from .orchestrator import SourceOrchestrator
from .protocols import SearchRequest

__all__ = ["__version__", "Config", "DependencyContainer", "SearchRequest", "SourceOrchestrator"]
