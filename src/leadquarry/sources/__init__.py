"""Data sources: the category catalog and the API, directory and rendered variants."""

from .base import ApiSource, DirectorySource, RenderedSource, Source
from .browser import BrowserManager
from .catalog import (
    CATEGORIES,
    SOURCE_PROFILES,
    build_search_url,
    detect_query_category,
    estimate_scrape_time,
    filter_sources_by_result_count,
    get_category_description,
    get_prioritized_sources,
    group_sources_by_priority,
    resolve_category,
    with_api_sources,
)
from .parsers import parse_listing_page
from .registry import SourceRegistry

__all__ = [
    "ApiSource",
    "BrowserManager",
    "CATEGORIES",
    "DirectorySource",
    "RenderedSource",
    "SOURCE_PROFILES",
    "Source",
    "SourceRegistry",
    "build_search_url",
    "detect_query_category",
    "estimate_scrape_time",
    "filter_sources_by_result_count",
    "get_category_description",
    "get_prioritized_sources",
    "group_sources_by_priority",
    "parse_listing_page",
    "resolve_category",
    "with_api_sources",
]
