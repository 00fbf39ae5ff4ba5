"""Request pacing, robots.txt handling and proxy rotation for page fetches."""

from .proxy import ProxyManager
from .rate_limiter import DomainRateLimiter, extract_domain
from .robots_parser import RobotsCache

__all__ = ["DomainRateLimiter", "ProxyManager", "RobotsCache", "extract_domain"]
