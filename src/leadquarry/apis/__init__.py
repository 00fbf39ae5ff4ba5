"""Documented business-search APIs and the key pool that feeds them."""

from .key_pool import KeyPool, QuotaStatus
from .providers import (
    AddressValidation,
    AddressValidator,
    ApiSearchService,
    ApiUsageTracker,
    FoursquareClient,
    GooglePlacesClient,
    HereClient,
    ProviderClient,
    TomTomClient,
    YelpFusionClient,
)

__all__ = [
    "AddressValidation",
    "AddressValidator",
    "ApiSearchService",
    "ApiUsageTracker",
    "FoursquareClient",
    "GooglePlacesClient",
    "HereClient",
    "KeyPool",
    "ProviderClient",
    "QuotaStatus",
    "TomTomClient",
    "YelpFusionClient",
]
