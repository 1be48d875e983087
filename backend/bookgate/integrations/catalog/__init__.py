"""
Content catalog integration module.
"""

from bookgate.integrations.catalog.client import (
    CatalogAPIError,
    CatalogBook,
    CatalogClient,
    CatalogCoupon,
)

__all__ = ["CatalogAPIError", "CatalogBook", "CatalogClient", "CatalogCoupon"]
