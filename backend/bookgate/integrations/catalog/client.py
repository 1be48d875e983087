"""
Read-only client for the headless content catalog (GROQ HTTP query API).

The entitlement service only reads a book's id, name, public flag and
prices, plus coupon documents. Everything else in the catalog belongs to
the viewer and authoring tools.

Query endpoint:
    GET https://<project>.api.sanity.io/v<version>/data/query/<dataset>
        ?query=<GROQ>&$param=<JSON-encoded value>
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

CATALOG_PROJECT_ID = os.getenv("CATALOG_PROJECT_ID")
CATALOG_DATASET = os.getenv("CATALOG_DATASET", "production")
CATALOG_API_VERSION = os.getenv("CATALOG_API_VERSION", "2024-01-01")
CATALOG_TOKEN = os.getenv("CATALOG_TOKEN")

BOOK_PROJECTION = """{
  _id,
  name,
  "slug": slug.current,
  "subject": subject->name,
  isPublic,
  price,
  "subscriptionPrices": {
    "MONTHLY": monthlyPrice,
    "QUARTERLY": quarterlyPrice,
    "ANNUAL": annualPrice,
    "LIFETIME": lifetimePrice
  }
}"""

BOOK_BY_SLUG_QUERY = f'*[_type == "book" && slug.current == $slug][0] {BOOK_PROJECTION}'
BOOK_BY_ID_QUERY = f'*[_type == "book" && _id == $id][0] {BOOK_PROJECTION}'
COUPON_BY_CODE_QUERY = """*[_type == "coupon" && code == $code && isActive == true][0] {
  _id,
  code,
  discountType,
  discountValue,
  validFrom,
  validUntil,
  isActive,
  "applicableProducts": applicableProducts[]._ref,
  maxUses,
  minPurchaseAmount
}"""


@dataclass
class CatalogBook:
    """Catalog book fields used for entitlements and pricing. Prices in major units."""
    id: str
    name: str
    slug: Optional[str] = None
    subject: Optional[str] = None
    is_public: bool = False
    price: Optional[float] = None
    subscription_prices: Dict[str, Optional[float]] = field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "CatalogBook":
        return cls(
            id=doc["_id"],
            name=doc.get("name") or doc["_id"],
            slug=doc.get("slug"),
            subject=doc.get("subject"),
            is_public=bool(doc.get("isPublic")),
            price=doc.get("price"),
            subscription_prices=dict(doc.get("subscriptionPrices") or {}),
        )


@dataclass
class CatalogCoupon:
    code: str
    discount_type: str
    discount_value: float
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True
    applicable_products: List[str] = field(default_factory=list)
    max_uses: Optional[int] = None
    min_purchase_amount: Optional[float] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "CatalogCoupon":
        def _parse(value):
            return date_parser.isoparse(value) if value else None

        return cls(
            code=doc["code"],
            discount_type=doc.get("discountType") or "percentage",
            discount_value=float(doc.get("discountValue") or 0),
            valid_from=_parse(doc.get("validFrom")),
            valid_until=_parse(doc.get("validUntil")),
            is_active=bool(doc.get("isActive", True)),
            applicable_products=[p for p in (doc.get("applicableProducts") or []) if p],
            max_uses=doc.get("maxUses"),
            min_purchase_amount=doc.get("minPurchaseAmount"),
        )


class CatalogAPIError(Exception):
    """Error communicating with the content catalog."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CatalogClient:
    """
    GROQ query client.

    Usage:
        async with CatalogClient() as catalog:
            book = await catalog.get_book_by_slug("mi-libro")
    """

    def __init__(
        self,
        project_id: Optional[str] = None,
        dataset: Optional[str] = None,
        api_version: Optional[str] = None,
        token: Optional[str] = None,
    ):
        self.project_id = project_id or CATALOG_PROJECT_ID
        if not self.project_id:
            raise ValueError("CATALOG_PROJECT_ID is required")
        self.dataset = dataset or CATALOG_DATASET
        self.api_version = api_version or CATALOG_API_VERSION
        self.query_url = (
            f"https://{self.project_id}.api.sanity.io/"
            f"v{self.api_version}/data/query/{self.dataset}"
        )

        headers = {"Accept": "application/json"}
        token = token or CATALOG_TOKEN
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, connect=5.0),
            headers=headers,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def query(self, groq: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Run a GROQ query and return its result (None when nothing matched)."""
        request_params = {"query": groq}
        for name, value in (params or {}).items():
            request_params[f"${name}"] = json.dumps(value)

        try:
            response = await self._client.get(self.query_url, params=request_params)
        except httpx.HTTPError as e:
            logger.error("Catalog unreachable", extra={"error": str(e)})
            raise CatalogAPIError(f"Catalog unreachable: {e}")

        if response.status_code >= 400:
            logger.error("Catalog query failed", extra={
                "status_code": response.status_code,
                "response_text": response.text[:500],
            })
            raise CatalogAPIError(
                f"Catalog query failed: {response.status_code}",
                status_code=response.status_code,
            )

        return response.json().get("result")

    async def get_book_by_slug(self, slug: str) -> Optional[CatalogBook]:
        doc = await self.query(BOOK_BY_SLUG_QUERY, {"slug": slug})
        return CatalogBook.from_document(doc) if doc else None

    async def get_book_by_id(self, sanity_id: str) -> Optional[CatalogBook]:
        doc = await self.query(BOOK_BY_ID_QUERY, {"id": sanity_id})
        return CatalogBook.from_document(doc) if doc else None

    async def get_coupon(self, code: str) -> Optional[CatalogCoupon]:
        doc = await self.query(COUPON_BY_CODE_QUERY, {"code": code})
        return CatalogCoupon.from_document(doc) if doc else None
