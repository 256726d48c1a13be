"""Product catalog search over HTTP."""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Protocol

import httpx

from shelfmatch.config import CatalogSettings
from shelfmatch.errors import CatalogError
from shelfmatch.types import CatalogProduct, ExtractedAttributes, SearchResult

logger = logging.getLogger(__name__)

AUTH_PATH = "/v1/auth/token"
SEARCH_PATH = "/v1/catalog/products/search/query"


class CatalogSearch(Protocol):
    """Catalog lookup interface used by the pipeline."""

    def search(self, attributes: ExtractedAttributes, cap: int = 100) -> SearchResult:
        """Return up to ``cap`` ranked catalog hits for the extracted attributes."""


def front_image_url(images: list[dict[str, Any]] | None) -> str | None:
    """Prefer the FRONT image, else the first image that has a usable URL."""
    if not images:
        return None

    def usable(image: dict[str, Any]) -> str | None:
        urls = image.get("urls") or {}
        return urls.get("desktop") or urls.get("mobile") or None

    for image in images:
        if str(image.get("type", "")).upper() == "FRONT":
            url = usable(image)
            if url:
                return url
    for image in images:
        url = usable(image)
        if url:
            return url
    return None


def parse_product(raw: dict[str, Any], rank: int) -> CatalogProduct:
    keys = raw.get("keys") or {}
    key = keys.get("GTIN14") or raw.get("key")
    if not key:
        raise CatalogError(f"catalog product at rank {rank} has no key")
    category = raw.get("category")
    if isinstance(category, list):
        category = category[0] if category else None
    return CatalogProduct(
        key=str(key),
        title=str(raw.get("title") or ""),
        rank=rank,
        brand=raw.get("companyBrand"),
        manufacturer=raw.get("companyManufacturer"),
        size=raw.get("measures"),
        category=category,
        image_url=front_image_url(raw.get("images")),
        source_urls=tuple(str(url) for url in raw.get("sourcePdpUrls") or ()),
    )


class CatalogClient:
    """Token-authenticated client for the catalog's fuzzy title search."""

    def __init__(
        self,
        base_url: str,
        email: str,
        password: str,
        timeout_seconds: float = 30.0,
        updated_at_from: str = "2025-07-01T00:00:00Z",
        token_ttl_seconds: int = 23 * 60 * 60,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.email = email
        self.password = password
        self.updated_at_from = updated_at_from
        self.token_ttl_seconds = token_ttl_seconds
        self._client = httpx.Client(base_url=base_url, timeout=timeout_seconds, transport=transport)
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: CatalogSettings) -> "CatalogClient":
        email = os.getenv(settings.email_env, "")
        password = os.getenv(settings.password_env, "")
        if not email or not password:
            raise CatalogError(
                f"catalog credentials not configured (set {settings.email_env} and {settings.password_env})"
            )
        return cls(
            base_url=settings.base_url,
            email=email,
            password=password,
            timeout_seconds=settings.timeout_seconds,
            updated_at_from=settings.updated_at_from,
            token_ttl_seconds=settings.token_ttl_seconds,
        )

    def close(self) -> None:
        self._client.close()

    def _access_token(self) -> str:
        with self._token_lock:
            if self._token is not None and time.monotonic() < self._token_expires_at:
                return self._token
            try:
                response = self._client.post(
                    AUTH_PATH,
                    json={"email": self.email, "password": self.password, "includeRefreshToken": True},
                )
                response.raise_for_status()
                token = response.json().get("accessToken")
            except (httpx.HTTPError, ValueError) as exc:
                raise CatalogError(f"catalog authentication failed: {exc}") from exc
            if not token:
                raise CatalogError("catalog authentication returned no access token")
            self._token = str(token)
            self._token_expires_at = time.monotonic() + self.token_ttl_seconds
            logger.info("catalog token refreshed")
            return self._token

    def search(self, attributes: ExtractedAttributes, cap: int = 100) -> SearchResult:
        term = attributes.search_term()
        if not term:
            raise CatalogError("no usable search attributes")

        body = {
            "updatedAtFrom": self.updated_at_from,
            "productFilter": "CORE_FIELDS",
            "search": term,
            "searchIn": {"or": ["title"]},
            "fuzzyMatch": True,
        }
        headers = {"Authorization": f"Bearer {self._access_token()}"}
        try:
            response = self._client.post(SEARCH_PATH, json=body, headers=headers)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise CatalogError(
                f"catalog search failed: {exc.response.status_code} {exc.response.text[:200]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise CatalogError(f"catalog search failed: {exc}") from exc

        results = payload.get("results") if isinstance(payload, dict) else None
        if results is None:
            results = []
        if not isinstance(results, list):
            raise CatalogError("catalog search returned a non-list result set")

        products: list[CatalogProduct] = []
        seen: set[str] = set()
        for raw in results[:cap]:
            if not isinstance(raw, dict):
                raise CatalogError("catalog search returned a non-object product")
            product = parse_product(raw, rank=len(products) + 1)
            if product.key in seen:
                continue
            seen.add(product.key)
            products.append(product)
        logger.debug("catalog search %r returned %d products", term, len(products))
        return SearchResult(term=term, products=products)
