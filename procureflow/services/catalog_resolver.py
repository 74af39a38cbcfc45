"""
Catalog Resolver

Resolves a free-text item description (the model name typed into a purchase
request spreadsheet) against the item master catalog.

Two search adapters are available:
- HttpCatalogSearch: remote `/items/search?query=` endpoint (httpx)
- DatabaseCatalogSearch: local item master table

Adapters raise ResolutionFailure on transport errors; the resolver turns
that into a miss so callers can fall back to the raw spreadsheet data.
"""
import httpx
import logging
from typing import Awaitable, Callable, List, Optional
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from procureflow.config import settings
from procureflow.exceptions import ResolutionFailure
from procureflow.models import ItemMaster
from procureflow.schemas import CatalogItem

logger = logging.getLogger(__name__)

CatalogSearch = Callable[[str], Awaitable[List[CatalogItem]]]

DEFAULT_SEARCH_LIMIT = 20

# Remote payload keys, snake_case or camelCase
_PAYLOAD_KEYS = {
    "id": ("id",),
    "item_code": ("item_code", "itemCode"),
    "display_name": ("display_name", "displayName"),
    "model_name": ("model_name", "modelName"),
    "make": ("make",),
    "category_id": ("category_id", "categoryId"),
    "category_name": ("category_name", "categoryName"),
    "sub_category_id": ("sub_category_id", "subCategoryId"),
    "sub_category_name": ("sub_category_name", "subCategoryName"),
    "uom_name": ("uom_name", "uomName"),
    "description": ("description",),
    "reference_price": ("reference_price", "referencePrice", "unitPrice"),
}


def candidate_from_payload(payload: dict) -> CatalogItem:
    """Build a catalog candidate from a remote search result"""
    values = {}
    for field, keys in _PAYLOAD_KEYS.items():
        for key in keys:
            if payload.get(key) is not None:
                values[field] = payload[key]
                break
    values.setdefault("id", 0)
    return CatalogItem(**values)


def catalog_item_to_candidate(item: ItemMaster) -> CatalogItem:
    return CatalogItem(
        id=item.id,
        item_code=item.item_code,
        display_name=item.display_name,
        model_name=item.model_name,
        make=item.make,
        category_id=item.category_id or 0,
        category_name=item.category.name if item.category else None,
        sub_category_id=item.sub_category_id or 0,
        sub_category_name=item.sub_category.name if item.sub_category else None,
        uom_name=item.uom,
        description=item.description,
        reference_price=float(item.reference_price) if item.reference_price is not None else None
    )


def search_catalog(db: Session, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> List[ItemMaster]:
    """Active catalog items whose name, model, code or make contains the query"""
    query = (query or "").strip()
    if not query:
        return []

    search_term = f"%{query}%"
    return db.query(ItemMaster).options(
        joinedload(ItemMaster.category),
        joinedload(ItemMaster.sub_category)
    ).filter(
        ItemMaster.is_active == True,
        or_(
            ItemMaster.display_name.ilike(search_term),
            ItemMaster.model_name.ilike(search_term),
            ItemMaster.item_code.ilike(search_term),
            ItemMaster.make.ilike(search_term)
        )
    ).order_by(ItemMaster.display_name, ItemMaster.id).limit(limit).all()


class HttpCatalogSearch:
    """Catalog search over HTTP"""

    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def __call__(self, query: str) -> List[CatalogItem]:
        url = f"{self.base_url}/items/search"
        try:
            if self._client is not None:
                response = await self._client.get(url, params={"query": query})
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, params={"query": query})
        except httpx.HTTPError as e:
            raise ResolutionFailure(f"Catalog search failed for '{query}': {e}")

        if response.status_code != 200:
            raise ResolutionFailure(f"Catalog search for '{query}' returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise ResolutionFailure(f"Catalog search for '{query}' returned invalid JSON: {e}")

        if isinstance(data, dict):
            data = data.get("items", [])
        return [candidate_from_payload(entry) for entry in data if isinstance(entry, dict)]


class DatabaseCatalogSearch:
    """Catalog search over the local item master"""

    def __init__(self, db: Session, limit: int = DEFAULT_SEARCH_LIMIT):
        self.db = db
        self.limit = limit

    async def __call__(self, query: str) -> List[CatalogItem]:
        try:
            items = search_catalog(self.db, query, self.limit)
        except SQLAlchemyError as e:
            raise ResolutionFailure(f"Catalog search failed for '{query}': {e}")
        return [catalog_item_to_candidate(item) for item in items]


class CatalogResolver:
    """Picks the best catalog match for a free-text query"""

    def __init__(self, search: CatalogSearch):
        self._search = search

    async def resolve(self, query: str) -> Optional[CatalogItem]:
        """
        Exact (case-insensitive) display name or model name match wins,
        otherwise the first candidate. None when nothing is found or the
        search itself failed.
        """
        try:
            candidates = await self._search(query)
        except ResolutionFailure as e:
            logger.warning(f"Catalog lookup failed, falling back to raw data: {e.message}")
            return None

        if not candidates:
            return None

        wanted = (query or "").strip().lower()
        for candidate in candidates:
            if (candidate.display_name or "").strip().lower() == wanted:
                return candidate
            if (candidate.model_name or "").strip().lower() == wanted:
                return candidate

        return candidates[0]


def build_catalog_search(db: Session) -> CatalogSearch:
    """Remote catalog when CATALOG_SEARCH_URL is configured, local item master otherwise"""
    if settings.catalog_search_url:
        return HttpCatalogSearch(settings.catalog_search_url, timeout=settings.catalog_search_timeout)
    return DatabaseCatalogSearch(db)
