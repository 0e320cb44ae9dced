"""Read-side queries over stored businesses."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from bizdir.core.errors import ValidationError
from bizdir.core.store import Document, DocumentStore, Filter
from bizdir.core.validation import (
    DEFAULT_LIMIT,
    DEFAULT_RADIUS_KM,
    MAX_LIMIT,
    MAX_RADIUS_KM,
    MIN_TERM_LENGTH,
    check_finite,
)
from bizdir.models import BUSINESSES, search_key
from bizdir.search.geo import bounding_box, haversine_km

logger = logging.getLogger(__name__)

API_VERSION = "v1"
HIGH_SENTINEL = "\uf8ff"
NEARBY_OVERFETCH = 2
EXPORT_MAX_ROWS = 1000
PROVINCES = ("ON", "BC", "AB", "QC", "MB", "SK", "NS", "NB", "PE", "NL", "YT", "NT", "NU")

_INTERNAL_FIELDS = ("search_name", "search_city", "search_category")


def to_public(document: Document) -> Dict[str, Any]:
    data = document.to_dict()
    for field in _INTERNAL_FIELDS:
        data.pop(field, None)
    return data


def _check_paging(page: int, limit: int) -> int:
    if page < 1:
        raise ValidationError("page", "'page' must be at least 1")
    if limit < 1:
        raise ValidationError("limit", "'limit' must be at least 1")
    return min(limit, MAX_LIMIT)


def _check_term(field: str, value: Optional[str]) -> str:
    term = search_key(value or "")
    if len(term) < MIN_TERM_LENGTH:
        raise ValidationError(field, f"'{field}' must be at least {MIN_TERM_LENGTH} characters")
    return term


class QueryEngine:
    """Stateless query operations; every call reads straight from the store."""

    def __init__(self, store: DocumentStore, max_workers: int = len(PROVINCES)) -> None:
        self.store = store
        self.max_workers = max_workers

    def _paginate(self, filters: List[Filter], page: int, limit: int) -> Dict[str, Any]:
        limit = _check_paging(page, limit)
        documents = self.store.query(BUSINESSES, filters, limit=limit + 1, offset=(page - 1) * limit)
        data = [to_public(document) for document in documents[:limit]]
        return {
            "data": data,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": len(data),
                "hasMore": len(documents) > limit,
            },
        }

    def search_by_name(self, name: str, page: int = 1, limit: int = DEFAULT_LIMIT) -> Dict[str, Any]:
        """Case-insensitive prefix search on the business name."""
        prefix = _check_term("name", name)
        filters = [
            Filter("search_name", ">=", prefix),
            Filter("search_name", "<=", prefix + HIGH_SENTINEL),
        ]
        return self._paginate(filters, page, limit)

    def search_by_category(self, category: str, page: int = 1, limit: int = DEFAULT_LIMIT) -> Dict[str, Any]:
        term = _check_term("type", category)
        return self._paginate([Filter("search_category", "==", term)], page, limit)

    def search_by_city(self, city: str, page: int = 1, limit: int = DEFAULT_LIMIT) -> Dict[str, Any]:
        term = _check_term("name", city)
        return self._paginate([Filter("search_city", "==", term)], page, limit)

    def nearby(
        self,
        lat: float,
        lng: float,
        radius_km: float = DEFAULT_RADIUS_KM,
        limit: int = DEFAULT_LIMIT,
    ) -> Dict[str, Any]:
        """Businesses within ``radius_km`` of a point, nearest first.

        The store is queried on latitude only and over-fetches ``2 * limit``
        rows; longitude and exact distance are filtered here. Dense bands of
        latitude outside the longitude window can therefore crowd out matches.
        """
        lat = check_finite("lat", lat, -90.0, 90.0)
        lng = check_finite("lng", lng, -180.0, 180.0)
        radius_km = check_finite("radius", radius_km, 0.0, MAX_RADIUS_KM)
        if radius_km <= 0:
            raise ValidationError("radius", "'radius' must be positive")
        limit = _check_paging(1, limit)

        box = bounding_box(lat, lng, radius_km)
        documents = self.store.query(
            BUSINESSES,
            [Filter("latitude", ">=", box.min_lat), Filter("latitude", "<=", box.max_lat)],
            limit=limit * NEARBY_OVERFETCH,
        )

        matches = []
        for document in documents:
            doc_lat = document.data.get("latitude")
            doc_lng = document.data.get("longitude")
            if not isinstance(doc_lat, (int, float)) or not isinstance(doc_lng, (int, float)):
                continue
            if not box.contains_lng(doc_lng):
                continue
            distance = haversine_km(lat, lng, doc_lat, doc_lng)
            if distance <= radius_km:
                matches.append((distance, document))

        matches.sort(key=lambda match: match[0])
        data = []
        for distance, document in matches[:limit]:
            business = to_public(document)
            business["distance"] = round(distance, 2)
            data.append(business)

        return {
            "data": data,
            "radius": radius_km,
            "unit": "km",
            "center": {"lat": lat, "lng": lng},
        }

    def get_by_id(self, business_id: str) -> Optional[Dict[str, Any]]:
        """Return the business or None when no document has this id."""
        document = self.store.get(BUSINESSES, business_id)
        if document is None:
            return None
        return to_public(document)

    def stats(self) -> Dict[str, Any]:
        """Total count plus one concurrently gathered count per province."""
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            total_future = executor.submit(self.store.count, BUSINESSES)
            province_futures = {
                province: executor.submit(self.store.count, BUSINESSES, [Filter("province", "==", province)])
                for province in PROVINCES
            }
            by_province = {province: future.result() for province, future in province_futures.items()}
            total = total_future.result()

        return {"totalBusinesses": total, "byProvince": by_province, "apiVersion": API_VERSION}

    def export(
        self,
        province: Optional[str] = None,
        city: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = EXPORT_MAX_ROWS,
    ) -> List[Dict[str, Any]]:
        """Bulk dump bounded by equality filters and ``EXPORT_MAX_ROWS``."""
        if limit < 1:
            raise ValidationError("limit", "'limit' must be at least 1")
        filters = []
        if province:
            filters.append(Filter("province", "==", province.strip().upper()))
        if city:
            filters.append(Filter("search_city", "==", search_key(city)))
        if category:
            filters.append(Filter("search_category", "==", search_key(category)))
        documents = self.store.query(BUSINESSES, filters, limit=min(limit, EXPORT_MAX_ROWS))
        logger.info("Exporting %d businesses (filters=%d)", len(documents), len(filters))
        return [to_public(document) for document in documents]
