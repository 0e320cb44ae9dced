"""Utilities for transforming raw open-data records into Business records."""

import hashlib
import logging
import math
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from bizdir.core.errors import NormalizationError
from bizdir.models import Business

logger = logging.getLogger(__name__)

MAX_ID_LENGTH = 1500
HASH_LENGTH = 20
SLUG_LENGTH = 40

# Ordered raw column names tried for each canonical field; first non-empty wins.
FIELD_VARIANTS: Dict[str, Tuple[str, ...]] = {
    "name": ("business_name", "name", "Business Name", "NAME", "BUSINESS_NAME", "Name", "legal_name"),
    "business_id": ("business_id_no", "business_id", "Business ID", "BUSINESS_ID", "business_number"),
    "address": ("address", "full_address", "Address", "ADDRESS", "street_address"),
    "city": ("city", "City", "CITY", "municipality", "CSDNAME"),
    "province": ("province", "prov_terr", "Province", "PROVINCE", "province_code"),
    "postal_code": ("postal_code", "Postal Code", "POSTAL_CODE", "postalcode", "PostalCode"),
    "category": ("category", "Category", "CATEGORY", "business_category"),
    "naics_code": ("naics_code", "NAICS Code", "NAICS_CODE", "derived_NAICS", "source_NAICS_primary"),
    "sector": ("NAICS_descr", "business_sector", "sector", "Sector", "business_description"),
    "phone": ("phone", "Phone", "PHONE", "telephone", "phone_number"),
    "email": ("email", "Email", "EMAIL"),
    "website": ("website", "Website", "WEBSITE", "url"),
    "latitude": ("latitude", "Latitude", "LATITUDE", "lat"),
    "longitude": ("longitude", "Longitude", "LONGITUDE", "lng", "lon"),
}

_INVALID_ID_CHARS = re.compile(r"[/\s.#\[\]]")
_SLUG_CHARS = re.compile(r"[^a-z0-9]+")
_NON_DIGITS = re.compile(r"\D")


def resolve_field(raw: Mapping[str, Any], candidates: Sequence[str]) -> Optional[str]:
    for key in candidates:
        value = raw.get(key)
        if value is None:
            continue
        value_str = str(value).strip()
        if value_str:
            return value_str
    return None


def normalize_postal_code(postal: Optional[str]) -> Optional[str]:
    """Canonicalise a Canadian postal code to ``A1A 1A1`` when possible."""
    if not postal:
        return None
    cleaned = re.sub(r"\s+", "", postal).upper()
    if not cleaned:
        return None
    if len(cleaned) == 6 and cleaned.isalnum():
        return f"{cleaned[:3]} {cleaned[3:]}"
    return cleaned


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    digits = _NON_DIGITS.sub("", phone)
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    return phone.strip() or None


def parse_coordinate(value: Optional[str], bound: float) -> Optional[float]:
    if value is None:
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(parsed) or abs(parsed) > bound:
        return None
    return parsed


def parse_coordinates(latitude: Optional[str], longitude: Optional[str]) -> Tuple[Optional[float], Optional[float]]:
    """Return both coordinates or neither."""
    lat = parse_coordinate(latitude, 90.0)
    lng = parse_coordinate(longitude, 180.0)
    if lat is None or lng is None:
        return None, None
    return lat, lng


def slugify(name: str) -> str:
    return _SLUG_CHARS.sub("-", name.lower()).strip("-")[:SLUG_LENGTH].strip("-")


def external_id(value: Optional[str]) -> Optional[str]:
    """Sanitised authoritative identifier, or None when it cannot be trusted."""
    if not value:
        return None
    candidate = value.strip()
    if not candidate or candidate.lower() in {"null", "undefined"}:
        return None
    if "e" in candidate or "E" in candidate:
        # Spreadsheet exports turn long numeric ids into scientific notation.
        return None
    return _INVALID_ID_CHARS.sub("_", candidate)[:MAX_ID_LENGTH]


def content_id(name: str, address: Optional[str], postal_code: Optional[str], city: Optional[str]) -> str:
    fingerprint = "|".join(part or "" for part in (name, address, postal_code, city)).lower()
    digest = hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()[:HASH_LENGTH]
    prefix = slugify(name)
    return f"{prefix}-{digest}" if prefix else f"biz-{digest}"


class Normalizer:
    """Maps heterogeneous raw records onto the canonical Business schema."""

    def __init__(self, field_variants: Optional[Mapping[str, Sequence[str]]] = None) -> None:
        self.field_variants = dict(FIELD_VARIANTS)
        if field_variants:
            self.field_variants.update({key: tuple(value) for key, value in field_variants.items()})

    def resolve(self, raw: Mapping[str, Any], field: str) -> Optional[str]:
        return resolve_field(raw, self.field_variants.get(field, ()))

    def normalize(self, raw: Mapping[str, Any], source: str, province: str) -> Optional[Business]:
        """Return a Business, or None when the record has no usable name.

        Raises NormalizationError when ``raw`` is not a mapping of fields.
        """
        if not isinstance(raw, Mapping):
            raise NormalizationError(f"expected a mapping of fields, got {type(raw).__name__}")
        name = self.resolve(raw, "name")
        if not name:
            return None
        name = " ".join(name.split())

        address = self.resolve(raw, "address")
        city = self.resolve(raw, "city")
        postal_code = normalize_postal_code(self.resolve(raw, "postal_code"))

        province_code = (province or "").strip().upper()
        if not province_code or province_code == "ALL":
            province_code = (self.resolve(raw, "province") or "").upper()

        naics_code = self.resolve(raw, "naics_code")
        category = self.resolve(raw, "category") or naics_code or self.resolve(raw, "sector")

        latitude, longitude = parse_coordinates(self.resolve(raw, "latitude"), self.resolve(raw, "longitude"))

        business_id = external_id(self.resolve(raw, "business_id")) or content_id(name, address, postal_code, city)

        return Business(
            id=business_id,
            name=name,
            address=address,
            city=city,
            province=province_code or None,
            postal_code=postal_code,
            category=category,
            naics_code=naics_code,
            phone=normalize_phone(self.resolve(raw, "phone")),
            email=self.resolve(raw, "email"),
            website=self.resolve(raw, "website"),
            latitude=latitude,
            longitude=longitude,
            source=source,
        )

    def normalize_many(
        self, records: Iterable[Mapping[str, Any]], source: str, province: str
    ) -> Tuple[List[Business], int]:
        """Normalise a batch; rejected or failing records are counted, never raised."""
        businesses: List[Business] = []
        skipped = 0
        for index, raw in enumerate(records):
            try:
                business = self.normalize(raw, source, province)
            except NormalizationError as exc:
                logger.warning("Rejected record %d from %s: %s", index, source, exc)
                skipped += 1
                continue
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to normalise record %d from %s: %s", index, source, exc)
                skipped += 1
                continue
            if business is None:
                logger.debug("Skipping record %d from %s without a name", index, source)
                skipped += 1
                continue
            businesses.append(business)
        return businesses, skipped
