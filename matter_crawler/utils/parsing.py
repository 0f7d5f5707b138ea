from __future__ import annotations

import re
from typing import Any, Iterable, List, Mapping, Optional
from urllib.parse import urlparse, urlunparse

from ..adapters.base import RecordDetail, RecordStub

DEFAULT_DEVICE_TYPE = "Matter Device"

_PLACEHOLDERS = {"", "n/a", "-", "none", "unknown"}
_HEX_RE = re.compile(r"^(?:0x)?([0-9a-f]+)$", re.IGNORECASE)

KNOWN_MANUFACTURERS = (
    "Govee", "Philips", "Samsung", "Apple", "Google", "Amazon", "Aqara", "LG", "IKEA",
    "Belkin", "Eve", "Nanoleaf", "GE", "Cync", "Tapo", "TP-Link", "Signify", "Haier", "WiZ",
)


def normalize_url(url: str) -> str:
    """
    Normalize URL by removing fragments. Record URLs are a secondary lookup key,
    so two spellings of the same page must compare equal.
    """
    parts = list(urlparse(url.strip()))
    parts[5] = ""  # strip fragment
    return urlunparse(parts)


def clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = " ".join(str(value).split())
    return text or None


def parse_hex_id(value: Any) -> Optional[int]:
    """
    Vendor and product ids appear as "0xFFF1", "fff1" or "65521". Catalog ids are
    hexadecimal even without the prefix, so digit-only strings are read as hex too.
    """
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.lower() in _PLACEHOLDERS:
        return None
    match = _HEX_RE.match(text)
    if not match:
        return None
    return int(match.group(1), 16)


def split_categories(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items: Iterable[Any] = re.split(r"[,;\n]", value)
    else:
        items = value
    out: List[str] = []
    for item in items:
        text = clean_text(item)
        if text and text not in out:
            out.append(text)
    return out


def guess_manufacturer(title: Optional[str]) -> Optional[str]:
    if not title:
        return None
    for brand in KNOWN_MANUFACTURERS:
        if brand in title:
            return brand
    return None


def build_detail(stub: RecordStub, raw: Mapping[str, Any]) -> RecordDetail:
    """
    Merge a list-phase stub with the raw attributes of its detail page.

    Detail values win over stub values when both are present; identity fields
    (url, page id, index) always come from the stub.
    """
    title = clean_text(raw.get("title"))
    model = clean_text(raw.get("model")) or stub.model or title
    manufacturer = (
        clean_text(raw.get("manufacturer"))
        or stub.manufacturer
        or guess_manufacturer(title)
        or "Unknown"
    )
    device_type = clean_text(raw.get("device_type")) or DEFAULT_DEVICE_TYPE
    categories = split_categories(raw.get("application_categories"))
    if not categories:
        categories = [device_type]
    certificate_id = (
        clean_text(raw.get("certificate_id"))
        or clean_text(raw.get("certification_id"))
        or stub.certificate_id
    )

    return RecordDetail(
        url=stub.url,
        page_id=stub.page_id,
        index_in_page=stub.index_in_page,
        id=f"csa-matter-{stub.page_id}-{stub.index_in_page}",
        manufacturer=manufacturer,
        model=model,
        certificate_id=certificate_id,
        device_type=device_type,
        certification_date=clean_text(raw.get("certification_date")),
        software_version=clean_text(raw.get("software_version")),
        hardware_version=clean_text(raw.get("hardware_version")),
        firmware_version=clean_text(raw.get("firmware_version")),
        vid=parse_hex_id(raw.get("vid")),
        pid=parse_hex_id(raw.get("pid")),
        family_sku=clean_text(raw.get("family_sku")),
        family_variant_sku=clean_text(raw.get("family_variant_sku")),
        family_id=clean_text(raw.get("family_id")),
        tis_trp_tested=clean_text(raw.get("tis_trp_tested")),
        specification_version=clean_text(raw.get("specification_version")),
        transport_interface=clean_text(raw.get("transport_interface")),
        primary_device_type_id=clean_text(raw.get("primary_device_type_id")),
        application_categories=categories,
    )
