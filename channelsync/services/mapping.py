"""
Shared helpers for mapping provider payloads into the canonical order model.
All helpers tolerate missing/partial data and return empty values instead of raising.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional


def clean_str(value: Any, max_len: Optional[int] = None) -> Optional[str]:
    """Strip a scalar into a string; None/blank become None."""
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    return s[:max_len] if max_len else s


def to_decimal(value: Any) -> Decimal:
    """
    Parse provider money into Decimal.
    Accepts numbers, numeric strings, {"amount": "12.50"} and Etsy's {"amount": 1250, "divisor": 100}.
    """
    if value is None:
        return Decimal("0")
    if isinstance(value, dict):
        if "divisor" in value:
            try:
                divisor = Decimal(str(value.get("divisor") or 1)) or Decimal("1")
                return (Decimal(str(value.get("amount") or 0)) / divisor).quantize(Decimal("0.01"))
            except (InvalidOperation, ValueError):
                return Decimal("0")
        return to_decimal(value.get("amount"))
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def currency_of(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return clean_str(value.get("currency_code") or value.get("currencyCode"), 3)
    return None


def to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def build_address(
    *,
    name: Any = None,
    company: Any = None,
    street1: Any = None,
    street2: Any = None,
    city: Any = None,
    state: Any = None,
    postal_code: Any = None,
    country: Any = None,
    phone: Any = None,
) -> dict:
    """Canonical shipping address dict with a one-line `formatted` rendering."""
    address = {
        "name": clean_str(name),
        "company": clean_str(company),
        "street1": clean_str(street1),
        "street2": clean_str(street2),
        "city": clean_str(city),
        "state": clean_str(state),
        "postal_code": clean_str(postal_code),
        "country": clean_str(country),
        "phone": clean_str(phone),
    }
    address["formatted"] = format_address(address)
    return address


def format_address(addr: Optional[dict]) -> Optional[str]:
    if not addr or not isinstance(addr, dict):
        return None
    parts = [p for p in (addr.get("street1"), addr.get("street2")) if p]
    tail = [p for p in (addr.get("city"), addr.get("state"), addr.get("postal_code"), addr.get("country")) if p]
    if tail:
        parts.append(", ".join(tail))
    line = ", ".join(parts)
    return line[:1024] if line else None


def variation_descriptors(pairs: Iterable[tuple[Any, Any]]) -> list[str]:
    """["Size: M", "Color: Black"]; pairs missing a value are dropped."""
    out = []
    for name, value in pairs:
        value = clean_str(value)
        if not value:
            continue
        name = clean_str(name)
        out.append(f"{name}: {value}" if name else value)
    return out


def find_links(node: Any, links: Optional[list[str]] = None) -> list[str]:
    """Collect url values of {"type": "link", "url": ...} objects anywhere in a JSON tree."""
    if links is None:
        links = []
    if isinstance(node, dict):
        if node.get("type") == "link" and clean_str(node.get("url")):
            links.append(str(node["url"]).strip())
        for value in node.values():
            find_links(value, links)
    elif isinstance(node, list):
        for value in node:
            find_links(value, links)
    return links


def numeric_id(gid: Any) -> Optional[str]:
    """'gid://shopify/Order/123' -> '123'; plain ids pass through."""
    s = clean_str(gid)
    if not s:
        return None
    return s.rsplit("/", 1)[-1]


def normalize_carrier(carrier: Optional[str], carrier_map: dict[str, str], fallback: str = "other") -> str:
    """Map free-text/internal carrier codes to a provider token; unknown carriers get the fallback."""
    key = (carrier or "").strip().lower()
    if not key:
        return fallback
    if key in carrier_map:
        return carrier_map[key]
    compact = key.replace(" ", "").replace("_", "").replace("-", "")
    for name, token in carrier_map.items():
        if name.replace("_", "").replace("-", "") == compact:
            return token
    return fallback
