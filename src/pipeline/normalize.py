"""
Card Sync — Scrape Normalization

Turns the scraper's loosely-typed rows into SaleRecords and listing
summaries. Every parser returns None on input it cannot read; callers drop
the row and count it.

Marketplace quirks handled here:
- sale times are relative ("25分前", "3時間前", "2日前") or a bare date
  ("2026/01/17", business-local midnight)
- grades are free text ("PSA 10", "A（美品）"); boxes use quantities ("1個")
- seller icons are only exposed through avatar URLs ("user-icon-123.png")
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any, Iterable, NamedTuple
from zoneinfo import ZoneInfo

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.config import ProductType, settings
from src.pipeline.errors import ConfigurationError
from src.schedule.dedup import SaleRecord

logger = structlog.get_logger(__name__)

_RELATIVE_PATTERN = re.compile(r"(\d+)\s*(秒|分|時間|日)前")
_ABSOLUTE_DATE_PATTERN = re.compile(r"^(\d{4})/(\d{1,2})/(\d{1,2})$")
_ICON_PATTERN = re.compile(r"user-icon-(\d+)")
_QUANTITY_PATTERN = re.compile(r"(\d+)個")
_PRODUCT_URL_PATTERN = re.compile(r"apparels/(\d+)")

_RELATIVE_UNITS = {
    "秒": "seconds",
    "分": "minutes",
    "時間": "hours",
    "日": "days",
}

# Checked in order: the first substring hit wins.
_GRADED_RULES: list[tuple[tuple[str, ...], str]] = [
    (("PSA10",), "PSA10"),
    (("PSA9",), "PSA9"),
    (("PSA8", "PSA7", "PSA6"), "PSA8以下"),
    (("BGS10BL",), "BGS10BL"),
    (("BGS10GL",), "BGS10GL"),
    (("BGS9.5",), "BGS9.5"),
    (("BGS9",), "BGS9以下"),
    (("ARS10+",), "ARS10+"),
    (("ARS10",), "ARS10"),
    (("ARS9",), "ARS9"),
    (("ARS8",), "ARS8以下"),
]
_GRADING_MARKS = ("PSA", "BGS", "ARS")
_RAW_RULES: list[tuple[str, str]] = [
    ("A", "A"),
    ("B", "B"),
    ("C", "C"),
    ("D", "D"),
]

BOX_GRADE = "BOX"


# ---------------------------------------------------------------------------
# Raw scraper payloads
# ---------------------------------------------------------------------------


class RawSale(BaseModel):
    """One row of the scraper's sales-history payload."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    occurred_at: str = Field(default="", alias="occurredAt")
    price: int | str | None = None
    condition: str = ""
    size: str = ""
    identity_hint: str | None = Field(default=None, alias="identityHint")
    image_url: str = Field(default="", alias="imageUrl")

    @field_validator("identity_hint", mode="before")
    @classmethod
    def hint_as_text(cls, v: Any) -> str | None:
        if v is None or v == "":
            return None
        return str(v)


class RawListing(BaseModel):
    """One active listing (single cards) or size bucket (boxes)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    price: int | str | None = None
    condition: str = ""
    size: str = ""
    depth: int = Field(default=1, ge=0)


class GradePrice(NamedTuple):
    grade: str
    price: int
    depth: int
    top_prices: list[int]


class ListingSummary(NamedTuple):
    """Cheapest ask overall and per grade bucket."""
    overall_min: int | None
    total_depth: int
    grade_prices: list[GradePrice]


# ---------------------------------------------------------------------------
# Field parsers
# ---------------------------------------------------------------------------


def parse_relative_time(text: str, base_time: datetime) -> datetime | None:
    """
    Parse "N秒/分/時間/日前", "YYYY/MM/DD" or ISO-8601 into an aware datetime.

    Args:
        text: Marketplace time text.
        base_time: Aware "now" the relative offsets count back from.
    """
    if not text or not isinstance(text, str):
        return None
    text = text.strip()

    absolute = _ABSOLUTE_DATE_PATTERN.match(text)
    if absolute:
        year, month, day = (int(part) for part in absolute.groups())
        try:
            local = datetime(year, month, day, tzinfo=ZoneInfo(settings.BUSINESS_TIMEZONE))
        except ValueError:
            return None
        return local.astimezone(base_time.tzinfo)

    relative = _RELATIVE_PATTERN.search(text)
    if relative:
        value = int(relative.group(1))
        unit = _RELATIVE_UNITS[relative.group(2)]
        return base_time - timedelta(**{unit: value})

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ZoneInfo(settings.BUSINESS_TIMEZONE))
    return parsed.astimezone(base_time.tzinfo)


def normalize_grade(text: str | None) -> str | None:
    """Collapse free-text grades onto the ledger's grade labels."""
    if not text or not isinstance(text, str):
        return None
    cleaned = re.sub(r"\s+", "", text).upper()

    for needles, label in _GRADED_RULES:
        if any(needle in cleaned for needle in needles):
            return label
    # graded, but below the buckets we track
    if any(mark in cleaned for mark in _GRADING_MARKS):
        return None

    for needle, label in _RAW_RULES:
        if needle in cleaned:
            return label

    quantity = _QUANTITY_PATTERN.search(text)
    if quantity:
        return f"{quantity.group(1)}個"
    return None


def parse_price(value: int | str | None) -> int | None:
    """"¥1,500" / "1500" / 1500 -> 1500. Non-positive prices are rejected."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    cleaned = re.sub(r"[¥,\s円]", "", str(value))
    try:
        price = int(cleaned)
    except ValueError:
        return None
    return price if price > 0 else None


def extract_icon_number(image_url: str | None) -> str | None:
    """Pull the seller icon id out of an avatar URL."""
    if not image_url:
        return None
    match = _ICON_PATTERN.search(image_url)
    return match.group(1) if match else None


def extract_product_ref(external_ref: str) -> str:
    """
    Resolve a tracked source's external_ref to the marketplace product id.

    Accepts a bare numeric id or a listing URL (".../apparels/93021").

    Raises:
        ConfigurationError: The reference cannot be resolved. Permanent.
    """
    ref = (external_ref or "").strip()
    if ref.isdigit():
        return ref
    match = _PRODUCT_URL_PATTERN.search(ref)
    if match:
        return match.group(1)
    raise ConfigurationError(
        f"Invalid product reference: {external_ref!r}",
        details={"external_ref": external_ref},
    )


# ---------------------------------------------------------------------------
# Row normalization
# ---------------------------------------------------------------------------


def normalize_sale(
    raw: RawSale,
    product_type: str | None,
    base_time: datetime,
) -> SaleRecord | None:
    """
    Normalize one raw sale; None when any required field is unreadable.

    Boxes carry their grade in `size` ("1個"), single cards in `condition`.
    """
    occurred_at = parse_relative_time(raw.occurred_at, base_time)
    if occurred_at is None:
        return None

    grade_source = raw.size if product_type == ProductType.BOX.value else raw.condition
    grade = normalize_grade(grade_source or raw.condition or raw.size)
    if grade is None:
        return None

    price = parse_price(raw.price)
    if price is None:
        return None

    return SaleRecord(
        grade=grade,
        price=price,
        occurred_at=occurred_at,
        identity_hint=raw.identity_hint or extract_icon_number(raw.image_url),
    )


def normalize_sales(
    rows: Iterable[RawSale],
    product_type: str | None,
    base_time: datetime,
) -> tuple[list[SaleRecord], int]:
    """
    Normalize a payload. Returns (records, dropped_count).

    Rows sharing grade, price and time within one payload are distinct sales
    (different sellers, or coarse dates like "2026/01/17"); they get
    sequence 0, 1, 2... in payload order so the ledger key keeps them apart.
    The numbering depends only on the payload, so a re-scrape reproduces it.
    """
    records: list[SaleRecord] = []
    seen: dict[tuple[str, int, datetime], int] = {}
    dropped = 0
    for raw in rows:
        record = normalize_sale(raw, product_type, base_time)
        if record is None:
            dropped += 1
            continue
        key = (record.grade, record.price, record.occurred_at)
        sequence = seen.get(key, 0)
        seen[key] = sequence + 1
        if sequence:
            record = record.model_copy(update={"sequence": sequence})
        records.append(record)

    if dropped:
        logger.info("normalize_sales_dropped", dropped=dropped, kept=len(records))
    return records, dropped


def _single_bucket(condition: str) -> str | None:
    """Listing bucket for a single card: PSA10, raw A, raw B, or none."""
    if "PSA10" in condition.replace(" ", "").upper():
        return "PSA10"
    if any(mark in condition for mark in ("PSA", "ARS", "BGS")):
        return None
    if condition.startswith("A") or "A（" in condition:
        return "A"
    if condition.startswith("B") or "B（" in condition:
        return "B"
    return None


def summarize_listings(
    listings: Iterable[RawListing],
    product_type: str | None,
) -> ListingSummary:
    """
    Reduce active listings to the cheapest ask overall and per bucket.

    Single cards: buckets PSA10 / A / B with depth and the three cheapest
    asks. Boxes: one BOX bucket, preferring the 1-unit size and falling back
    to the cheapest size.
    """
    priced = [(listing, parse_price(listing.price)) for listing in listings]
    priced = [(listing, price) for listing, price in priced if price is not None]

    if product_type == ProductType.BOX.value:
        if not priced:
            return ListingSummary(None, 0, [])
        total_depth = sum(listing.depth for listing, _ in priced)
        one_box = [p for p in priced if normalize_grade(p[0].size) == "1個"]
        listing, price = min(one_box or priced, key=lambda p: p[1])
        bucket = GradePrice(BOX_GRADE, price, listing.depth, [price])
        return ListingSummary(price, total_depth, [bucket])

    total_depth = len(priced)
    overall_min = min((price for _, price in priced), default=None)

    buckets: dict[str, list[int]] = {}
    for listing, price in priced:
        grade = _single_bucket(listing.condition)
        if grade is not None:
            buckets.setdefault(grade, []).append(price)

    grade_prices = []
    for grade in ("PSA10", "A", "B"):
        prices = sorted(buckets.get(grade, []))
        if prices:
            grade_prices.append(GradePrice(grade, prices[0], len(prices), prices[:3]))

    return ListingSummary(overall_min, total_depth, grade_prices)
