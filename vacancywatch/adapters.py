"""Extraction adapters turning leasing websites into raw unit records."""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import requests
from bs4 import BeautifulSoup

from .models import ConfigurationError, ExtractionError, PropertyTarget, RawUnitRecord

logger = logging.getLogger(__name__)

USER_AGENT = "vacancywatch/1.0 (+https://github.com/vacancywatch/vacancywatch)"
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)
SIGHTMAP_API = "https://sightmap.com/app/api/v1/{asset}/landing-pages/{landing_page_id}"

RENTCAFE_BLOCK_SELECTOR = "li, .row, .card, .available, [class*='avail'], [class*='unit']"
RENTCAFE_MIN_BLOCK_LENGTH = 20
RENTCAFE_MAX_BLOCKS = 250
RENTCAFE_SKIP_PHRASES = (
    "waitlist",
    "inquire for details",
    "call for details",
    "contact us",
)
RENTCAFE_UNIT_PATTERNS = (
    re.compile(r"Apartment\s*#?\s*([A-Za-z0-9-]+)", re.IGNORECASE),
    re.compile(r"\bUnit\s*#?\s*([A-Za-z0-9-]+)", re.IGNORECASE),
    re.compile(r"(?:^|\s)#\s*([A-Za-z0-9-]{2,12})\b"),
)
RENTCAFE_PRICE_PATTERNS = (
    re.compile(r"Starting\s+at\s*:\s*(\$[0-9,]+)", re.IGNORECASE),
    re.compile(r"(\$[0-9,]+)"),
)
RENTCAFE_AVAILABLE_PATTERN = re.compile(
    r"(Available\s+(?:Now|[A-Za-z]{3,9}\s+[0-9]{1,2}(?:st|nd|rd|th)?))",
    re.IGNORECASE,
)
RENTCAFE_AVAILABLE_WORD = re.compile(r"\bAvailable\b", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


class ExtractionAdapter(Protocol):
    """Protocol every source adapter implements."""

    def fetch(self, target: PropertyTarget, timeout: float) -> Sequence[RawUnitRecord]:
        ...


def _first_match(text: str, patterns: Sequence[re.Pattern]) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def _new_session(user_agent: str, accept: str) -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": user_agent, "Accept": accept})
    return session


@dataclass
class SightMapAdapter:
    """Reads unit inventory from the SightMap landing-page JSON API."""

    asset: str
    landing_page_id: str
    session: requests.Session = field(
        default_factory=lambda: _new_session(USER_AGENT, "application/json")
    )

    @property
    def url(self) -> str:
        return SIGHTMAP_API.format(asset=self.asset, landing_page_id=self.landing_page_id)

    def fetch(self, target: PropertyTarget, timeout: float) -> List[RawUnitRecord]:
        logger.debug("Fetching SightMap payload %s for %s", self.url, target.property_id)
        try:
            response = self.session.get(self.url, timeout=timeout)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ExtractionError(f"SightMap request failed: {exc}") from exc

        data = payload.get("data") if isinstance(payload, dict) else None
        units = data.get("units") if isinstance(data, dict) else None
        if not isinstance(units, list):
            raise ExtractionError(f"Unexpected SightMap payload shape from {self.url}")

        return [_sightmap_record(item, self.url) for item in units if isinstance(item, dict)]


def _sightmap_record(item: Dict[str, Any], url: str) -> RawUnitRecord:
    unit_id = item.get("id")
    floor_plan_id = item.get("floor_plan_id")
    price = item.get("price")
    return RawUnitRecord(
        unit_number=item.get("unit_number"),
        unit_id=str(unit_id) if unit_id is not None else None,
        price=price if isinstance(price, (int, float)) else None,
        available_on=item.get("available_on"),
        floor_plan_id=str(floor_plan_id) if floor_plan_id else None,
        meta={
            "source": "sightmap",
            "page_url": url,
            "building": item.get("building"),
            "area": item.get("area"),
        },
    )


@dataclass
class RentCafeAdapter:
    """Parses RentCafe availability pages for individual apartment blocks."""

    urls: Sequence[str]
    session: requests.Session = field(
        default_factory=lambda: _new_session(
            BROWSER_USER_AGENT,
            "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        )
    )
    per_url_delay: float = 0.5
    debug_dir: Optional[Path] = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def fetch(self, target: PropertyTarget, timeout: float) -> List[RawUnitRecord]:
        records: List[RawUnitRecord] = []
        for index, url in enumerate(self.urls):
            if index:
                self.sleep(self.per_url_delay)
            html_text = self._get(url, target, timeout)
            page_records = parse_rentcafe_units(html_text, url)
            logger.debug("%s: %d unit blocks on %s", target.property_id, len(page_records), url)
            records.extend(page_records)
        return records

    def _get(self, url: str, target: PropertyTarget, timeout: float) -> str:
        try:
            response = self.session.get(url, timeout=timeout)
            response.raise_for_status()
        except requests.HTTPError as exc:
            self._save_debug(target, url, exc.response.text if exc.response is not None else "")
            raise ExtractionError(f"RentCafe page {url} failed: {exc}") from exc
        except requests.RequestException as exc:
            raise ExtractionError(f"RentCafe page {url} failed: {exc}") from exc
        return response.text

    def _save_debug(self, target: PropertyTarget, url: str, body: str) -> None:
        if not self.debug_dir:
            return
        slug = re.sub(r"[^A-Za-z0-9_-]+", "_", url)[-80:]
        path = Path(self.debug_dir) / f"{target.property_id}__{slug}.html"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(body, encoding="utf-8")
            logger.info("Saved debug HTML to %s", path)
        except OSError:
            logger.exception("Failed to save debug HTML for %s", url)


def _rentcafe_blocks(html_text: str) -> List[str]:
    soup = BeautifulSoup(html_text, "html.parser")
    root = soup.select_one("#availApts") or soup.body or soup
    blocks: List[str] = []
    seen = set()
    for element in root.select(RENTCAFE_BLOCK_SELECTOR):
        text = _WHITESPACE.sub(" ", element.get_text(" ")).strip()
        if len(text) < RENTCAFE_MIN_BLOCK_LENGTH:
            continue
        fingerprint = text[:220]
        if fingerprint in seen:
            continue
        seen.add(fingerprint)
        blocks.append(text)
        if len(blocks) >= RENTCAFE_MAX_BLOCKS:
            break
    return blocks


def parse_rentcafe_units(html_text: str, page_url: str) -> List[RawUnitRecord]:
    """Extract apartment records from a RentCafe availability page."""
    records: List[RawUnitRecord] = []
    seen = set()
    for block in _rentcafe_blocks(html_text):
        lowered = block.lower()
        if any(phrase in lowered for phrase in RENTCAFE_SKIP_PHRASES):
            continue

        unit_number = _first_match(block, RENTCAFE_UNIT_PATTERNS)
        if not unit_number:
            continue

        price_text = _first_match(block, RENTCAFE_PRICE_PATTERNS)
        available_text = _first_match(block, (RENTCAFE_AVAILABLE_PATTERN,))
        if not available_text and RENTCAFE_AVAILABLE_WORD.search(block):
            available_text = "Available"

        fingerprint = (unit_number, price_text, available_text)
        if fingerprint in seen:
            continue
        seen.add(fingerprint)

        records.append(
            RawUnitRecord(
                unit_number=unit_number,
                price=price_text,
                available_on=available_text,
                meta={
                    "source": "rentcafe",
                    "page_url": page_url,
                    "price_text": price_text,
                    "raw": block,
                },
            )
        )
    return records


@dataclass
class JsonFileAdapter:
    """Loads pre-extracted unit records from a JSON file."""

    path: Path

    def fetch(self, target: PropertyTarget, timeout: float) -> List[RawUnitRecord]:
        try:
            payload = json.loads(Path(self.path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ExtractionError(f"Could not read units from {self.path}: {exc}") from exc

        if isinstance(payload, dict):
            payload = payload.get("units")
        if not isinstance(payload, list):
            raise ExtractionError(f"{self.path} does not contain a list of units")
        return [RawUnitRecord.from_mapping(item) for item in payload if isinstance(item, dict)]


def _require(target: PropertyTarget, key: str) -> Any:
    value = target.options.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigurationError(
            f"{target.label}: platform {target.platform!r} requires option {key!r}"
        )
    return value


def _url_list(target: PropertyTarget, value: Any) -> List[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise ConfigurationError(
            f"{target.label}: option 'urls' must be a list or comma-separated string"
        )
    urls: List[str] = []
    for item in value:
        url = str(item).strip()
        if url and url not in urls:
            urls.append(url)
    return urls


def _float_option(target: PropertyTarget, key: str, default: float) -> float:
    value = target.options.get(key, default)
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"{target.label}: option {key!r} must be a number, got {value!r}"
        ) from exc
    if number < 0:
        raise ConfigurationError(f"{target.label}: option {key!r} must not be negative")
    return number


def build_adapter(
    target: PropertyTarget,
    debug_dir: Optional[Path] = None,
) -> ExtractionAdapter:
    """Select and configure the adapter for a property's platform."""
    platform = target.platform.strip().lower()
    if platform == "sightmap":
        return SightMapAdapter(
            asset=str(_require(target, "asset")),
            landing_page_id=str(_require(target, "landing_page_id")),
        )
    if platform == "rentcafe":
        urls = _url_list(target, _require(target, "urls"))
        if not urls:
            raise ConfigurationError(f"{target.label}: no RentCafe URLs configured")
        return RentCafeAdapter(
            urls=urls,
            per_url_delay=_float_option(target, "per_url_delay", 0.5),
            debug_dir=debug_dir,
        )
    if platform == "json":
        return JsonFileAdapter(path=Path(str(_require(target, "path"))))
    raise ConfigurationError(f"{target.label}: unsupported platform {target.platform!r}")
