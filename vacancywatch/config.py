"""Loading of managed property targets."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional

from .models import ConfigurationError, PropertyTarget

logger = logging.getLogger(__name__)

_RESERVED_KEYS = {"id", "property_id", "name", "platform", "skip", "skip_scrape", "skip_reason"}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def target_from_mapping(data: Mapping[str, Any]) -> PropertyTarget:
    property_id = str(data.get("id") or data.get("property_id") or "").strip()
    if not property_id:
        raise ConfigurationError(f"Property entry without an id: {dict(data)!r}")

    options = {key: value for key, value in data.items() if key not in _RESERVED_KEYS}
    return PropertyTarget(
        property_id=property_id,
        name=str(data.get("name") or "").strip(),
        platform=str(data.get("platform") or "").strip().lower(),
        options=options,
        skip=_as_bool(data.get("skip", data.get("skip_scrape", False))),
        skip_reason=data.get("skip_reason"),
    )


def load_property_targets(
    path: Path,
    property_ids: Optional[Iterable[str]] = None,
    platform: Optional[str] = None,
) -> List[PropertyTarget]:
    """Read property targets from a JSON file, optionally filtered."""
    path = Path(path)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(f"Cannot read property file {path}: {exc}") from exc
    except ValueError as exc:
        raise ConfigurationError(f"Invalid JSON in property file {path}: {exc}") from exc

    if isinstance(payload, dict):
        payload = payload.get("properties")
    if not isinstance(payload, list):
        raise ConfigurationError(f"{path} must contain a list of properties")

    targets = []
    for entry in payload:
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Property entry must be an object: {entry!r}")
        targets.append(target_from_mapping(entry))

    wanted = {pid.strip() for pid in property_ids or () if pid and pid.strip()}
    if wanted:
        targets = [target for target in targets if target.property_id in wanted]
    if platform:
        platform = platform.strip().lower()
        targets = [target for target in targets if target.platform == platform]

    logger.debug("Loaded %d property target(s) from %s", len(targets), path)
    return targets
