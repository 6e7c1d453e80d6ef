"""Map PowerShell output to SiteRecord instances.

The discovery templates emit JSON, either one object or an array of objects
(ConvertTo-Json unwraps single-element pipelines). Every value arrives as a
string, so booleans and integers are coerced here.

In a bulk batch, a record that cannot be mapped is logged and skipped and
the rest of the batch is still returned. A strict parse raises instead, so a
caller looking at one site never mistakes an unreadable record for no site.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from .models import SiteRecord

logger = logging.getLogger(__name__)

SUPPORTED_KINDS: frozenset[str] = frozenset({"iis_site"})

TRUE_PATTERN = re.compile(r"^(true|t|yes|y|1)$", re.IGNORECASE)
FALSE_PATTERN = re.compile(r"^(false|f|no|n|0)$", re.IGNORECASE)

# Format-List style output: "name : value"
LINE_PATTERN = re.compile(r"^(?P<key>[A-Za-z][\w.]*)\s*:\s?(?P<value>.*)$")


class StateParseError(Exception):
    """Raised when PowerShell output cannot be mapped to records."""

    pass


class BooleanParseError(StateParseError):
    """Raised when a boolean field holds something other than a boolean word."""

    def __init__(self, value: Any, field_name: str | None = None) -> None:
        self.value = value
        self.field_name = field_name
        where = f" in field '{field_name}'" if field_name else ""
        super().__init__(f'invalid value for Boolean{where}: "{value}"')


def to_bool(value: Any, field_name: str | None = None) -> bool:
    """Coerce a boolean-like value.

    Args:
        value: A bool, or a string such as "True", "yes", "0".
        field_name: Field being parsed, for the error message.

    Returns:
        The boolean value.

    Raises:
        BooleanParseError: If the value is not recognised.
    """
    if value is True or value is False:
        return value
    text = str(value).strip()
    if TRUE_PATTERN.match(text):
        return True
    if FALSE_PATTERN.match(text):
        return False
    raise BooleanParseError(value, field_name)


def _text(value: Any) -> str | None:
    """Normalise a text field; empty means not reported."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_bool(data: dict[str, Any], key: str) -> bool | None:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return to_bool(value, key)


def _optional_int(data: dict[str, Any], key: str) -> int | None:
    value = _text(data.get(key))
    if value is None:
        return None
    try:
        return int(value)
    except ValueError as e:
        raise StateParseError(f"invalid integer in field '{key}': \"{value}\"") from e


def _csv(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    text = _text(value)
    if text is None:
        return []
    return [part.strip() for part in text.split(",") if part.strip()]


def parse_record(data: Any) -> SiteRecord:
    """Map one decoded site object to a SiteRecord.

    Raises:
        BooleanParseError: If a boolean field is malformed.
        StateParseError: If the object is unusable.
    """
    if not isinstance(data, dict):
        raise StateParseError(f"expected a site object, got {type(data).__name__}")

    # Property names from PowerShell are case-insensitive
    data = {str(key).lower(): value for key, value in data.items()}

    name = _text(data.get("name"))
    if name is None:
        raise StateParseError("site object has no name")

    state = _text(data.get("state"))

    return SiteRecord(
        name=name,
        ensure=state.lower() if state else "unknown",
        physicalpath=_text(data.get("physicalpath")),
        applicationpool=_text(data.get("applicationpool")),
        enabledprotocols=[p.lower() for p in _csv(data.get("enabledprotocols"))],
        serverautostart=_optional_bool(data, "serverautostart"),
        logpath=_text(data.get("logpath")),
        logperiod=_text(data.get("logperiod")),
        logtruncatesize=_optional_int(data, "logtruncatesize"),
        loglocaltimerollover=_optional_bool(data, "loglocaltimerollover"),
        logformat=_text(data.get("logformat")),
        logflags=_csv(data.get("logextfileflags", data.get("logflags"))),
    )


def _map_batch(items: list[Any], strict: bool = False) -> list[SiteRecord]:
    records: list[SiteRecord] = []
    for index, item in enumerate(items):
        try:
            records.append(parse_record(item))
        except StateParseError as e:
            if strict:
                raise
            name = item.get("name") if isinstance(item, dict) else None
            logger.warning(
                "Skipping unreadable site record",
                extra={"index": index, "site": name, "error": str(e)},
            )
    return records


def parse(raw: str | None, kind: str = "iis_site", strict: bool = False) -> list[SiteRecord]:
    """Parse discovery JSON into records.

    Args:
        raw: JSON text, one object or an array of objects. None or blank
            means no sites.
        kind: Resource kind the output describes.
        strict: Raise on the first record that fails to map instead of
            skipping it.

    Returns:
        Records in output order, without the ones that failed to map.

    Raises:
        StateParseError: If the text is not valid JSON or not objects, or a
            record fails to map in strict mode.
        ValueError: If the kind is not supported.
    """
    if kind not in SUPPORTED_KINDS:
        raise ValueError(f"Unsupported resource kind '{kind}'. Supported: {sorted(SUPPORTED_KINDS)}")

    if raw is None or not raw.strip():
        return []

    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as e:
        raise StateParseError(f"invalid JSON from discovery: {e}") from e

    if isinstance(decoded, dict):
        decoded = [decoded]
    if not isinstance(decoded, list):
        raise StateParseError(f"expected an object or array, got {type(decoded).__name__}")

    return _map_batch(decoded, strict)


def parse_lines(raw: str | None, kind: str = "iis_site") -> list[SiteRecord]:
    """Parse Format-List style output into records.

    Records are separated by blank lines; each line is "key : value".
    Lines that do not look like a property are ignored.
    """
    if kind not in SUPPORTED_KINDS:
        raise ValueError(f"Unsupported resource kind '{kind}'. Supported: {sorted(SUPPORTED_KINDS)}")

    if raw is None:
        return []

    items: list[dict[str, str]] = []
    current: dict[str, str] = {}
    for line in raw.splitlines():
        if not line.strip():
            if current:
                items.append(current)
                current = {}
            continue
        match = LINE_PATTERN.match(line.strip())
        if match:
            current[match.group("key").lower()] = match.group("value").strip()
    if current:
        items.append(current)

    return _map_batch(items)
