"""Pydantic models for declared sites and the records observed on the server.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. A flat property bag for command templates
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

# =============================================================================
# Enumerations
# =============================================================================


class EnsureState(str, Enum):
    """Declared lifecycle state of a site."""

    PRESENT = "present"
    ABSENT = "absent"
    STARTED = "started"
    STOPPED = "stopped"


class LogPeriod(str, Enum):
    """IIS log file rollover period."""

    HOURLY = "Hourly"
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    MAX_SIZE = "MaxSize"


class LogFormat(str, Enum):
    """IIS log file format."""

    W3C = "W3C"
    IIS = "IIS"
    NCSA = "NCSA"


VALID_PROTOCOLS: frozenset[str] = frozenset({
    "http",
    "https",
    "net.tcp",
    "net.pipe",
    "net.msmq",
    "msmq.formatname",
})

VALID_LOG_FLAGS: tuple[str, ...] = (
    "Date",
    "Time",
    "ClientIP",
    "UserName",
    "SiteName",
    "ComputerName",
    "ServerIP",
    "Method",
    "UriStem",
    "UriQuery",
    "HttpStatus",
    "Win32Status",
    "BytesSent",
    "BytesRecv",
    "TimeTaken",
    "ServerPort",
    "UserAgent",
    "Cookie",
    "Referer",
    "ProtocolVersion",
    "Host",
    "HttpSubStatus",
)

MIN_LOG_TRUNCATE_SIZE = 1048576
MAX_LOG_TRUNCATE_SIZE = 4294967295

VALID_SITE_NAME_PATTERN = r"^[A-Za-z0-9 _.'-]+$"
# Drive-rooted (C:\...), UNC (\\server\share) or environment-rooted (%SystemDrive%\...)
VALID_WINDOWS_PATH_PATTERN = r"^([A-Za-z]:\\|\\\\[^\\]+\\|%[A-Za-z_]+%\\)"

# Fields that appear in both the declared site and the observed record
SITE_PROPERTIES: tuple[str, ...] = (
    "physicalpath",
    "applicationpool",
    "enabledprotocols",
    "serverautostart",
    "logpath",
    "logperiod",
    "logtruncatesize",
    "loglocaltimerollover",
    "logformat",
    "logflags",
)


def _split_csv(value: Any) -> Any:
    """Accept "a,b" as well as ["a", "b"] for list fields."""
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def _match_enum(enum_cls: type[Enum], value: Any) -> Any:
    """Case-insensitive lookup of an enum member by value."""
    if isinstance(value, str):
        for member in enum_cls:
            if member.value.lower() == value.lower():
                return member
    return value


# =============================================================================
# Desired state
# =============================================================================


class SiteResource(BaseModel):
    """A declared IIS website.

    Immutable for the duration of a reconciliation pass. Unknown fields are
    rejected so a typo in the manifest is reported instead of ignored.
    """

    model_config = {"extra": "forbid", "frozen": True}

    name: Annotated[str, Field(min_length=1, max_length=255)]
    ensure: EnsureState = EnsureState.PRESENT
    physicalpath: str | None = None
    applicationpool: Annotated[str, Field(min_length=1)] | None = None
    enabledprotocols: list[str] | None = None
    serverautostart: bool | None = None
    logpath: str | None = None
    logperiod: LogPeriod | None = None
    logtruncatesize: Annotated[
        int, Field(ge=MIN_LOG_TRUNCATE_SIZE, le=MAX_LOG_TRUNCATE_SIZE)
    ] | None = None
    loglocaltimerollover: bool | None = None
    logformat: LogFormat | None = None
    logflags: list[str] | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(VALID_SITE_NAME_PATTERN, v):
            raise ValueError(
                "name may only contain letters, digits, spaces and the characters _ . ' -"
            )
        return v

    @field_validator("ensure", mode="before")
    @classmethod
    def normalize_ensure(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.lower()
        return v

    @field_validator("physicalpath", "logpath")
    @classmethod
    def validate_windows_path(cls, v: str | None) -> str | None:
        if v is not None and not re.match(VALID_WINDOWS_PATH_PATTERN, v):
            raise ValueError(f"must be an absolute Windows path: {v}")
        return v

    @field_validator("enabledprotocols", mode="before")
    @classmethod
    def split_protocols(cls, v: Any) -> Any:
        return _split_csv(v)

    @field_validator("enabledprotocols")
    @classmethod
    def validate_protocols(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        protocols = [p.lower() for p in v]
        invalid = [p for p in protocols if p not in VALID_PROTOCOLS]
        if invalid:
            raise ValueError(f"unsupported protocols {invalid}, expected any of {sorted(VALID_PROTOCOLS)}")
        if not protocols:
            raise ValueError("enabledprotocols cannot be empty")
        return protocols

    @field_validator("logperiod", mode="before")
    @classmethod
    def normalize_logperiod(cls, v: Any) -> Any:
        return _match_enum(LogPeriod, v)

    @field_validator("logformat", mode="before")
    @classmethod
    def normalize_logformat(cls, v: Any) -> Any:
        return _match_enum(LogFormat, v)

    @field_validator("logflags", mode="before")
    @classmethod
    def split_logflags(cls, v: Any) -> Any:
        return _split_csv(v)

    @field_validator("logflags")
    @classmethod
    def validate_logflags(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        canonical = {flag.lower(): flag for flag in VALID_LOG_FLAGS}
        flags = []
        for flag in v:
            if flag.lower() not in canonical:
                raise ValueError(f"unknown log flag '{flag}'")
            flags.append(canonical[flag.lower()])
        return flags

    def to_property_bag(self) -> dict[str, Any]:
        """Flatten to template variables.

        Unset fields are left out entirely so a template that needs one
        fails to render instead of emitting an empty value.
        """
        bag: dict[str, Any] = {}
        for key, value in self.model_dump(exclude_none=True).items():
            bag[key] = value.value if isinstance(value, Enum) else value
        return bag

    def declared_properties(self) -> dict[str, Any]:
        """Declared site properties, without name and ensure."""
        bag = self.to_property_bag()
        return {key: bag[key] for key in SITE_PROPERTIES if key in bag}


class SiteManifest(BaseModel):
    """The full set of sites one operator instance manages."""

    model_config = {"extra": "forbid"}

    sites: list[SiteResource] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_names(self) -> SiteManifest:
        # IIS compares site names case-insensitively
        seen: set[str] = set()
        duplicates: list[str] = []
        for site in self.sites:
            key = site.name.lower()
            if key in seen:
                duplicates.append(site.name)
            seen.add(key)
        if duplicates:
            raise ValueError(f"duplicate site names: {duplicates}")
        return self

    def get(self, name: str) -> SiteResource | None:
        """Look up a declared site by name."""
        for site in self.sites:
            if site.name.lower() == name.lower():
                return site
        return None


# =============================================================================
# Observed state
# =============================================================================


@dataclass
class SiteRecord:
    """A website as reported by IIS.

    Attributes:
        name: Site name
        ensure: Lower-cased IIS state (started, stopped, or a transitional state)
        physicalpath: Root virtual directory path
        applicationpool: Application pool of the root application
        enabledprotocols: Protocols enabled on the root application
        serverautostart: Whether the site starts with IIS (None if not reported)
        logpath: Log file directory
        logperiod: Log rollover period
        logtruncatesize: Maximum log file size in bytes
        loglocaltimerollover: Whether rollover uses local time (None if not reported)
        logformat: Log file format
        logflags: W3C fields written to the log
    """

    name: str
    ensure: str
    physicalpath: str | None = None
    applicationpool: str | None = None
    enabledprotocols: list[str] = field(default_factory=list)
    serverautostart: bool | None = None
    logpath: str | None = None
    logperiod: str | None = None
    logtruncatesize: int | None = None
    loglocaltimerollover: bool | None = None
    logformat: str | None = None
    logflags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Plain dictionary, for JSON output and logging."""
        data: dict[str, Any] = {"name": self.name, "ensure": self.ensure}
        for key in SITE_PROPERTIES:
            data[key] = getattr(self, key)
        return data
