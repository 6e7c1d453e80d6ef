"""Bulk discovery of every site on the server.

One command enumerates all sites at the start of a pass. Declared sites are
then matched to the records by name, so per-site lookups are only needed for
sites the pass actually changes.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable

from . import mapper
from .models import SiteRecord, SiteResource
from .renderer import CommandRenderer
from .session import PowerShellSession, log_result

logger = logging.getLogger(__name__)

DISCOVERY_OPERATION = "_getwebsites"


class DiscoveryError(Exception):
    """Raised when the discovery command itself fails."""

    pass


def discover_all(session: PowerShellSession, renderer: CommandRenderer) -> list[SiteRecord]:
    """Enumerate every site with a single command.

    Args:
        session: Session to run the command on.
        renderer: Renderer providing the discovery template.

    Returns:
        Records for all sites, in the order IIS lists them.

    Raises:
        DiscoveryError: If the command reports a failure.
        ChannelError: If the session is unusable.
        StateParseError: If the output is not valid JSON.
    """
    start_time = time.monotonic()
    command = renderer.render(DISCOVERY_OPERATION, {})
    result = session.execute(command)
    log_result(result)

    if not result.success:
        raise DiscoveryError(
            f"Site discovery failed (exit code {result.exitcode}): "
            f"{result.errormessage or '; '.join(result.stderr)}"
        )

    records = mapper.parse(result.stdout, "iis_site")

    logger.info(
        "Site discovery complete",
        extra={
            "sites_found": len(records),
            "query_time_seconds": round(time.monotonic() - start_time, 2),
        },
    )
    return records


def match_records(
    resources: Iterable[SiteResource],
    records: Iterable[SiteRecord],
) -> dict[str, SiteRecord]:
    """Pair declared sites with discovered records by exact name.

    The first record with a given name wins. Later records with the same
    name are reported and ignored.

    Returns:
        Mapping of declared site name to its record; unmatched sites are
        left out.
    """
    by_name: dict[str, SiteRecord] = {}
    for record in records:
        if record.name in by_name:
            logger.warning(
                "Duplicate site name in discovery output, keeping the first record",
                extra={"site": record.name},
            )
            continue
        by_name[record.name] = record

    return {
        resource.name: by_name[resource.name]
        for resource in resources
        if resource.name in by_name
    }


def lookup(session: PowerShellSession, renderer: CommandRenderer, name: str) -> SiteRecord | None:
    """Look one site up by exact name.

    Returns:
        The site's record, None if no site has that name.

    Raises:
        DiscoveryError: If the lookup command reports a failure.
        StateParseError: If the site's record cannot be mapped.
    """
    command = renderer.render("_getwebsite", {"name": name})
    result = session.execute(command)
    log_result(result)

    if not result.success:
        raise DiscoveryError(
            f"Lookup of site '{name}' failed (exit code {result.exitcode}): "
            f"{result.errormessage or '; '.join(result.stderr)}"
        )

    records = mapper.parse(result.stdout, "iis_site", strict=True)
    return records[0] if records else None
