"""Reconciliation passes over a site manifest.

One pass:
1. Enumerate every site with a single discovery command
2. Match declared sites to the discovered records by name
3. Let each site's provider plan and apply its corrective actions
4. Report per-site outcomes

A failure confined to one site (a template that cannot render, a record
that cannot be read) fails that site only. A channel failure ends the pass;
the session is restarted when the next pass begins.

The loop repeats passes on an interval until shutdown() is called.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .config import Config
from .discovery import DiscoveryError
from .mapper import StateParseError
from .models import SiteManifest
from .provider import ProviderOutcome, WebsiteProvider
from .renderer import CommandRenderer, TemplateError
from .session import ChannelError, PowerShellSession
from .spec_loader import SpecLoadError

logger = logging.getLogger(__name__)


@dataclass
class PassResult:
    """Result of a single reconciliation pass."""

    dry_run: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    outcomes: list[ProviderOutcome] = field(default_factory=list)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def changed(self) -> int:
        """Number of sites that had actions applied."""
        return sum(1 for outcome in self.outcomes if outcome.changed)

    @property
    def failed(self) -> int:
        """Number of sites that did not reach their declared state."""
        return sum(1 for outcome in self.outcomes if not outcome.success)

    @property
    def success(self) -> bool:
        """Check if the pass completed with every site reconciled."""
        return self.error is None and self.failed == 0


class Reconciler:
    """Runs reconciliation passes against one PowerShell session."""

    def __init__(
        self,
        config: Config,
        session: PowerShellSession,
        renderer: CommandRenderer | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            config: Validated operator configuration.
            session: Session owned by the caller.
            renderer: Command renderer; the packaged templates by default.
        """
        self._config = config
        self._session = session
        self._renderer = renderer or CommandRenderer()
        self._shutdown_event = threading.Event()

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    def reconcile_pass(self, manifest: SiteManifest) -> PassResult:
        """Reconcile every declared site once.

        Args:
            manifest: Declared sites.

        Returns:
            PassResult with one outcome per site processed.
        """
        result = PassResult(dry_run=self._config.dry_run)

        if self._session.dead:
            logger.info("Restarting PowerShell session before pass")
            self._session.restart()

        try:
            providers = WebsiteProvider.prefetch(manifest.sites, self._session, self._renderer)
        except (ChannelError, DiscoveryError, StateParseError, TemplateError) as e:
            logger.error(
                "Site discovery failed, skipping pass",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            result.error = e
            result.end_time = datetime.now(UTC)
            return result

        for provider in providers.values():
            try:
                outcome = provider.reconcile(dry_run=self._config.dry_run)
            except ChannelError as e:
                logger.error(
                    "PowerShell session failed, aborting pass",
                    extra={"site": provider.name, "error": str(e)},
                )
                result.error = e
                break
            except (DiscoveryError, TemplateError, StateParseError) as e:
                logger.error(
                    "Cannot reconcile site",
                    extra={"site": provider.name, "error": str(e), "error_type": type(e).__name__},
                )
                outcome = ProviderOutcome(
                    name=provider.name,
                    desired=provider.resource.ensure,
                    success=False,
                    failures=list(provider.failures),
                    error=e,
                )
            result.outcomes.append(outcome)

        result.end_time = datetime.now(UTC)
        return result

    def run(self, load_manifest: Callable[[], SiteManifest]) -> None:
        """Run reconciliation passes until shutdown.

        The manifest is reloaded before every pass so edits take effect
        without a restart.

        Args:
            load_manifest: Returns the current manifest; may raise SpecLoadError.
        """
        logger.info(
            "Starting reconciler",
            extra={
                "interval_seconds": self._config.reconcile_interval_seconds,
                "dry_run": self._config.dry_run,
                "manifest": str(self._config.manifest_path),
            },
        )

        while not self._shutdown_event.is_set():
            try:
                manifest = load_manifest()
            except SpecLoadError as e:
                logger.error("Manifest invalid, skipping pass", extra={"error": str(e)})
            else:
                self.log_result(self.reconcile_pass(manifest))

            # Wait for next cycle or shutdown
            self._shutdown_event.wait(timeout=self._config.reconcile_interval_seconds)

        logger.info("Reconciler shutdown complete")

    def shutdown(self) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    def log_result(self, result: PassResult) -> None:
        """Log the outcome of a pass."""
        for outcome in result.outcomes:
            if not outcome.success:
                logger.warning(
                    "Site not in declared state",
                    extra={
                        "site": outcome.name,
                        "desired": outcome.desired.value,
                        "state": outcome.state_after,
                        "failures": [str(f) for f in outcome.failures],
                        "error": str(outcome.error) if outcome.error else None,
                    },
                )

        extra = {
            "sites": len(result.outcomes),
            "changed": result.changed,
            "failed": result.failed,
            "dry_run": result.dry_run,
            "duration_seconds": round(result.duration_seconds, 2),
        }
        if result.success:
            logger.info("Reconciliation pass complete", extra=extra)
        else:
            logger.error(
                "Reconciliation pass failed",
                extra={**extra, "error": str(result.error) if result.error else None},
            )
