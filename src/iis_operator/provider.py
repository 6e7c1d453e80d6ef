"""IIS website provider using the PowerShell WebAdministration module.

The provider drives one declared site towards its desired state:

    desired    current            actions
    present    absent             create
    absent     started/stopped    destroy
    started    absent             create, start
    started    stopped            start
    stopped    absent             create, stop
    stopped    started            stop
    (any)      matching           none

An existing site whose observed properties differ from the declared ones
also gets a flush, which sets only the differing properties.

Success is observational: every mutating call re-checks whether the site
exists and returns that, and a reconcile succeeds when the state observed
afterwards matches the declared one. A failing command is logged as a
warning and recorded on the provider, never raised, and never retried here.

Never look a site up with Get-Website without -Name. Listing every site
takes longer as the server grows; only bulk discovery enumerates, once per
pass.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .discovery import discover_all, lookup, match_records
from .models import SITE_PROPERTIES, EnsureState, SiteRecord, SiteResource
from .renderer import CREATE_OPERATIONS, CommandRenderer
from .session import ExecutionResult, PowerShellSession, log_result

logger = logging.getLogger(__name__)

ABSENT = "absent"
STARTED = "started"
STOPPED = "stopped"

# Which property template sets which fields
OPERATION_FIELDS: dict[str, tuple[str, ...]] = {
    "generalproperties": ("physicalpath", "applicationpool", "enabledprotocols"),
    "logproperties": (
        "logpath",
        "logperiod",
        "logtruncatesize",
        "loglocaltimerollover",
        "logformat",
        "logflags",
    ),
    "serverautostart": ("serverautostart",),
}


class Action(str, Enum):
    """A corrective step the provider can take."""

    CREATE = "create"
    DESTROY = "destroy"
    START = "start"
    STOP = "stop"
    FLUSH = "flush"


class OperationFailure(Exception):
    """A mutating command reported an error.

    Recorded as a diagnostic on the provider rather than raised: the
    authoritative result of an operation is the state observed afterwards.
    """

    def __init__(self, operation: str, site: str, result: ExecutionResult) -> None:
        self.operation = operation
        self.site = site
        self.exitcode = result.exitcode
        self.errormessage = result.errormessage
        self.stderr = list(result.stderr)
        detail = result.errormessage or "; ".join(result.stderr) or "no error message"
        super().__init__(
            f"Error {operation} website '{site}' (exit code {result.exitcode}): {detail}"
        )


@dataclass
class ProviderOutcome:
    """Result of reconciling one site.

    Attributes:
        name: Site name
        desired: Declared ensure state
        state_before: Observed state before any action
        actions: Actions planned (and taken unless dry_run)
        success: Whether the observed state satisfies the declared one
        state_after: Observed state after the actions
        dry_run: Whether actions were only planned
        drift: Declared values of properties that differed
        failures: Commands that reported errors
        error: Exception that stopped this site, if any
    """

    name: str
    desired: EnsureState
    state_before: str = ABSENT
    actions: list[Action] = field(default_factory=list)
    success: bool = True
    state_after: str | None = None
    dry_run: bool = False
    drift: dict[str, Any] = field(default_factory=dict)
    failures: list[OperationFailure] = field(default_factory=list)
    error: Exception | None = None

    @property
    def changed(self) -> bool:
        """True when actions were actually taken."""
        return bool(self.actions) and not self.dry_run


def _normalize(value: Any) -> Any:
    """Comparable form of a property value; IIS strings are case-insensitive."""
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, str):
        return value.rstrip("\\").casefold()
    if isinstance(value, (list, tuple)):
        return frozenset(str(item).casefold() for item in value)
    return value


class WebsiteProvider:
    """Reconciles one declared site against IIS."""

    def __init__(
        self,
        resource: SiteResource,
        session: PowerShellSession,
        renderer: CommandRenderer,
        record: SiteRecord | None = None,
    ) -> None:
        """Bind a declared site to its session and, optionally, its record.

        Args:
            resource: The declared site.
            session: Session that runs commands.
            renderer: Renderer that builds commands.
            record: Record from bulk discovery, None if the site was not found.
        """
        self._resource = resource
        self._session = session
        self._renderer = renderer
        self._record = record
        self.property_flush: dict[str, Any] = {}
        self.failures: list[OperationFailure] = []

    @staticmethod
    def is_suitable(platform: str | None = None) -> bool:
        """Whether this provider can manage the local machine."""
        return (platform or sys.platform) == "win32"

    @classmethod
    def prefetch(
        cls,
        resources: Iterable[SiteResource],
        session: PowerShellSession,
        renderer: CommandRenderer,
    ) -> dict[str, WebsiteProvider]:
        """Discover all sites once and build a provider per declared site.

        Returns:
            Providers keyed by site name, in declaration order.
        """
        resources = list(resources)
        records = discover_all(session, renderer)
        matched = match_records(resources, records)
        return {
            resource.name: cls(resource, session, renderer, matched.get(resource.name))
            for resource in resources
        }

    @property
    def name(self) -> str:
        """Declared site name."""
        return self._resource.name

    @property
    def resource(self) -> SiteResource:
        """The declared site."""
        return self._resource

    @property
    def record(self) -> SiteRecord | None:
        """Last known record, None when absent or not yet looked up."""
        return self._record

    # =========================================================================
    # Operations
    # =========================================================================

    def exists(self) -> bool:
        """Look the site up by exact name."""
        command = self._renderer.render("_existswebsite", {"name": self.name})
        result = self._session.execute(command)
        log_result(result)
        return result.stdout is not None

    def create(self) -> bool:
        """Create the site and set every declared property in one command.

        Returns:
            Whether the site exists afterwards.
        """
        command = self._renderer.render_many(CREATE_OPERATIONS, self._resource.to_property_bag())
        self._run("creating", command)
        return self.exists()

    def destroy(self) -> bool:
        """Remove the site.

        Returns:
            Whether the site still exists afterwards (False on success).
        """
        command = self._renderer.render("_removewebsite", {"name": self.name})
        self._run("destroying", command)
        return self.exists()

    def start(self) -> bool:
        """Start the site, creating it first if needed.

        Returns:
            Whether the site exists afterwards.
        """
        if not self.exists():
            self.create()
        command = self._renderer.render("_startwebsite", {"name": self.name})
        self._run("starting", command)
        return self.exists()

    def stop(self) -> bool:
        """Stop the site, creating it first if needed.

        Returns:
            Whether the site exists afterwards.
        """
        if not self.exists():
            self.create()
        command = self._renderer.render("_stopwebsite", {"name": self.name})
        self._run("stopping", command)
        return self.exists()

    def current_properties(self) -> SiteRecord | None:
        """Observed properties of the site.

        Uses the prefetched record when there is one, otherwise looks the
        site up by name.
        """
        if self._record is None:
            self._record = lookup(self._session, self._renderer, self.name)
        return self._record

    def current_state(self) -> str:
        """Observed state: absent, started, stopped or a transitional state."""
        record = self.current_properties()
        if record is None:
            return ABSENT
        return record.ensure

    def set_property(self, name: str, value: Any) -> None:
        """Queue a property change for the next flush."""
        if name not in SITE_PROPERTIES:
            raise ValueError(f"Unknown site property '{name}'")
        self.property_flush[name] = value

    def flush(self) -> bool:
        """Apply queued property changes in one command.

        Returns:
            Whether the site exists afterwards.
        """
        if not self.property_flush:
            return self.exists()

        bag = {"name": self.name, **self.property_flush}
        operations = [
            operation
            for operation, fields in OPERATION_FIELDS.items()
            if any(f in self.property_flush for f in fields)
        ]
        command = self._renderer.render_many(operations, bag)
        self._run("updating", command)
        self.property_flush = {}
        return self.exists()

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def property_drift(self, record: SiteRecord | None = None) -> dict[str, Any]:
        """Declared properties whose observed value differs.

        Returns:
            Mapping of property name to declared value.
        """
        record = record or self.current_properties()
        if record is None:
            return {}
        drift: dict[str, Any] = {}
        for key, desired in self._resource.declared_properties().items():
            if _normalize(desired) != _normalize(getattr(record, key)):
                drift[key] = desired
        return drift

    def plan(self) -> list[Action]:
        """Actions needed to reach the declared state, without side effects."""
        state = self.current_state()
        exists = state != ABSENT
        actions: list[Action] = []

        match self._resource.ensure:
            case EnsureState.PRESENT:
                if not exists:
                    actions.append(Action.CREATE)
            case EnsureState.ABSENT:
                if exists:
                    actions.append(Action.DESTROY)
            case EnsureState.STARTED:
                if not exists:
                    actions.append(Action.CREATE)
                if state != STARTED:
                    actions.append(Action.START)
            case EnsureState.STOPPED:
                if not exists:
                    actions.append(Action.CREATE)
                if state != STOPPED:
                    actions.append(Action.STOP)

        # A fresh create already applies every declared property
        if exists and self._resource.ensure != EnsureState.ABSENT and self.property_drift():
            actions.insert(0, Action.FLUSH)

        return actions

    def reconcile(self, dry_run: bool = False) -> ProviderOutcome:
        """Bring the site to its declared state.

        Args:
            dry_run: Only plan; do not change anything.

        Returns:
            ProviderOutcome describing what was found and done.
        """
        outcome = ProviderOutcome(
            name=self.name,
            desired=self._resource.ensure,
            state_before=self.current_state(),
            dry_run=dry_run,
        )
        outcome.actions = self.plan()
        if Action.FLUSH in outcome.actions:
            outcome.drift = self.property_drift()

        if not outcome.actions:
            logger.debug("Site in sync", extra={"site": self.name, "state": outcome.state_before})
            outcome.state_after = outcome.state_before
            return outcome

        if dry_run:
            logger.info(
                "DRY RUN: drift reported but not remediated",
                extra={
                    "site": self.name,
                    "state": outcome.state_before,
                    "desired": self._resource.ensure.value,
                    "actions": [a.value for a in outcome.actions],
                    "drift": sorted(outcome.drift),
                },
            )
            outcome.state_after = outcome.state_before
            return outcome

        logger.info(
            "Reconciling site",
            extra={
                "site": self.name,
                "state": outcome.state_before,
                "desired": self._resource.ensure.value,
                "actions": [a.value for a in outcome.actions],
            },
        )

        present = outcome.state_before != ABSENT
        for action in outcome.actions:
            match action:
                case Action.FLUSH:
                    for key, value in outcome.drift.items():
                        self.set_property(key, value)
                    present = self.flush()
                case Action.CREATE:
                    present = self.create()
                case Action.DESTROY:
                    present = self.destroy()
                case Action.START:
                    present = self.start()
                case Action.STOP:
                    present = self.stop()

        outcome.failures = list(self.failures)
        outcome.state_after = self.current_state() if present else ABSENT
        outcome.success = self.satisfied(outcome.state_after)
        if outcome.success and Action.FLUSH in outcome.actions:
            outcome.success = not self.property_drift()
        return outcome

    def satisfied(self, state: str) -> bool:
        """Whether an observed state meets the declared ensure value."""
        match self._resource.ensure:
            case EnsureState.ABSENT:
                return state == ABSENT
            case EnsureState.PRESENT:
                return state != ABSENT
            case EnsureState.STARTED:
                return state == STARTED
            case EnsureState.STOPPED:
                return state == STOPPED
        return False

    def _run(self, verb: str, command: str) -> ExecutionResult:
        """Run a mutating command and record any failure it reports."""
        result = self._session.execute(command)
        log_result(result)
        # Whatever the command did, the cached record is now stale
        self._record = None

        if result.exitcode != 0 or result.errormessage is not None:
            failure = OperationFailure(verb, self.name, result)
            self.failures.append(failure)
            logger.warning(
                str(failure),
                extra={
                    "site": self.name,
                    "operation": verb,
                    "exit_code": result.exitcode,
                    "error": result.errormessage,
                },
            )
        return result
