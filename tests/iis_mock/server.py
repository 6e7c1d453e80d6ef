"""Mock IIS site table and command interpreter.

Understands the statements the command templates emit, one per line, and
applies them to an in-memory site table. Property values are stored the way
the discovery script reports them: every value as a string.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field

from iis_operator.session import ExecutionResult

_QUOTED = r"'(?P<{}>(?:[^']|'')*)'"

NEW_WEBSITE = re.compile(
    r"^New-Website -Name " + _QUOTED.format("name")
    + r" -PhysicalPath " + _QUOTED.format("path")
    + r"(?: -ApplicationPool " + _QUOTED.format("pool") + r")?"
)
SET_PROPERTY = re.compile(
    r"^Set-ItemProperty -LiteralPath 'IIS:\\Sites\\(?P<name>(?:[^']|'')*)'"
    r" -Name (?P<prop>[\w.]+) -Value (?P<value>'(?:[^']|'')*'|\S+)"
)
SITE_VERB = re.compile(r"^(?P<verb>Remove|Start|Stop)-Website -Name " + _QUOTED.format("name"))
EXISTS = re.compile(r"^Get-Website -Name " + _QUOTED.format("name"))
DISCOVER_ALL = "Get-ChildItem -Path 'IIS:\\Sites'"
GET_ITEM = re.compile(r"Get-Item -LiteralPath 'IIS:\\Sites\\(?P<name>(?:[^']|'')*)'")

# IIS property path to discovery field
PROPERTY_FIELDS = {
    "physicalPath": "physicalpath",
    "applicationPool": "applicationpool",
    "enabledProtocols": "enabledprotocols",
    "serverAutoStart": "serverautostart",
    "logFile.directory": "logpath",
    "logFile.period": "logperiod",
    "logFile.truncateSize": "logtruncatesize",
    "logFile.localTimeRollover": "loglocaltimerollover",
    "logFile.logFormat": "logformat",
    "logFile.logExtFileFlags": "logextfileflags",
}

DEFAULT_PROPERTIES = {
    "applicationpool": "DefaultAppPool",
    "enabledprotocols": "http",
    "serverautostart": "True",
    "logpath": "%SystemDrive%\\inetpub\\logs\\LogFiles",
    "logperiod": "Daily",
    "logtruncatesize": "20971520",
    "loglocaltimerollover": "False",
    "logformat": "W3C",
    "logextfileflags": "Date,Time,ClientIP,UserName,ServerIP,Method,UriStem,UriQuery,"
    "HttpStatus,Win32Status,TimeTaken,ServerPort,UserAgent,Referer,HttpSubStatus",
}


class MockCommandError(Exception):
    """A statement failed; mirrors a terminating PowerShell error."""

    pass


def _unquote(text: str) -> str:
    return text.replace("''", "'")


def _value(token: str) -> str:
    """Convert a -Value argument to the string IIS would report."""
    if token.startswith("'"):
        return _unquote(token[1:-1])
    if token.lower() == "$true":
        return "True"
    if token.lower() == "$false":
        return "False"
    return token


@dataclass
class MockSite:
    """A site in the mock table."""

    name: str
    state: str = "Started"
    properties: dict[str, str] = field(default_factory=dict)

    def to_json_object(self) -> dict[str, str]:
        """The object the discovery script would emit for this site."""
        return {"name": self.name, "state": self.state, **self.properties}


class MockIISServer:
    """In-memory IIS that executes rendered commands.

    Attributes:
        sites: Site table keyed by name
        commands: Every command received, in order
        extra_records: Raw objects appended to discovery output
        unwrap_single: Emit a lone object instead of a one-element array
    """

    def __init__(self) -> None:
        self.sites: dict[str, MockSite] = {}
        self.commands: list[str] = []
        self.extra_records: list[dict[str, str]] = []
        self.unwrap_single = False
        self._failures: list[tuple[str, str]] = []

    def add_site(self, name: str, state: str = "Started", **properties: str) -> MockSite:
        """Seed a site; properties use the discovery field names."""
        site = MockSite(name=name, state=state, properties={**DEFAULT_PROPERTIES, **properties})
        site.properties.setdefault("physicalpath", f"C:\\inetpub\\{name}")
        self.sites[name] = site
        return site

    def fail_on(self, fragment: str, message: str = "Access is denied") -> None:
        """Make the next statement containing fragment fail."""
        self._failures.append((fragment, message))

    def handle(self, command: str) -> ExecutionResult:
        """Execute one command and return what the session would report."""
        self.commands.append(command)

        if DISCOVER_ALL in command:
            try:
                self._check_injected(DISCOVER_ALL)
            except MockCommandError as e:
                return ExecutionResult(exitcode=1, errormessage=str(e))
            return self._discover()

        match = GET_ITEM.search(command)
        if match:
            try:
                self._check_injected("Get-Item")
            except MockCommandError as e:
                return ExecutionResult(exitcode=1, errormessage=str(e))
            site = self.sites.get(_unquote(match.group("name")))
            if site is None:
                return ExecutionResult()
            return ExecutionResult(stdout=json.dumps(site.to_json_object()))

        output: list[str] = []
        for line in command.splitlines():
            line = line.strip()
            if not line or line.startswith("Import-Module"):
                continue
            try:
                self._check_injected(line)
                result = self._run_line(line)
            except MockCommandError as e:
                return ExecutionResult(
                    stdout="\n".join(output) or None,
                    exitcode=1,
                    errormessage=str(e),
                )
            if result is not None:
                output.append(result)
        return ExecutionResult(stdout="\n".join(output) or None)

    def _check_injected(self, line: str) -> None:
        for index, (fragment, message) in enumerate(self._failures):
            if fragment in line:
                del self._failures[index]
                raise MockCommandError(message)

    def _discover(self) -> ExecutionResult:
        objects = [site.to_json_object() for site in self.sites.values()]
        objects.extend(self.extra_records)
        if not objects:
            return ExecutionResult()
        if self.unwrap_single and len(objects) == 1:
            return ExecutionResult(stdout=json.dumps(objects[0]))
        return ExecutionResult(stdout=json.dumps(objects))

    def _require(self, name: str) -> MockSite:
        site = self.sites.get(name)
        if site is None:
            raise MockCommandError(f"Cannot find path 'IIS:\\Sites\\{name}' because it does not exist.")
        return site

    def _run_line(self, line: str) -> str | None:
        match = NEW_WEBSITE.match(line)
        if match:
            name = _unquote(match.group("name"))
            if name in self.sites:
                raise MockCommandError(f"Cannot create a file when that file already exists. ({name})")
            properties = {**DEFAULT_PROPERTIES, "physicalpath": _unquote(match.group("path"))}
            if match.group("pool") is not None:
                properties["applicationpool"] = _unquote(match.group("pool"))
            self.sites[name] = MockSite(name=name, state="Started", properties=properties)
            return None

        match = SET_PROPERTY.match(line)
        if match:
            site = self._require(_unquote(match.group("name")))
            prop = match.group("prop")
            if prop not in PROPERTY_FIELDS:
                raise MockCommandError(f"Property {prop} is not found on IIS:\\Sites\\{site.name}.")
            site.properties[PROPERTY_FIELDS[prop]] = _value(match.group("value"))
            return None

        match = SITE_VERB.match(line)
        if match:
            site = self._require(_unquote(match.group("name")))
            verb = match.group("verb")
            if verb == "Remove":
                del self.sites[site.name]
            else:
                site.state = "Started" if verb == "Start" else "Stopped"
            return None

        match = EXISTS.match(line)
        if match:
            site = self.sites.get(_unquote(match.group("name")))
            return site.name if site else None

        raise MockCommandError(f"The term '{line.split()[0]}' is not recognized as a cmdlet.")
