"""In-memory IIS for tests.

MockIISServer keeps a table of sites and interprets the PowerShell commands
the renderer produces. MockSession wraps it behind the same execute() API as
PowerShellSession, with failure injection and a command log.

Usage:
    from iis_mock import MockIISServer, MockSession

    server = MockIISServer()
    server.add_site("Default Web Site", physicalpath=r"C:\\inetpub\\wwwroot")
    session = MockSession(server)

    provider = WebsiteProvider(resource, session, CommandRenderer())
    provider.reconcile()

    assert server.sites["Default Web Site"].state == "Started"
"""

from .server import MockIISServer, MockSite
from .session import MockSession

__all__ = [
    "MockIISServer",
    "MockSession",
    "MockSite",
]
