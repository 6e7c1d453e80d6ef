"""PowerShell command rendering.

Every command sent to IIS is produced from a Jinja2 template under
``templates/``. Rendering is kept apart from execution: the renderer only
ever returns text, and the session only ever runs text.

Templates are rendered with StrictUndefined, so a template that references a
property the site does not declare raises TemplateError instead of emitting
an empty argument. Optional properties are guarded with ``is defined``.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from typing import Any

import jinja2
import jinja2.exceptions

logger = logging.getLogger(__name__)

TEMPLATE_DIRNAME = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")
TEMPLATE_SUFFIX = ".ps1.j2"

# Operations composed into one command when a site is created
CREATE_OPERATIONS: tuple[str, ...] = (
    "_newwebsite",
    "generalproperties",
    "logproperties",
    "serverautostart",
)

# Operations that set properties on an existing site
PROPERTY_OPERATIONS: tuple[str, ...] = (
    "generalproperties",
    "logproperties",
    "serverautostart",
)


class TemplateError(Exception):
    """Raised when a command cannot be rendered.

    Either the operation has no template, or the template references a
    property missing from the bag.
    """

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f"Cannot render '{operation}': {message}")


def ps_quote(value: Any) -> str:
    """Escape a value for use inside a single-quoted PowerShell string."""
    return str(value).replace("'", "''")


def ps_bool(value: Any) -> str:
    """Render a Python truth value as a PowerShell boolean literal."""
    return "$true" if value else "$false"


def ps_list(value: Any) -> str:
    """Render a list as the comma separated form IIS stores."""
    if isinstance(value, str):
        return value
    return ",".join(str(item) for item in value)


class CommandRenderer:
    """Renders named operations into PowerShell command text."""

    def __init__(self, template_dir: str = TEMPLATE_DIRNAME) -> None:
        self._env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(template_dir),
            undefined=jinja2.StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        self._env.filters["ps_quote"] = ps_quote
        self._env.filters["ps_bool"] = ps_bool
        self._env.filters["ps_list"] = ps_list

    def operations(self) -> list[str]:
        """Names of all available operations."""
        return sorted(
            name[: -len(TEMPLATE_SUFFIX)]
            for name in self._env.list_templates()
            if name.endswith(TEMPLATE_SUFFIX)
        )

    def render(self, operation: str, bag: Mapping[str, Any]) -> str:
        """Render one operation.

        Args:
            operation: Template name without suffix (e.g. "_newwebsite").
            bag: Property values available to the template.

        Returns:
            PowerShell command text.

        Raises:
            TemplateError: If the template is missing or references an
                absent property.
        """
        try:
            template = self._env.get_template(operation + TEMPLATE_SUFFIX)
        except jinja2.exceptions.TemplateNotFound as e:
            raise TemplateError(operation, "no such template") from e

        try:
            command = template.render(dict(bag))
        except jinja2.exceptions.UndefinedError as e:
            raise TemplateError(operation, e.message or str(e)) from e

        logger.debug("Rendered command", extra={"operation": operation})
        return command

    def render_many(self, operations: Iterable[str], bag: Mapping[str, Any]) -> str:
        """Render several operations into a single command.

        The result runs as one unit on the session, so callers see one
        result for the whole sequence.
        """
        return "".join(self.render(operation, bag) for operation in operations)
