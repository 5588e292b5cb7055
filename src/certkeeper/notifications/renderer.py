"""Jinja2 renderer for deployment notification emails.

Built-in templates are resolved with a two-tier loader:

1. User-specified ``templates_path`` (overrides)
2. Built-in templates shipped with the package

Subjects and bodies written by users on an email action are rendered
from strings in a sandboxed environment.
"""

from __future__ import annotations

from typing import Any

from jinja2 import BaseLoader, ChoiceLoader, FileSystemLoader, PackageLoader, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from certkeeper.app.errors import CertProblem, ErrorKind

DEFAULT_TEMPLATE = "certificate_update"


class TemplateRenderer:
    """Renders email subjects and bodies from Jinja2 templates."""

    def __init__(self, templates_path: str | None = None) -> None:
        loaders: list[BaseLoader] = []
        if templates_path:
            loaders.append(FileSystemLoader(templates_path))
        loaders.append(PackageLoader("certkeeper.notifications", "templates"))

        self._html = SandboxedEnvironment(
            loader=ChoiceLoader(loaders),
            autoescape=True,
            keep_trailing_newline=False,
        )
        self._text = SandboxedEnvironment(
            loader=ChoiceLoader(loaders),
            autoescape=False,
            keep_trailing_newline=False,
        )

    def render_string(self, source: str, context: dict[str, Any], *, html: bool = False) -> str:
        env = self._html if html else self._text
        try:
            return env.from_string(source).render(**context)
        except TemplateError as exc:
            raise CertProblem(ErrorKind.INVALID_INPUT, f"Email template error: {exc}") from exc

    def render_default(self, context: dict[str, Any], *, html: bool = True) -> str:
        """Render the built-in body for a certificate update."""
        if html:
            return self._html.get_template(f"{DEFAULT_TEMPLATE}_body.html").render(**context)
        return self._text.get_template(f"{DEFAULT_TEMPLATE}_body.txt").render(**context)
