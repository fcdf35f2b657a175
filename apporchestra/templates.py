"""
Template renderer - render(template_url, context) -> bytes via Jinja2.

Drivers call the renderer during customize to produce configuration files
for the run directory.

Supported template URLs:
  file:///abs/path/mongod.conf.j2   absolute file URL
  /abs/path/mongod.conf.j2          plain path
  conf/mongod.conf.j2               relative to the renderer's search paths
  inline:port={{ config.port }}     the template text itself

Undefined variables are errors (StrictUndefined) so a typo in a template
fails customize instead of writing an empty value.
"""

import logging
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote, urlparse

from jinja2 import Environment, StrictUndefined, TemplateError

from apporchestra.errors import BadArgument, NotFound

logger = logging.getLogger(__name__)

INLINE_PREFIX = "inline:"


class TemplateRenderer:
    """
    Jinja2-backed template renderer.

    Args:
        search_paths: Directories searched for relative template paths
    """

    def __init__(self, search_paths: Optional[list[Path]] = None):
        self.search_paths = [Path(p) for p in (search_paths or [])]
        self._env = Environment(
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )

    def resolve(self, template_url: str) -> Path:
        """
        Resolve a template URL to a local file.

        Raises:
            NotFound: If the template file does not exist
            BadArgument: If the URL scheme is unsupported
        """
        parsed = urlparse(template_url)
        if parsed.scheme == "file":
            candidates = [Path(unquote(parsed.path))]
        elif parsed.scheme in ("", None) or len(parsed.scheme) == 1:
            path = Path(template_url).expanduser()
            if path.is_absolute():
                candidates = [path]
            else:
                candidates = [base / path for base in self.search_paths] + [path]
        else:
            raise BadArgument(f"Unsupported template URL scheme: {template_url}")

        for candidate in candidates:
            if candidate.is_file():
                return candidate
        raise NotFound(f"Template not found: {template_url}")

    def render(self, template_url: str, context: dict[str, Any]) -> bytes:
        """
        Render a template to bytes (UTF-8).

        Args:
            template_url: Template location (see module docstring)
            context: Variables available to the template

        Returns:
            Rendered content

        Raises:
            NotFound: If the template cannot be located
            BadArgument: If the template is invalid or references an undefined variable
        """
        if template_url.startswith(INLINE_PREFIX):
            source = template_url[len(INLINE_PREFIX):]
        else:
            path = self.resolve(template_url)
            source = path.read_text()
        return self.render_string(source, context, name=template_url)

    def render_string(self, source: str, context: dict[str, Any], name: str = "<string>") -> bytes:
        try:
            template = self._env.from_string(source)
            rendered = template.render(**context)
        except TemplateError as e:
            raise BadArgument(f"Template {name} failed to render: {e}")
        logger.debug(f"Rendered template {name} ({len(rendered)} chars)")
        return rendered.encode("utf-8")
