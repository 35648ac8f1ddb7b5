"""
Path templates -- where in the KV engine a credential lands.

Templates use double-brace field references::

    bmc/{{.Region}}/{{.Hostname}}/{{.Username}}

A template is compiled once and rendered per (engine, device) pair.
Compilation rejects malformed actions; rendering only fails when an
action names a field that does not exist.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from ..errors import TemplateExecutionError, TemplateSyntaxError

OPEN_DELIM = "{{"
CLOSE_DELIM = "}}"

_FIELD_RE = re.compile(r"^\.([A-Za-z_][A-Za-z0-9_]*)$")


@dataclass(frozen=True)
class PathVariables:
    """Values available to a path template."""

    region: str = ""
    hostname: str = ""
    username: str = ""

    def lookup(self, field: str) -> Optional[str]:
        return {
            "Region": self.region,
            "Hostname": self.hostname,
            "Username": self.username,
        }.get(field)


class PathTemplateBuilder:
    """A compiled, immutable path template.

    Args:
        template: Template string with ``{{.Field}}`` references.

    Raises:
        TemplateSyntaxError: If the template cannot be compiled.
    """

    def __init__(self, template: str) -> None:
        self._template = template
        self._segments = _compile(template)

    @property
    def template(self) -> str:
        return self._template

    def render(self, variables: PathVariables) -> str:
        """Substitute variables into the template.

        Empty values are legal and produce empty path segments.

        Args:
            variables: Region, hostname and username for one pair.

        Returns:
            The rendered path.

        Raises:
            TemplateExecutionError: If a referenced field does not exist.
        """
        parts: list[str] = []
        for literal, field in self._segments:
            if field is None:
                parts.append(literal)
                continue
            value = variables.lookup(field)
            if value is None:
                raise TemplateExecutionError(
                    f"failed to execute path template {self._template!r}: "
                    f"can't evaluate field {field}"
                )
            parts.append(value)
        return "".join(parts)

    def __repr__(self) -> str:
        return f"PathTemplateBuilder({self._template!r})"


def _compile(template: str) -> tuple[tuple[str, Optional[str]], ...]:
    """Split a template into (literal, None) and ("", field) segments."""
    segments: list[tuple[str, Optional[str]]] = []
    pos = 0
    while pos < len(template):
        start = template.find(OPEN_DELIM, pos)
        if start < 0:
            segments.append((template[pos:], None))
            break
        if start > pos:
            segments.append((template[pos:start], None))

        end = template.find(CLOSE_DELIM, start + len(OPEN_DELIM))
        if end < 0:
            raise TemplateSyntaxError(
                f"failed to parse path template {template!r}: unclosed action at offset {start}"
            )
        action = template[start + len(OPEN_DELIM):end].strip()
        if not action:
            raise TemplateSyntaxError(
                f"failed to parse path template {template!r}: missing value for command"
            )
        match = _FIELD_RE.match(action)
        if match is None:
            raise TemplateSyntaxError(
                f"failed to parse path template {template!r}: unexpected action {action!r}"
            )
        segments.append(("", match.group(1)))
        pos = end + len(CLOSE_DELIM)
    return tuple(segments)
