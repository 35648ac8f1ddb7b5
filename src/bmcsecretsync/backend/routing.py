"""
Label-based routing of credentials to secret engines.

Sync-label grammar::

    team        -> record must carry the key "team" (any value)
    team=infra  -> record must carry team with the exact value "infra"

An engine receives a record when the engine's own selector matches and,
if a global sync label is configured, the global selector matches too.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from ..models import EngineBinding
from .base import SecretStore
from .pathbuilder import PathTemplateBuilder


@dataclass(frozen=True)
class LabelSelector:
    """A parsed ``key`` or ``key=value`` predicate.

    An empty value means "key present with any value".
    """

    key: str
    value: str = ""

    @classmethod
    def parse(cls, text: str) -> "LabelSelector":
        key, _, value = text.partition("=")
        return cls(key=key, value=value)

    def matches(self, labels: Optional[dict[str, str]]) -> bool:
        if not labels or self.key not in labels:
            return False
        if not self.value:
            return True
        return labels[self.key] == self.value

    def __str__(self) -> str:
        return f"{self.key}={self.value}" if self.value else self.key


@dataclass(frozen=True)
class EngineRoute:
    """One configured destination: store, compiled template and selector."""

    name: str
    store: SecretStore
    template: PathTemplateBuilder
    selector: LabelSelector
    binding: EngineBinding


class EngineRouter:
    """Resolves a label set to the engines it routes to.

    Args:
        routes: Engine routes in configuration order.
        global_selector: Optional selector every routed record must satisfy.
    """

    def __init__(
        self,
        routes: Sequence[EngineRoute] = (),
        global_selector: Optional[LabelSelector] = None,
    ) -> None:
        self._routes = tuple(routes)
        self.global_selector = global_selector

    @property
    def routes(self) -> tuple[EngineRoute, ...]:
        return self._routes

    @property
    def has_engines(self) -> bool:
        """False when no engines are configured (single-destination mode)."""
        return bool(self._routes)

    def resolve(self, labels: Optional[dict[str, str]]) -> list[EngineRoute]:
        """Return the routes whose predicates the labels satisfy.

        An empty result is a valid outcome: the record routes nowhere.

        Args:
            labels: The record's labels.

        Returns:
            list[EngineRoute]: Matching routes in configuration order.
        """
        if self.global_selector is not None and not self.global_selector.matches(labels):
            return []
        return [route for route in self._routes if route.selector.matches(labels)]

    def stores(self) -> list[SecretStore]:
        return [route.store for route in self._routes]
