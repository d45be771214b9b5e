# src/sources/base.py
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

from engine.errors import UnknownSource


@dataclass
class RawItem:
    content: str
    external_id: Optional[str] = None
    external_url: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None
    posted_at: Optional[str] = None
    raw_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DiscoveryPage:
    items: List[RawItem] = field(default_factory=list)
    next_cursor: Optional[str] = None


def as_page(result):
    """
    Normalise what a source returned into a DiscoveryPage.

    Accepts a DiscoveryPage, a mapping shaped like the wire format (`items` plus `nextCursor` or
    `next_cursor`), or a plain list of items. Anything else raises TypeError.
    """
    if isinstance(result, DiscoveryPage):
        return result
    if isinstance(result, Mapping):
        items = result.get("items") or []
        if not isinstance(items, (list, tuple)):
            raise TypeError(f"Discovery items must be a list, got {type(items).__name__}")
        cursor = result.get("nextCursor", result.get("next_cursor"))
        return DiscoveryPage(items=list(items), next_cursor=cursor)
    if isinstance(result, (list, tuple)):
        return DiscoveryPage(items=list(result))
    raise TypeError(f"Unsupported discovery result: {type(result).__name__}")


class DiscoverySource(ABC):
    """
    One feedback source (reddit, twitter, a review site...). Implementations raise
    TransientSourceError or TerminalSourceError; anything else is treated as transient.
    """

    name: str = ""

    @abstractmethod
    def discover(self, credentials: Optional[dict], cursor: Optional[str] = None) -> DiscoveryPage:
        pass


class CallableSource(DiscoverySource):
    """Adapts a plain function `fn(credentials, cursor)` to the DiscoverySource interface."""

    def __init__(self, name, fn):
        self.name = name
        self._fn = fn

    def discover(self, credentials, cursor=None):
        return as_page(self._fn(credentials, cursor))


class SourceRegistry:
    """
    Maps source names to DiscoverySource instances. Built once and handed to the scan manager
    and the dispatcher, so separate dispatchers can run with separate registries.
    """

    def __init__(self, sources=None):
        self._sources: Dict[str, DiscoverySource] = {}
        for source in sources or []:
            self.register(source)

    def register(self, source: DiscoverySource):
        if not source.name:
            raise ValueError("Discovery source must have a name")
        self._sources[source.name] = source
        return source

    def resolve(self, name: str) -> DiscoverySource:
        source = self._sources.get(name)
        if source is None:
            raise UnknownSource(name)
        return source

    def names(self) -> List[str]:
        return list(self._sources)

    def __contains__(self, name):
        return name in self._sources

    def __len__(self):
        return len(self._sources)
