"""
Core interfaces for the CaseFlow sync client.

Components depend on these abstractions so that storage backends and
connectivity sources can be swapped (in-memory for tests, file-backed on
devices).
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional


class KeyValueStore(ABC):
    """Durable string-keyed store of JSON-serialisable values."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None when the key is absent."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove a key; removing an absent key is not an error."""
        pass

    @abstractmethod
    def keys(self) -> List[str]:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass

    def set_many(self, items: Dict[str, Any]) -> None:
        """Store several keys; file-backed stores write them in one go."""
        for key, value in items.items():
            self.set(key, value)

    def remove_many(self, keys: Iterable[str]) -> None:
        for key in keys:
            self.remove(key)


class ConnectivityProbe(ABC):
    """Answers whether the case service is currently reachable."""

    @abstractmethod
    async def check(self) -> bool:
        pass
