"""Keyed state store behind the rate limiter and deduplication cache."""

from typing import Any, Callable, Iterator, Protocol


class IKeyedStore(Protocol):
    """Process-wide key/value state.

    The in-memory implementation is enough for a single process. A multi-process
    deployment needs an implementation over a shared store with atomic updates.
    """

    def get(self, key: str) -> Any | None:
        """Return the value for key, or None."""
        ...

    def set(self, key: str, value: Any) -> None:
        """Store value under key."""
        ...

    def delete(self, key: str) -> None:
        """Remove key if present."""
        ...

    def keys(self) -> Iterator[str]:
        """Iterate over a snapshot of the current keys."""
        ...

    def sweep(self, is_expired: Callable[[str, Any], bool]) -> int:
        """Delete every entry for which is_expired(key, value) holds. Return the count."""
        ...

    def __len__(self) -> int:
        ...


class InMemoryKeyedStore:
    """Dict-backed store for single-process deployments."""

    def __init__(self):
        self._data: dict[str, Any] = {}

    def get(self, key: str) -> Any | None:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> Iterator[str]:
        return iter(list(self._data.keys()))

    def sweep(self, is_expired: Callable[[str, Any], bool]) -> int:
        expired = [k for k, v in self._data.items() if is_expired(k, v)]
        for key in expired:
            del self._data[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)
