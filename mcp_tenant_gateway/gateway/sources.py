from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass

Source = tuple[str, Callable[[], str | None]]


@dataclass(frozen=True, slots=True)
class SourcedValue:
    source: str
    value: str


def first_present(sources: Sequence[Source]) -> SourcedValue | None:
    """Return the first non-empty value from an ordered list of suppliers."""
    for name, supplier in sources:
        value = supplier()
        if value:
            return SourcedValue(source=name, value=value)
    return None


def string_field(data: object, key: str) -> Callable[[], str | None]:
    def _supplier() -> str | None:
        getter = getattr(data, "get", None)
        if getter is None:
            return None
        value = getter(key)
        return value if isinstance(value, str) else None

    return _supplier


def constant(value: str | None) -> Callable[[], str | None]:
    return lambda: value
