from __future__ import annotations

from collections import defaultdict


_counters: dict[str, int] = defaultdict(int)


def increment_counter(name: str, value: int = 1) -> None:
    # Process-local counters for consent transitions and degraded paths.
    _counters[name] += value


def get_counter(name: str) -> int:
    return _counters.get(name, 0)


def reset_counters() -> None:
    _counters.clear()
