from __future__ import annotations

from typing import Any, Callable, Iterable, Iterator, List, NamedTuple, Optional, TypeVar

from ..db.store import JoinRow

R = TypeVar("R")


class Group(NamedTuple):
    lead: Any
    related: List[Any]


def _lead_id(row: JoinRow) -> Any:
    return row.lead.id


def group_rows(
    rows: Iterable[R],
    key: Callable[[R], Any] = _lead_id,
    lead: Callable[[R], Any] = lambda row: row.lead,
    value: Callable[[R], Any] = lambda row: row.related,
) -> Iterator[Group]:
    """Collapse an ordered row stream into one group per run of equal keys.

    Rows must already be ordered by ``key``; a key that reappears after a
    different one starts a new group. Related values keep the order the rows
    arrived in. The last group is flushed when the stream ends.
    """
    current_key: Any = None
    current_lead: Optional[Any] = None
    accumulated: List[Any] = []
    started = False

    for row in rows:
        row_key = key(row)
        if not started or row_key != current_key:
            if started:
                yield Group(current_lead, accumulated)
            current_key = row_key
            current_lead = lead(row)
            accumulated = []
            started = True
        accumulated.append(value(row))

    if started:
        yield Group(current_lead, accumulated)
