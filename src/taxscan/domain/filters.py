from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Union

from .decoding import TRANSFER_T0, address_topic
from .models import LogEvent

# None = wildcard, str = exact, tuple = any of
TopicSlot = Union[None, str, tuple[str, ...]]


def _is_topic_hash(x: str) -> bool: return isinstance(x, str) and x.startswith("0x") and len(x)==66


def _normalize_slot(slot: TopicSlot | Sequence[str]) -> TopicSlot:
    if slot is None:
        return None
    if isinstance(slot, str):
        values: tuple[str, ...] = (slot.strip().lower(),)
    else:
        values = tuple(str(t).strip().lower() for t in slot)
    if not all(_is_topic_hash(x) for x in values):
        raise ValueError(f"Invalid topic(s): {values}")
    return values[0] if len(values) == 1 else values


@dataclass(slots=True, frozen=True)
class TopicFilter:
    """Per-slot eth_getLogs topic filter; trailing wildcards are dropped."""
    slots: tuple[TopicSlot, ...]

    @classmethod
    def of(cls, *slots: TopicSlot | Sequence[str]) -> "TopicFilter":
        norm = [_normalize_slot(s) for s in slots]
        while norm and norm[-1] is None:
            norm.pop()
        return cls(tuple(norm))

    def to_param(self) -> list[str | list[str] | None]:
        return [list(s) if isinstance(s, tuple) else s for s in self.slots]

    def matches(self, log: LogEvent) -> bool:
        for i, slot in enumerate(self.slots):
            if slot is None:
                continue
            if i >= len(log.topics):
                return False
            allowed = slot if isinstance(slot, tuple) else (slot,)
            if log.topics[i] not in allowed:
                return False
        return True


def transfer_filter(*, sender: str | None = None, recipient: str | None = None) -> TopicFilter:
    return TopicFilter.of(
        TRANSFER_T0,
        address_topic(sender) if sender else None,
        address_topic(recipient) if recipient else None,
    )
