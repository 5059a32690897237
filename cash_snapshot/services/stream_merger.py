"""Combine feed-reported and locally detected recurring streams."""
from dataclasses import dataclass, field
from typing import Iterable

from cash_snapshot.services.streams import Direction, Provenance, RecurringStream, to_cents


@dataclass
class MergeResult:
    streams: list[RecurringStream]
    # Contribution of each source before dedup (after the direction filter)
    source_counts: dict[str, int] = field(default_factory=dict)

    @property
    def total_streams(self) -> int:
        return len(self.streams)


def stream_keys(stream: RecurringStream) -> list[tuple]:
    """All keys a stream claims: the feed's stream id (if any) and a content key."""
    keys: list[tuple] = []
    if stream.stream_id:
        keys.append(("id", stream.stream_id))
    keys.append(("content", stream.description.strip().lower(), to_cents(stream.avg_amount)))
    return keys


def dedupe_streams(streams: Iterable[RecurringStream]) -> list[RecurringStream]:
    """
    First occurrence wins.

    A stream with a feed id is a duplicate only of an earlier stream with the
    same id; one without is a duplicate of any earlier stream with the same
    content key. Every stream still claims its content key, so a local stream
    matching a feed stream is dropped.
    """
    seen: set[tuple] = set()
    unique: list[RecurringStream] = []
    for stream in streams:
        keys = stream_keys(stream)
        # keys[0] is the identity: the id when present, else the content key
        if keys[0] in seen:
            continue
        seen.update(keys)
        unique.append(stream)
    return unique


def merge_streams(
    external: Iterable[RecurringStream],
    custom: Iterable[RecurringStream],
    direction: Direction | None = None,
) -> MergeResult:
    """
    Merge external and custom streams, largest absolute amount first.

    External streams go first so they win any collision with a local stream
    describing the same payment.
    """
    external = [s for s in external if direction is None or s.direction == direction]
    custom = [s for s in custom if direction is None or s.direction == direction]

    merged = dedupe_streams([*external, *custom])
    # sorted() is stable, so equal amounts keep external-before-custom order
    merged = sorted(merged, key=lambda s: abs(s.avg_amount), reverse=True)

    return MergeResult(
        streams=merged,
        source_counts={
            Provenance.EXTERNAL.value: len(external),
            Provenance.LOCAL.value: len(custom),
        },
    )
