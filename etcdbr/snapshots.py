"""Selection of the snapshots a restore starts from."""

from __future__ import annotations

from typing import Any

SNAPSHOT_KIND_FULL = "Full"
SNAPSHOT_KIND_DELTA = "Incr"
SNAPSHOT_KIND_CHUNK = "Chunk"


def get_latest_full_snapshot_and_delta_snap_list(store: Any) -> tuple[Any | None, list[Any]]:
    """Return the latest full snapshot and the sorted delta snapshots taken after it.

    ``store.list()`` must return snapshots in store order; each snapshot has
    ``kind`` and ``is_chunk`` attributes and sorts in chronological order.
    Chunks are skipped. When no full snapshot exists, ``None`` is returned
    together with every delta snapshot found.
    """
    deltas = []
    for snapshot in reversed(store.list()):
        if snapshot.is_chunk:
            continue
        if snapshot.kind == SNAPSHOT_KIND_FULL:
            return snapshot, sorted(deltas)
        deltas.append(snapshot)
    return None, deltas