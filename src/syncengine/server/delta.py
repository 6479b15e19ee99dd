"""Delta computation for incremental sync.

Clients keep a watermark per entity type. A delta lists everything that
changed after it, split so the client knows whether to insert, merge or
drop its local copy:

- created: live rows whose ``created_at`` is after the watermark
- updated: live rows created at or before the watermark but updated after it
- deleted: ids of rows tombstoned after the watermark

The new watermark is captured before the query runs, so a row written while
the delta is being computed shows up again on the next sync instead of being
missed.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from syncengine.core.types import SyncDelta, ensure_utc, utcnow

if TYPE_CHECKING:
    from syncengine.server.entities import EntityRegistry

logger = logging.getLogger(__name__)


class DeltaResolver:
    """Computes created/updated/deleted sets since a watermark."""

    def __init__(self, registry: EntityRegistry) -> None:
        self._registry = registry

    def get_delta(
        self,
        user_id: str,
        entity_type: str,
        last_sync_timestamp: datetime,
    ) -> SyncDelta:
        """Get changes for an entity type since the last sync.

        Does not touch sync state; the caller advances the watermark once the
        client acknowledges the response.

        Args:
            user_id: Requesting user (used for logging only).
            entity_type: Entity type name. Unknown types yield an empty delta.
            last_sync_timestamp: Client watermark.

        Returns:
            SyncDelta with the new watermark.
        """
        new_sync_timestamp = utcnow()
        since = ensure_utc(last_sync_timestamp)
        delta = SyncDelta(entity_type=entity_type, new_sync_timestamp=new_sync_timestamp)

        logger.info(
            "Getting delta for user %s, entity %s, since %s",
            user_id,
            entity_type,
            since.isoformat(),
        )

        store = self._registry.find(entity_type)
        if store is None:
            logger.warning("Unknown entity type: %s", entity_type)
            return delta

        for row in store.changed_since(since):
            meta = row.meta
            if meta.deleted_at is not None:
                if meta.deleted_at > since:
                    delta.deleted.append(meta.id)
            elif meta.created_at > since:
                delta.created.append(row.values)
            else:
                delta.updated.append(row.values)

        logger.debug(
            "Delta for %s/%s: %d created, %d updated, %d deleted",
            user_id,
            entity_type,
            len(delta.created),
            len(delta.updated),
            len(delta.deleted),
        )
        return delta
