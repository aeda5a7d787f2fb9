"""
Durable queue of case mutations made while offline.
"""

import logging
from typing import Dict, List

from caseflow.interfaces import KeyValueStore
from caseflow.models import SyncQueueItem

logger = logging.getLogger(__name__)

SYNC_QUEUE_KEY = 'caseflow_sync_queue'


class SyncQueue:
    """Insertion-ordered list of SyncQueueItem stored under one key."""

    def __init__(self, store: KeyValueStore, key: str = SYNC_QUEUE_KEY):
        self.store = store
        self.key = key

    def items(self) -> List[SyncQueueItem]:
        raw = self.store.get(self.key) or []
        items = []
        for entry in raw:
            try:
                items.append(SyncQueueItem.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping unreadable queued mutation: {e}")
        return items

    def _write(self, items: List[SyncQueueItem]) -> None:
        self.store.set(self.key, [item.to_dict() for item in items])

    def enqueue(self, item: SyncQueueItem) -> SyncQueueItem:
        items = self.items()
        items.append(item)
        self._write(items)
        logger.info(f"Queued {item.action.value} for case {item.case_id} ({len(items)} pending)")
        return item

    def __len__(self) -> int:
        return len(self.store.get(self.key) or [])

    def apply_drain_results(self, processed_ids: List[str], retained: Dict[str, SyncQueueItem]) -> None:
        """
        Write back the outcome of a drain.

        `processed_ids` are the items the drain looked at; those present in
        `retained` are kept with their updated retry count, the rest are
        removed. Items enqueued while the drain was running are untouched.
        """
        processed = set(processed_ids)
        current = self.items()
        result = []
        for item in current:
            if item.id not in processed:
                result.append(item)
            elif item.id in retained:
                result.append(retained[item.id])
        self._write(result)

    def clear(self) -> None:
        self.store.remove(self.key)
