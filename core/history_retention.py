import time
import logging
from typing import Dict, Optional

from core.cache_database import CacheDatabase

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_HOURS = 24


class HistoryRetentionManager:
    """Bounds the age of the history and change logs. Folder records are never touched."""

    def __init__(self, cache_db: CacheDatabase, default_retention_hours: float = DEFAULT_RETENTION_HOURS,
                 clock=time.time):
        self.cache_db = cache_db
        self.default_retention_hours = default_retention_hours
        self._clock = clock

    def cleanup_history(self, retention_hours: Optional[float] = None) -> Dict[str, int]:
        """Removes entries strictly older than now - retention_hours."""
        hours = self.default_retention_hours if retention_hours is None else retention_hours
        cutoff = self._clock() - hours * 3600
        history_removed = self.cache_db.delete_history_older_than(cutoff)
        changes_removed = self.cache_db.delete_changes_older_than(cutoff)
        if history_removed or changes_removed:
            logger.info(
                f"HistoryRetentionManager: removed {history_removed} history entries and "
                f"{changes_removed} change records older than {hours}h"
            )
        return {"history_removed": history_removed, "changes_removed": changes_removed}

    def clear_all_history(self) -> None:
        self.cache_db.clear_history()
        logger.info("HistoryRetentionManager: cleared all history and change records")
