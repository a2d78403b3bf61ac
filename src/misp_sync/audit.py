"""
Sync Audit Log - Best-effort record of outgoing payloads

===============================================================================
PROVENANCE TRACKING
===============================================================================
File: src/misp_sync/audit.py
Created: 2026-10-18
Author: MISP Sync Contributors
Type: Core Implementation

Change History:
-------------------------------------------------------------------------------
Date        Author      Type    Description
-------------------------------------------------------------------------------
2026-10-18  misp-sync   CREATE  Per-peer append-only audit log of pushed
                                payloads. Failures are logged, never raised.
-------------------------------------------------------------------------------

License: MIT
===============================================================================
"""

from datetime import datetime
from pathlib import Path
from typing import Optional, Union
import logging
import threading

logger = logging.getLogger(__name__)

SEPARATOR = "=" * 62


class SyncAuditLog:
    """
    Appends a timestamped block for every audited push to
    ``<directory>/debug_server_<id>.log``.
    """

    def __init__(self, enabled: bool = False, directory: Union[str, Path] = "tmp"):
        self.enabled = enabled
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def path_for(self, server_id: int) -> Path:
        return self.directory / f"debug_server_{server_id}.log"

    def record(self, server_id: int, title: str, payload: Union[bytes, str],
               now: Optional[datetime] = None) -> bool:
        """
        Append an entry for a push operation.

        Args:
            server_id: Remote server id
            title: Operation title, e.g. "Pushing Event #<uuid>"
            payload: Encoded request body
            now: Timestamp override

        Returns:
            True if the entry was written
        """
        if not self.enabled:
            return False

        if isinstance(payload, bytes):
            payload = payload.decode("utf-8", errors="replace")
        date = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
        entry = f"{SEPARATOR}\n\n[{date}] {title} to Server #{server_id}:\n\n{payload}\n\n"

        try:
            with self._lock:
                self.directory.mkdir(parents=True, exist_ok=True)
                with open(self.path_for(server_id), "a", encoding="utf-8") as f:
                    f.write(entry)
            return True
        except OSError as e:
            logger.warning(f"Could not write sync audit log for server #{server_id}: {e}")
            return False
