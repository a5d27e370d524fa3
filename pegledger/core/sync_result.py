from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RunStatus(str, Enum):
    SYNCED = "synced"
    UP_TO_DATE = "up_to_date"
    STOPPED = "stopped"
    # Not errors: the run deliberately did nothing.
    SKIPPED_BUSY = "skipped_busy"
    NOT_READY_NO_PEGINS = "not_ready_no_pegins"
    NOT_READY_NODE_LAGGING = "not_ready_node_lagging"


@dataclass
class SyncRunResult:
    engine: str
    status: RunStatus
    start_height: Optional[int] = None
    end_height: Optional[int] = None
    target_height: Optional[int] = None
    blocks_processed: int = 0

    @property
    def did_work(self) -> bool:
        return self.blocks_processed > 0
