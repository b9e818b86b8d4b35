from __future__ import annotations

from datetime import datetime
from typing import Optional

from loguru import logger

from app.lab.sandbox.manager import SandboxManager


class SessionSweeper:
    def __init__(self, manager: SandboxManager):
        self._manager = manager

    def execute_sweep_cycle(self, now: Optional[datetime] = None) -> int:
        purged = self._manager.purge_expired_sessions(now)
        logger.info(f"[SessionSweeper] 清理完成: purged={purged}, remaining={len(self._manager)}")
        return purged
