"""Process liveness checks for lock validation."""

from __future__ import annotations

import logging
from typing import Protocol

import psutil

logger = logging.getLogger(__name__)


class ProcessProbe(Protocol):
    def is_running(self, pid: int) -> bool: ...


class PsutilProcessProbe:
    """Best-effort liveness check, ``False`` whenever it cannot tell."""

    def is_running(self, pid: int) -> bool:
        if pid <= 0:
            return False

        try:
            if not psutil.pid_exists(pid):
                return False
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.AccessDenied:
            # Exists, but belongs to another user
            return True
        except psutil.Error as e:
            logger.debug(f"Could not determine whether process {pid} runs: {e}")
            return False
