"""Human notifications through an external command.

``notify_bin`` is called as ``<bin> <message> <level> <task>``. A missing
binary or a failing call is logged and otherwise ignored.
"""

import logging
import os
import shutil
from typing import Optional

from stackloop.commands import run_command

logger = logging.getLogger(__name__)

NOTIFY_TIMEOUT = 30


class Notifier:
    """Sends notifications through ``notify_bin`` when it is installed."""

    def __init__(self, notify_bin: Optional[str] = None) -> None:
        self.notify_bin = os.path.expanduser(notify_bin) if notify_bin else None

    @property
    def available(self) -> bool:
        return bool(self.notify_bin) and shutil.which(self.notify_bin) is not None

    def __call__(self, message: str, level: str = "info", task_id: Optional[str] = None) -> bool:
        """Send one notification.

        Args:
            message: Text for the human
            level: "info", "warning", "error" or "blocked"
            task_id: Task the message is about

        Returns:
            True if the notify command ran successfully
        """
        logger.info("notify [%s] %s", level, message)
        if not self.available:
            return False
        result = run_command([self.notify_bin, message, level, task_id or ""], timeout=NOTIFY_TIMEOUT)
        if not result.ok:
            logger.warning("%s failed (exit %s)", self.notify_bin, result.returncode)
        return result.ok
