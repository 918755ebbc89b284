"""Preview (dev) server run alongside a task.

The server is an auxiliary background process: it is started in its own
session so the whole process group can be stopped, probed for readiness
over HTTP, and torn down with a graduated terminate/kill sequence on
shutdown.
"""

import logging
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Callable, Optional

import httpx

logger = logging.getLogger(__name__)

READY_ATTEMPTS = 30
READY_INTERVAL_SECS = 2.0
PROBE_TIMEOUT_SECS = 2.0
STOP_GRACE_SECS = 1.0


class PreviewServer:
    """A background server process bound to the execution repo.

    Args:
        command: Shell command that starts the server
        url: URL probed for readiness
        cwd: Directory the server runs in
        log_path: File receiving the server's output
        sleep: Sleep function (injected by tests)
    """

    def __init__(
        self,
        command: str,
        url: str,
        cwd: Path,
        log_path: Optional[Path] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.command = command
        self.url = url
        self.cwd = Path(cwd)
        self.log_path = log_path
        self.sleep = sleep
        self.process: Optional[subprocess.Popen] = None

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def probe(self) -> bool:
        """Whether the server answers HTTP at all."""
        try:
            httpx.get(self.url, timeout=PROBE_TIMEOUT_SECS)
        except httpx.HTTPError:
            return False
        return True

    def start(self) -> bool:
        """Start the server and wait until it answers.

        Returns:
            True once the server is ready; False if it died or never answered
        """
        if self.running:
            logger.info("Preview server already running (pid %s)", self.process.pid)
            return True

        logger.info("Starting preview server: %s", self.command)
        log = open(self.log_path, "ab") if self.log_path else subprocess.DEVNULL
        try:
            self.process = subprocess.Popen(
                ["bash", "-c", self.command],
                stdout=log,
                stderr=subprocess.STDOUT,
                cwd=self.cwd,
                start_new_session=True,
            )
        finally:
            if self.log_path:
                log.close()

        for _ in range(READY_ATTEMPTS):
            if self.probe():
                logger.info("Preview server ready at %s", self.url)
                return True
            if not self.running:
                logger.warning("Preview server exited with %s", self.process.returncode)
                self.process = None
                return False
            self.sleep(READY_INTERVAL_SECS)

        logger.warning("Preview server did not become ready in time")
        return False

    def _signal_group(self, sig: int) -> None:
        try:
            os.killpg(os.getpgid(self.process.pid), sig)
        except ProcessLookupError:
            pass

    def stop(self) -> None:
        """Terminate, then kill the process group, then force kill."""
        if self.process is None:
            return
        if self.running:
            logger.info("Stopping preview server (pid %s)", self.process.pid)
            self.process.terminate()
            self._signal_group(signal.SIGTERM)
            self.sleep(STOP_GRACE_SECS)
            if self.running:
                self._signal_group(signal.SIGKILL)
                self.process.kill()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                logger.warning("Preview server pid %s did not exit", self.process.pid)
        self.process = None
