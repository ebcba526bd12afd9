"""
Service control for backup capture.

Supports:
- ComposeServiceControl: stop/start/status of docker compose services
- paused_services: stop a set of services and guarantee they are started again
"""

import json
import logging
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, List, Sequence

from .errors import BackupError

logger = logging.getLogger(__name__)


class ServiceControlError(BackupError):
    """Raised when a service cannot be stopped, started or inspected."""
    pass


RUNNING = 'running'


class ServiceControl:
    """Interface: control services by logical name."""

    def stop(self, name: str):
        raise NotImplementedError

    def start(self, name: str):
        raise NotImplementedError

    def status(self, name: str) -> str:
        raise NotImplementedError


class ComposeServiceControl(ServiceControl):
    """
    Service control through `docker compose` for one compose file.
    """

    def __init__(self, compose_file, command: Sequence[str] = ('docker', 'compose')):
        self.compose_file = Path(compose_file)
        self.command = list(command)

    def base_command(self) -> List[str]:
        return self.command + ['-f', str(self.compose_file)]

    def _run(self, args: List[str]) -> str:
        cmd = self.base_command() + args
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, check=True,
                cwd=str(self.compose_file.parent)
            )
        except FileNotFoundError:
            raise ServiceControlError(f"{self.command[0]} not found")
        except subprocess.CalledProcessError as e:
            raise ServiceControlError(f"{' '.join(args)} failed: {e.stderr.strip() or e}")
        return result.stdout

    def stop(self, name: str):
        self._run(['stop', name])

    def start(self, name: str):
        self._run(['start', name])

    def status(self, name: str) -> str:
        """
        Return the container state of a service ('running', 'exited', ...).

        A service without a container reports 'absent'.
        """
        output = self._run(['ps', '--all', '--format', 'json', name]).strip()
        try:
            entries = self._parse_ps(output)
        except ValueError as e:
            raise ServiceControlError(f"Unreadable ps output for {name}: {e}")
        for entry in entries:
            if entry.get('Service') == name:
                return (entry.get('State') or 'unknown').lower()
        return 'absent'

    @staticmethod
    def _parse_ps(output: str) -> List[dict]:
        # Compose v2 prints a JSON array in older releases and one object per line in newer ones
        if not output:
            return []
        if output.startswith('['):
            return json.loads(output)
        return [json.loads(line) for line in output.splitlines() if line.strip()]


@contextmanager
def paused_services(control: ServiceControl, names: Iterable[str]):
    """
    Stop services for the duration of the block and start them again afterwards.

    Services that are not running are left alone. A failed stop is logged and
    the service is still started again on exit. Services are started in reverse
    order on every exit path, including exceptions raised inside the block.

    Yields:
        List of service names that will be started on exit

    Raises:
        ServiceControlError: If a service could not be started again and no
            other exception is propagating
    """
    to_resume = []
    failed = []

    try:
        for name in names:
            try:
                state = control.status(name)
            except ServiceControlError as e:
                logger.warning("Could not read status of %s: %s", name, e)
                state = 'unknown'

            if state != RUNNING and state != 'unknown':
                # Not distinguishable here from a failed earlier stop; treated as a no-op
                logger.info("Service %s is not running (%s); not pausing it", name, state)
                continue

            # Registered before stopping so an interrupted stop is still undone
            to_resume.append(name)
            try:
                control.stop(name)
                logger.info("Stopped service %s", name)
            except ServiceControlError as e:
                logger.warning("Failed to stop %s (continuing): %s", name, e)

        yield list(to_resume)
    finally:
        for name in reversed(to_resume):
            try:
                control.start(name)
                logger.info("Started service %s", name)
            except ServiceControlError as e:
                logger.error("Failed to start %s: %s", name, e)
                failed.append(name)

    if failed:
        raise ServiceControlError(f"Services not restarted: {', '.join(failed)}")
