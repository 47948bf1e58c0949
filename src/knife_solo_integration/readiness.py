"""Readiness polling for freshly created instances.

An instance is ready once EC2 reports it running with a public address and
its SSH port accepts connections. A fixed grace period follows, because sshd
accepts TCP connections a little before it can serve a session.
"""

import socket
import time
from typing import Callable

import paramiko
import structlog

from .cloud_client import CloudClient
from .config import Settings
from .exceptions import ProvisioningError, ReadinessTimeout
from .models import Instance, ReadinessPhase

logger = structlog.get_logger()

Probe = Callable[[str, int, float], bool]


def port_open(host: str, port: int, timeout: float) -> bool:
    """Return True if a TCP connection to ``host:port`` succeeds."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def ssh_handshake_ok(host: str, port: int, timeout: float) -> bool:
    """Return True if an SSH server on ``host:port`` completes key exchange."""
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError:
        return False

    transport = paramiko.Transport(sock)
    try:
        transport.start_client(timeout=timeout)
        return True
    except (paramiko.SSHException, EOFError, OSError):
        return False
    finally:
        transport.close()


class ReadinessPoller:
    """Blocks until an instance is reachable over SSH, or a deadline passes."""

    def __init__(
        self,
        client: CloudClient,
        settings: Settings,
        probe: Probe = port_open,
        handshake: Probe = ssh_handshake_ok,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.settings = settings
        self.probe = probe
        self.handshake = handshake
        self.sleep = sleep
        self.clock = clock
        self.phases: dict[str, ReadinessPhase] = {}

    def phase_of(self, instance_id: str) -> ReadinessPhase:
        """Return the last phase reached while waiting on ``instance_id``."""
        return self.phases.get(instance_id, ReadinessPhase.CREATED)

    def wait_until_ready(self, instance: Instance, grace_seconds: float | None = None) -> Instance:
        """Wait for running state, then an open SSH port, then the grace period.

        Args:
            instance: Instance as returned by create or lookup.
            grace_seconds: Override of ``READY_GRACE_SECONDS``; reused
                instances pass 0.

        Returns:
            The refreshed instance, with its public address.

        Raises:
            ReadinessTimeout: If running state and open port are not both
                observed before ``READINESS_TIMEOUT_SECONDS``.
            ProvisioningError: If the instance terminates while waiting.
        """
        grace = self.settings.ready_grace_seconds if grace_seconds is None else grace_seconds
        deadline = self.clock() + self.settings.readiness_timeout_seconds
        log = logger.bind(instance_id=instance.instance_id)
        self.phases[instance.instance_id] = ReadinessPhase.CREATED

        self._enter(instance.instance_id, ReadinessPhase.WAITING_FOR_RUNNING)
        instance, host = self._wait_for_running(instance, deadline)
        log.info("Server reported ready, trying to connect to ssh", address=host)

        self._enter(instance.instance_id, ReadinessPhase.WAITING_FOR_PORT)
        while not self._reachable(host):
            self._pause(instance.instance_id, deadline)

        if grace > 0:
            self._enter(instance.instance_id, ReadinessPhase.GRACE_PERIOD)
            log.info("Sleeping before the first SSH connection", seconds=grace)
            self.sleep(grace)

        self._enter(instance.instance_id, ReadinessPhase.READY)
        return instance

    def _wait_for_running(self, instance: Instance, deadline: float) -> tuple[Instance, str]:
        current = instance
        while True:
            if current.state.is_gone:
                raise ProvisioningError(
                    f"Instance {current.instance_id} is {current.state.value} "
                    f"and will never become ready"
                )
            if current.is_running and current.public_ip_address:
                return current, current.public_ip_address
            self._pause(instance.instance_id, deadline)
            current = self.client.describe_instance(instance.instance_id)

    def _reachable(self, host: str) -> bool:
        port = self.settings.ssh_port
        timeout = self.settings.port_probe_timeout_seconds
        if not self.probe(host, port, timeout):
            return False
        if self.settings.ssh_handshake_check:
            return self.handshake(host, port, timeout)
        return True

    def _pause(self, instance_id: str, deadline: float) -> None:
        remaining = deadline - self.clock()
        if remaining <= 0:
            stuck = self.phase_of(instance_id)
            self.phases[instance_id] = ReadinessPhase.TIMED_OUT
            logger.error("Readiness deadline exceeded", instance_id=instance_id, phase=stuck.value)
            raise ReadinessTimeout(
                instance_id, stuck.value, self.settings.readiness_timeout_seconds
            )
        self.sleep(min(self.settings.poll_interval_seconds, remaining))

    def _enter(self, instance_id: str, phase: ReadinessPhase) -> None:
        self.phases[instance_id] = phase
        logger.debug("Readiness phase", instance_id=instance_id, phase=phase.value)
