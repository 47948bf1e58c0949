"""Errors raised by the integration harness."""


class HarnessError(Exception):
    """Base class for harness failures that abort a run."""

    pass


class ConfigError(HarnessError):
    """Raised when settings or the credentials file are missing or malformed."""

    pass


class ProvisioningError(HarnessError):
    """Raised when a cloud API call fails."""

    pass


class KeyPairError(ProvisioningError):
    """Raised when the integration key pair cannot be created."""

    pass


class ReadinessTimeout(HarnessError):
    """Raised when an instance does not become reachable before the deadline."""

    def __init__(self, instance_id: str, phase: str, timeout: float) -> None:
        self.instance_id = instance_id
        self.phase = phase
        self.timeout = timeout
        super().__init__(
            f"Instance {instance_id} not ready after {timeout:g}s (stuck in {phase})"
        )
