"""Data models for the integration harness."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# Tag keys written on every harness instance. The keys match the ones the
# original harness wrote, so cleanup by user tag also finds its leftovers.
NAME_TAG = "name"
USER_TAG = "knife_solo_integration_user"
PREPARED_TAG = "knife_solo_prepared"


class InstanceState(Enum):
    """EC2 instance lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    STOPPED = "stopped"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "InstanceState":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_gone(self) -> bool:
        """True once the instance can never become running again."""
        return self in (InstanceState.SHUTTING_DOWN, InstanceState.TERMINATED)


class ReadinessPhase(Enum):
    """Steps of the readiness poll, in order."""

    CREATED = "created"
    WAITING_FOR_RUNNING = "waiting_for_running"
    WAITING_FOR_PORT = "waiting_for_port"
    GRACE_PERIOD = "grace_period"
    READY = "ready"
    TIMED_OUT = "timed_out"


@dataclass
class Instance:
    """Harness view of a cloud instance."""

    instance_id: str
    state: InstanceState = InstanceState.PENDING
    public_ip_address: str | None = None
    tags: dict[str, str] = field(default_factory=dict)
    launch_time: datetime | None = None
    prepared: bool = False

    @classmethod
    def from_ec2(cls, data: dict[str, Any]) -> "Instance":
        """Create an Instance from a ``describe_instances`` record."""
        tags = {t["Key"]: t.get("Value", "") for t in data.get("Tags", [])}
        return cls(
            instance_id=data["InstanceId"],
            state=InstanceState.parse(data.get("State", {}).get("Name")),
            public_ip_address=data.get("PublicIpAddress") or None,
            tags=tags,
            launch_time=data.get("LaunchTime"),
            prepared=tags.get(PREPARED_TAG, "").lower() == "true",
        )

    @property
    def name(self) -> str | None:
        return self.tags.get(NAME_TAG)

    @property
    def is_running(self) -> bool:
        return self.state == InstanceState.RUNNING


def build_server_name(prefix: str, class_name: str, image_id: str) -> str:
    """Return the stable test identity used as the instance ``name`` tag."""
    return f"{prefix}-{class_name}-{image_id}"


@dataclass
class CleanupResult:
    """Outcome of an end-of-run cleanup."""

    found: list[Instance] = field(default_factory=list)
    destroyed: list[Instance] = field(default_factory=list)
    skipped: bool = False
    cancelled: bool = False

    @property
    def left_running(self) -> int:
        return len(self.found) - len(self.destroyed)
