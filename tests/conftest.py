"""Pytest fixtures for the integration harness unit tests."""

from datetime import datetime, timezone
from typing import Any, Callable
from unittest.mock import MagicMock

import pytest

from knife_solo_integration.case import IntegrationCase
from knife_solo_integration.cloud_client import CloudClient
from knife_solo_integration.config import AwsCredentials, CloudConfig, Settings
from knife_solo_integration.executor import SubcommandExecutor
from knife_solo_integration.logs import close_integration_logs
from knife_solo_integration.models import Instance, InstanceState
from knife_solo_integration.readiness import ReadinessPoller
from knife_solo_integration.runner import ServerRunner
from knife_solo_integration.session import HarnessSession


class FakeClock:
    """Monotonic clock whose time only moves when ``sleep`` is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> Any:
    """Keep the developer's harness environment out of the tests."""
    for name in ("VERBOSE", "SKIP_DESTROY", "BASE_DIR", "PYTEST_XDIST_TESTRUNUID"):
        monkeypatch.delenv(name, raising=False)
    yield
    close_integration_logs()


@pytest.fixture
def settings(tmp_path: Any) -> Settings:
    """Create test settings rooted in a temporary directory."""
    return Settings(
        _env_file=None,
        user="tester",
        base_dir=tmp_path,
        poll_interval_seconds=1.0,
        readiness_timeout_seconds=30.0,
        ready_grace_seconds=10.0,
        cleanup_grace_seconds=20.0,
    )


@pytest.fixture
def cloud_config() -> CloudConfig:
    return CloudConfig(
        aws=AwsCredentials(access_key="AKIATEST", secret="s3cret", key_name="knife-solo"),
        images={"ubuntu-12.04": "ami-12345678"},
    )


@pytest.fixture
def ec2() -> MagicMock:
    """Create a mock boto3 EC2 client."""
    return MagicMock()


@pytest.fixture
def client(cloud_config: CloudConfig, settings: Settings, ec2: MagicMock) -> CloudClient:
    return CloudClient(cloud_config, settings, ec2=ec2)


@pytest.fixture
def mock_client() -> MagicMock:
    """Create a mock cloud client."""
    return MagicMock(spec=CloudClient)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_record() -> Callable[..., dict[str, Any]]:
    """Build ``describe_instances`` records."""

    def _record(
        instance_id: str = "i-0abc123",
        state: str = "running",
        ip: str | None = "203.0.113.10",
        tags: dict[str, str] | None = None,
        launch_time: datetime | None = None,
    ) -> dict[str, Any]:
        record: dict[str, Any] = {
            "InstanceId": instance_id,
            "State": {"Code": 16, "Name": state},
            "Tags": [{"Key": k, "Value": v} for k, v in (tags or {}).items()],
            "LaunchTime": launch_time or datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc),
        }
        if ip:
            record["PublicIpAddress"] = ip
        return record

    return _record


@pytest.fixture
def running_instance() -> Instance:
    """Create a running instance with a public address."""
    return Instance(
        instance_id="i-0abc123",
        state=InstanceState.RUNNING,
        public_ip_address="203.0.113.10",
        tags={"name": "knife_solo-TestUbuntu-ami-12345678"},
    )


@pytest.fixture
def pending_instance() -> Instance:
    return Instance(instance_id="i-0new456", state=InstanceState.PENDING)


@pytest.fixture
def poller(mock_client: MagicMock, settings: Settings, clock: FakeClock) -> ReadinessPoller:
    """Create a poller whose port probe always succeeds."""
    return ReadinessPoller(
        mock_client,
        settings,
        probe=lambda host, port, timeout: True,
        sleep=clock.sleep,
        clock=clock,
    )


@pytest.fixture
def mock_runner(settings: Settings, running_instance: Instance) -> MagicMock:
    """Create a mock runner that hands out ``running_instance``."""
    runner = MagicMock(spec=ServerRunner)
    runner.key_file = settings.support_dir / "knife-solo.pem"
    runner.get_instance.return_value = running_instance
    runner.is_prepared.return_value = False
    return runner


@pytest.fixture
def session(
    settings: Settings, cloud_config: CloudConfig, mock_client: MagicMock, mock_runner: MagicMock
) -> HarnessSession:
    return HarnessSession(settings, cloud_config, mock_client, mock_runner)


@pytest.fixture
def fake_run() -> MagicMock:
    """Stand-in for ``subprocess.run`` that always exits 0."""
    return MagicMock(return_value=MagicMock(returncode=0))


@pytest.fixture
def case(
    session: HarnessSession, fake_run: MagicMock, tmp_path: Any, monkeypatch: pytest.MonkeyPatch
) -> IntegrationCase:
    """Create a case for ``TestUbuntu`` whose commands go through ``fake_run``."""
    monkeypatch.chdir(tmp_path)
    case = session.case("TestUbuntu", "ami-12345678")
    case.executor = SubcommandExecutor(
        session.settings, session.key_file, case.log_file, run=fake_run
    )
    return case
