"""Run session: the objects shared by every case of one harness process."""

import os
from pathlib import Path
from typing import Any

import structlog

from .case import IntegrationCase
from .cloud_client import CloudClient
from .config import CloudConfig, Settings, get_settings, load_cloud_config
from .logs import close_integration_logs
from .models import CleanupResult
from .readiness import ReadinessPoller
from .runner import ServerRunner

logger = structlog.get_logger()


class HarnessSession:
    """Settings, credentials and runner for one run, passed explicitly to cases."""

    def __init__(
        self,
        settings: Settings,
        cloud_config: CloudConfig,
        client: CloudClient,
        runner: ServerRunner,
    ) -> None:
        self.settings = settings
        self.cloud_config = cloud_config
        self.client = client
        self.runner = runner

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        ec2: Any = None,
        run_id: str | None = None,
    ) -> "HarnessSession":
        """Build a session from settings and ``support/config.yml``.

        Raises:
            ConfigError: If the settings or the credentials file are invalid.
        """
        settings = settings or get_settings()
        cloud_config = load_cloud_config(settings.config_file)
        client = CloudClient(cloud_config, settings, ec2=ec2)
        poller = ReadinessPoller(client, settings)
        key_name = cloud_config.aws.key_name
        runner = ServerRunner(
            settings,
            client,
            poller,
            key_name=key_name,
            key_file=settings.support_dir / f"{key_name}.pem",
            # Shared by all pytest-xdist workers of one run.
            run_id=run_id or os.environ.get("PYTEST_XDIST_TESTRUNUID"),
        )
        return cls(settings, cloud_config, client, runner)

    @property
    def key_file(self) -> Path:
        return self.runner.key_file

    def start(self) -> None:
        self.runner.ensure_key_pair()
        logger.info("Integration session started", user=self.settings.user, region=self.client.region)

    def finish(self) -> CleanupResult:
        """Clean up the run's instances, honoring ``SKIP_DESTROY``."""
        try:
            return self.runner.cleanup()
        finally:
            close_integration_logs()

    def image_id(self, alias: str) -> str | None:
        """Resolve an image alias from the ``images`` section of the config file."""
        return self.cloud_config.images.get(alias)

    def case(self, class_name: str, image_id: str, flavor_id: str | None = None) -> IntegrationCase:
        return IntegrationCase(self, class_name, image_id, flavor_id)
