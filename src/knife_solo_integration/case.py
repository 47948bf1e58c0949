"""Per-test-class integration case.

A case owns one kitchen directory (``support/kitchens/<class>``), one log
file (``log/<class>-integration.log``) and one server, looked up or created
through the session's runner the first time it is needed.
"""

import os
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .executor import SubcommandExecutor
from .logs import integration_logger, log_file_for
from .models import Instance, build_server_name
from .scenarios import Scenario

if TYPE_CHECKING:
    from .session import HarnessSession


class IntegrationCase:
    """Setup, teardown and assertions shared by every integration test class."""

    def __init__(
        self,
        session: "HarnessSession",
        class_name: str,
        image_id: str,
        flavor_id: str | None = None,
    ) -> None:
        self.session = session
        self.settings = session.settings
        self.runner = session.runner
        self.class_name = class_name
        self.image_id = image_id
        self.flavor_id = flavor_id or self.settings.flavor_id
        self.kitchen = self.settings.kitchens_dir / class_name
        self.log_file = log_file_for(self.settings.log_dir, class_name)
        self.logger = integration_logger(self.settings.log_dir, class_name)
        self.executor = SubcommandExecutor(self.settings, session.key_file, self.log_file)
        self._server: Instance | None = None
        self._start_dir: Path | None = None

    @property
    def server_name(self) -> str:
        return build_server_name(self.settings.server_name_prefix, self.class_name, self.image_id)

    @property
    def server(self) -> Instance:
        """The server for this case, retrieved from the runner once."""
        if self._server is None:
            self._server = self.runner.get_instance(self.server_name, self.image_id, self.flavor_id)
        return self._server

    def setup(self) -> None:
        """Create the kitchen, move into it and make sure the server is prepared."""
        self.kitchen.parent.mkdir(parents=True, exist_ok=True)
        self.logger.info("Creating kitchen", path=str(self.kitchen))
        if not self.executor.kitchen(self.kitchen):
            raise AssertionError(f"knife kitchen {self.kitchen} failed, see {self.log_file}")
        self.kitchen.mkdir(exist_ok=True)

        self._start_dir = Path.cwd()
        os.chdir(self.kitchen)
        try:
            self.prepare_server()
        except BaseException:
            self.teardown()
            raise

    def teardown(self) -> None:
        """Return to the start directory and remove the kitchen."""
        if self._start_dir is not None:
            os.chdir(self._start_dir)
            self._start_dir = None
        if self.kitchen.exists():
            shutil.rmtree(self.kitchen)

    def prepare_server(self) -> None:
        """Run ``knife prepare`` once per server, remembered through its tags."""
        server = self.server
        if self.runner.is_prepared(server):
            self.logger.info("Server already prepared", instance_id=server.instance_id)
            return
        self.assert_subcommand("prepare")
        self.runner.mark_prepared(server)

    def assert_subcommand(self, subcommand: str) -> None:
        """Run a knife subcommand against the server and fail unless it exits 0."""
        server = self.server
        success = self.executor.run(subcommand, server, cwd=self.kitchen)
        self.logger.info("Subcommand finished", subcommand=subcommand, success=success)
        if not success:
            raise AssertionError(
                f"knife {subcommand} failed against {server.public_ip_address}, "
                f"see {self.log_file}"
            )

    def run_scenario(self, scenario: Scenario) -> None:
        self.logger.info("Running scenario", scenario=scenario.name)
        scenario.run(self)

    def __enter__(self) -> "IntegrationCase":
        self.setup()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.teardown()
