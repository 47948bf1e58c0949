"""Fixtures for scenarios run against real EC2 instances.

Run them with ``pytest -m integration``, in parallel with ``-n 5``. Each test
class sets ``image`` to an alias from the ``images`` section of
``support/config.yml`` and carries an ``xdist_group`` mark named after itself:
its tests share one kitchen and one server, so ``--dist loadgroup`` (set in
``addopts``) keeps them on a single worker. Instances are destroyed once,
after the whole run, unless ``SKIP_DESTROY`` is set.
"""

from collections.abc import Iterator
from typing import Any

import pytest
import structlog

from knife_solo_integration.case import IntegrationCase
from knife_solo_integration.config import get_settings
from knife_solo_integration.logs import configure_logging
from knife_solo_integration.session import HarnessSession

logger = structlog.get_logger()

_used_instances = False


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    settings = get_settings()
    if settings.config_file.exists():
        return

    skip = pytest.mark.skip(reason=f"No EC2 credentials at {settings.config_file}")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


def pytest_runtest_logreport(report: pytest.TestReport) -> None:
    # Reports from xdist workers arrive here in the controller too.
    global _used_instances
    if report.when == "setup" and not report.skipped and "integration" in report.keywords:
        _used_instances = True


def pytest_sessionfinish(session: pytest.Session, exitstatus: int) -> None:
    if hasattr(session.config, "workerinput") or not _used_instances:
        return

    settings = get_settings()
    configure_logging(settings.verbose)
    result = HarnessSession.create(settings).finish()
    logger.info(
        "Integration run finished",
        destroyed=len(result.destroyed),
        left_running=result.left_running,
    )


@pytest.fixture(autouse=True)
def clean_environment() -> Iterator[None]:
    """Keep VERBOSE, SKIP_DESTROY and the xdist run id for real runs."""
    yield


@pytest.fixture(scope="session")
def harness_session() -> HarnessSession:
    settings = get_settings()
    configure_logging(settings.verbose)
    session = HarnessSession.create(settings)
    session.start()
    return session


@pytest.fixture
def integration_case(
    request: pytest.FixtureRequest, harness_session: HarnessSession
) -> Iterator[IntegrationCase]:
    """Set up the case of the requesting class, with its server prepared."""
    cls: Any = request.cls
    image_id = harness_session.image_id(cls.image)
    if image_id is None:
        pytest.skip(f"No image configured for '{cls.image}' in support/config.yml")

    case = harness_session.case(cls.__name__, image_id, getattr(cls, "flavor", None))
    case.setup()
    yield case
    case.teardown()
