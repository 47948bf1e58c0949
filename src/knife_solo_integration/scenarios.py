"""Reusable cook scenarios.

A scenario is a small object with a ``run(case)`` method; test bodies compose
them through ``IntegrationCase.run_scenario`` instead of inheriting them.
"""

import json
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Protocol

import requests

if TYPE_CHECKING:
    from .case import IntegrationCase


class Scenario(Protocol):
    """Something a test case can run against its server."""

    name: str

    def run(self, case: "IntegrationCase") -> None: ...


class EmptyCook:
    """Cook the node without any cookbooks and expect success."""

    name = "empty_cook"

    def run(self, case: "IntegrationCase") -> None:
        case.assert_subcommand("cook")


class Apache2Cook:
    """Cook with the apache2 cookbook and check the default page is served."""

    name = "apache2"
    cookbook_site = "https://supermarket.chef.io"
    run_list = ["recipe[apache2]"]
    expected_body = re.compile(r"It works!")

    def __init__(self, http_get: Callable[..., Any] = requests.get) -> None:
        self._http_get = http_get

    def write_cheffile(self, kitchen: Path) -> Path:
        path = kitchen / "Cheffile"
        path.write_text(f"site '{self.cookbook_site}'\ncookbook 'apache2'\n")
        return path

    def write_nodefile(self, kitchen: Path, host: str) -> Path:
        """Write ``nodes/<host>.json`` with the apache2 run list."""
        nodes = kitchen / "nodes"
        nodes.mkdir(parents=True, exist_ok=True)
        path = nodes / f"{host}.json"
        path.write_text(json.dumps({"run_list": self.run_list}) + "\n")
        return path

    def http_response(self, host: str, timeout: float) -> str:
        response = self._http_get(f"http://{host}/", timeout=timeout)
        return str(response.text)

    def run(self, case: "IntegrationCase") -> None:
        host = case.server.public_ip_address
        assert host, f"{case.server.instance_id} has no public address"

        self.write_cheffile(case.kitchen)
        if not case.executor.install_cookbooks(cwd=case.kitchen):
            raise AssertionError(f"Cookbook install failed, see {case.log_file}")
        self.write_nodefile(case.kitchen, host)
        case.assert_subcommand("cook")

        body = self.http_response(host, case.settings.http_timeout_seconds)
        if not self.expected_body.search(body):
            raise AssertionError(
                f"Expected {self.expected_body.pattern!r} in the page served by http://{host}/"
            )
