"""Runs knife and the cookbook installer against a target instance."""

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import structlog

from .config import Settings
from .models import Instance

logger = structlog.get_logger()

# Exit status reported when the executable itself cannot be found.
COMMAND_NOT_FOUND = 127


@dataclass
class CommandResult:
    """Exit status of one external command."""

    args: list[str]
    returncode: int

    @property
    def success(self) -> bool:
        return self.returncode == 0


class SubcommandExecutor:
    """Invokes external commands, appending their output to a log file.

    Output is not parsed; a command succeeded if and only if it exited 0.
    """

    def __init__(
        self,
        settings: Settings,
        key_file: Path,
        log_file: Path,
        run: Callable[..., Any] = subprocess.run,
    ) -> None:
        self.settings = settings
        self.key_file = key_file
        self.log_file = log_file
        self._run = run

    def knife_args(self, subcommand: str, host: str) -> list[str]:
        """Build ``knife <subcommand> -i <key> <user>@<host> [-VV]``."""
        args = [
            self.settings.knife_command,
            subcommand,
            "-i",
            str(self.key_file),
            f"{self.settings.user}@{host}",
        ]
        if self.settings.verbose:
            args.append("-VV")
        return args

    def run(self, subcommand: str, instance: Instance, cwd: Path | None = None) -> bool:
        """Run a knife subcommand against the instance's public address."""
        if not instance.public_ip_address:
            raise ValueError(f"Instance {instance.instance_id} has no public address")
        return self.execute(self.knife_args(subcommand, instance.public_ip_address), cwd).success

    def kitchen(self, path: Path) -> bool:
        """Scaffold a kitchen directory with ``knife kitchen``."""
        return self.execute([self.settings.knife_command, "kitchen", str(path)]).success

    def install_cookbooks(self, cwd: Path | None = None) -> bool:
        """Run the cookbook dependency installer (librarian-chef by default)."""
        return self.execute(list(self.settings.installer_command), cwd).success

    def execute(self, args: list[str], cwd: Path | None = None) -> CommandResult:
        """Run ``args`` with combined stdout/stderr appended to the log file."""
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.debug("Running command", command=" ".join(args), cwd=str(cwd) if cwd else None)

        with open(self.log_file, "a", encoding="utf-8") as log:
            log.write(f"$ {' '.join(args)}\n")
            log.flush()
            try:
                completed = self._run(
                    args,
                    cwd=cwd,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    check=False,
                )
                returncode = completed.returncode
            except FileNotFoundError as e:
                log.write(f"{e}\n")
                returncode = COMMAND_NOT_FOUND

        if returncode != 0:
            logger.warning(
                "Command failed",
                command=" ".join(args),
                returncode=returncode,
                log_file=str(self.log_file),
            )
        return CommandResult(args=args, returncode=returncode)
