"""
Command-line interface for managing integration instances outside a test run.
Useful after a run with SKIP_DESTROY, or when a run was interrupted.
"""

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import get_settings
from .exceptions import ConfigError, HarnessError
from .logs import configure_logging
from .models import USER_TAG
from .session import HarnessSession

app = typer.Typer(
    name="knife-solo-integration",
    help="Manage EC2 instances used by the knife-solo integration tests",
    add_completion=False,
)
console = Console()


def _session() -> HarnessSession:
    try:
        settings = get_settings()
        configure_logging(settings.verbose)
        return HarnessSession.create(settings)
    except ConfigError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(1)


@app.command("list")
def list_instances(
    user: Optional[str] = typer.Option(None, help="Owning user (defaults to $USER)"),
) -> None:
    """List running integration instances."""
    session = _session()
    owner = user or session.settings.user

    try:
        instances = session.client.find_instances(USER_TAG, owner)
    except HarnessError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(1)

    table = Table(title=f"Integration instances for {owner}")
    table.add_column("Instance", style="cyan")
    table.add_column("Name")
    table.add_column("Address")
    table.add_column("Prepared")
    for instance in instances:
        table.add_row(
            instance.instance_id,
            instance.name or "-",
            instance.public_ip_address or "-",
            "yes" if instance.prepared else "no",
        )
    console.print(table)


@app.command()
def cleanup(
    user: Optional[str] = typer.Option(None, help="Owning user (defaults to $USER)"),
    skip_destroy: bool = typer.Option(
        False, "--skip-destroy", help="Only report what would be left running"
    ),
) -> None:
    """Terminate every running instance tagged with the owning user."""
    session = _session()

    try:
        result = session.runner.cleanup(owning_user=user, skip=True if skip_destroy else None)
    except HarnessError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(1)

    if result.skipped:
        console.print(f"⏭️  Left {len(result.found)} instances running")
    elif result.cancelled:
        console.print(f"⚠️  Cleanup cancelled, {len(result.found)} instances still running")
    else:
        console.print(f"✅ Destroyed {len(result.destroyed)} instances")


@app.command("create-key-pair")
def create_key_pair() -> None:
    """Create the integration key pair unless its PEM file exists."""
    session = _session()

    try:
        path = session.runner.ensure_key_pair()
    except HarnessError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(1)

    console.print(f"✅ Key pair '{session.runner.key_name}' available at {path}")


if __name__ == "__main__":
    app()
