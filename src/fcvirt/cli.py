"""Command-line interface for fcvirt.

Usage:
    fcvirt vm.json                       # Boot, wait for guest poweroff, clean up
    fcvirt vm.json --json                # Print VM details as JSON once booted
    fcvirt --firecracker ./firecracker --state-dir /tmp/fc vm.json
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, NoReturn

import click
from pydantic import ValidationError

from fcvirt import __version__, constants
from fcvirt._logging import configure_logging
from fcvirt.exceptions import FcvirtError
from fcvirt.models import DomainDefinition
from fcvirt.settings import Settings
from fcvirt.vm_manager import VmManager


def load_definition(path: Path) -> DomainDefinition:
    """Parse a JSON domain definition file.

    Raises:
        click.UsageError: File unreadable or not a valid definition
    """
    try:
        return DomainDefinition.model_validate_json(path.read_text())
    except OSError as e:
        raise click.UsageError(f"Cannot read {path}: {e.strerror}") from e
    except ValidationError as e:
        raise click.UsageError(f"Invalid domain definition in {path}:\n{e}") from e


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def format_vm_json(details: dict[str, Any]) -> str:
    return json.dumps(details, indent=2)


async def run_vm(
    definition: DomainDefinition,
    settings: Settings,
    *,
    graceful: bool,
    json_output: bool,
    quiet: bool,
) -> int:
    """Boot the VM, wait for it to exit (or be interrupted) and tear it down.

    Returns:
        Exit code to return from CLI
    """
    try:
        async with VmManager(settings) as manager:
            vm = await manager.define_vm(definition)
            await manager.create_vm(vm.name)
            state, reason = await manager.get_state(vm.name)

            details = {
                "name": vm.name,
                "uuid": str(definition.uuid),
                "state": state.value,
                "reason": reason.value,
                "pid": vm.id,
                "socket": str(vm.runtime.socket_path) if vm.runtime else None,
                "console": str(vm.console_pty_path) if vm.console_pty_path else None,
            }
            if json_output:
                click.echo(format_vm_json(details))
            elif not quiet:
                click.echo(click.style(f"✓ Domain {vm.name} started (pid {vm.id})", fg="green"), err=True)
                if details["console"]:
                    click.echo(f"  Console: {details['console']}", err=True)

            try:
                returncode = await manager.wait_vm(vm.name)
                if not quiet and not json_output:
                    click.echo(f"Domain {vm.name} exited (code {returncode})", err=True)
            finally:
                await manager.destroy_vm(vm.name, graceful=graceful)

        return constants.EXIT_SUCCESS

    except FcvirtError as e:
        click.echo(
            format_error(
                type(e).__name__,
                e.message,
                [
                    "Check that the firecracker binary is installed (or pass --firecracker)",
                    "Check the hypervisor log fc_err.log in the VM's state directory",
                ],
            ),
            err=True,
        )
        return constants.EXIT_DRIVER_ERROR


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("definition_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Root directory for VM workspaces (default: $FCVIRT_STATE_DIR or the runtime dir)",
)
@click.option(
    "--firecracker",
    "firecracker_bin",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Firecracker binary (default: definition emulator or `firecracker` on PATH)",
)
@click.option("--graceful/--force", default=True, show_default=True, help="How to stop the VM on exit")
@click.option("--no-version-check", is_flag=True, help="Skip the Firecracker version check")
@click.option("--json", "json_output", is_flag=True, help="Print VM details as JSON")
@click.option("-q", "--quiet", is_flag=True, help="Suppress progress output")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.version_option(__version__, "-V", "--version", prog_name="fcvirt")
def main(
    definition_file: Path,
    state_dir: Path | None,
    firecracker_bin: Path | None,
    graceful: bool,
    no_version_check: bool,
    json_output: bool,
    quiet: bool,
    verbose: bool,
) -> NoReturn:
    """Boot a Firecracker micro-VM from a JSON domain definition.

    Runs in the foreground until the guest powers off or Ctrl-C is pressed,
    then stops the VM (gracefully by default) and exits.

    Examples:

    \b
      fcvirt vm.json
      fcvirt --firecracker ./firecracker --state-dir /tmp/fc vm.json
      fcvirt --json vm.json | jq .console
    """
    configure_logging(quiet=quiet, level="DEBUG" if verbose else None)

    definition = load_definition(definition_file)

    overrides: dict[str, Any] = {}
    if state_dir is not None:
        overrides["state_dir"] = state_dir
    if firecracker_bin is not None:
        overrides["firecracker_bin"] = firecracker_bin
    if no_version_check:
        overrides["check_version"] = False
    settings = Settings(**overrides)

    try:
        exit_code = asyncio.run(
            run_vm(
                definition,
                settings,
                graceful=graceful,
                json_output=json_output,
                quiet=quiet,
            )
        )
    except KeyboardInterrupt:
        exit_code = 130

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
