# Copyright (c) Syntropy Systems
"""qcpool doctor command."""

import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from qcpool.config import find_config_path, load_config, resolve_executable

console = Console()


def doctor(
    mriqc: Optional[str] = typer.Option(
        None,
        "--mriqc",
        envvar="MRIQC",
        help="Path or name of the tool to check",
    ),
) -> None:
    """Check the qcpool setup and diagnose issues.

    Verifies:
    - configuration file
    - the analysis tool can be found and reports a version
    - the system temp directory is writable
    """
    issues: list[str] = []
    warnings: list[str] = []

    # Configuration
    config_path = find_config_path()
    config = load_config()
    if config_path is not None and config_path.exists():
        console.print(f"[green]✓[/green] Config: {config_path}")
    else:
        console.print("[dim]•[/dim] No config.yaml found, using defaults")
    console.print(
        f"[dim]•[/dim] kill_grace_period={config.kill_grace_period}s "
        f"kill_confirm_timeout={config.kill_confirm_timeout}s "
        f"output_tail_bytes={config.output_tail_bytes}"
    )

    # Analysis tool
    executable = resolve_executable(mriqc, config)
    resolved = shutil.which(executable)
    if resolved is None:
        console.print(f"[red]✗[/red] Tool not found: {executable}")
        console.print("  Pass [bold]--mriqc[/bold] or set [bold]MRIQC[/bold]")
        issues.append(f"{executable} not found")
    else:
        console.print(f"[green]✓[/green] Tool: {resolved}")
        try:
            result = subprocess.run(  # noqa: S603
                [resolved, "--version"],
                capture_output=True,
                text=True,
                timeout=30,
                check=False,
            )
            version = (result.stdout or result.stderr).strip().splitlines()
            if result.returncode == 0 and version:
                console.print(f"[green]✓[/green] Version: {version[-1]}")
            else:
                console.print("[yellow]⚠[/yellow] --version failed")
                warnings.append(f"{executable} --version exited with {result.returncode}")
        except subprocess.TimeoutExpired:
            console.print("[yellow]⚠[/yellow] --version timed out")
            warnings.append("Version check timed out")
        except OSError as e:
            console.print(f"[red]✗[/red] Couldn't run tool: {e}")
            issues.append(f"Couldn't run {executable}: {e}")

    # Scratch space
    temp_root = Path(tempfile.gettempdir())
    try:
        with tempfile.TemporaryDirectory(dir=temp_root):
            pass
        console.print(f"[green]✓[/green] Temp directory writable: {temp_root}")
    except OSError as e:
        console.print(f"[yellow]⚠[/yellow] Temp directory not writable: {e}")
        warnings.append("Temp directory not writable; pass --work-dir")

    # Summary
    console.print()
    if issues:
        console.print(f"[red]Found {len(issues)} issue(s)[/red]")
        for issue in issues:
            console.print(f"  - {issue}")
        raise typer.Exit(1)
    if warnings:
        console.print(f"[yellow]Found {len(warnings)} warning(s)[/yellow]")
        for warning in warnings:
            console.print(f"  - {warning}")
    else:
        console.print("[green]All checks passed[/green]")
