# Copyright (c) Syntropy Systems
"""Configuration management for qcpool."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

# Environment variable naming the tool to spawn
EXECUTABLE_ENVVAR = "MRIQC"


@dataclass
class QcpoolConfig:
    """Configuration for qcpool."""

    # Grace period before SIGKILL after SIGTERM when a job times out (seconds)
    kill_grace_period: float = 10.0

    # How long to wait for a SIGKILLed process to be reaped (seconds)
    kill_confirm_timeout: float = 5.0

    # Bytes of stdout and of stderr kept per job
    output_tail_bytes: int = 64 * 1024

    # Tool spawned for each participant
    executable: str = "mriqc"


def find_qcpool_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .qcpool directory by walking up from start_path.

    Returns None if no .qcpool directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        qcpool_dir = current / ".qcpool"
        if qcpool_dir.is_dir():
            return qcpool_dir
        current = current.parent

    # Check root
    qcpool_dir = current / ".qcpool"
    if qcpool_dir.is_dir():
        return qcpool_dir

    return None


def get_global_config_dir() -> Path:
    """Get the global qcpool config directory (~/.qcpool)."""
    return Path.home() / ".qcpool"


def find_config_path(qcpool_dir: Path | None = None) -> Path | None:
    """Locate config.yaml.

    Looks for config in:
    1. Provided qcpool_dir
    2. Nearest .qcpool directory walking up
    3. ~/.qcpool/config.yaml
    """
    if qcpool_dir is not None:
        return qcpool_dir / "config.yaml"

    found_dir = find_qcpool_dir()
    if found_dir is not None:
        return found_dir / "config.yaml"

    global_config = get_global_config_dir() / "config.yaml"
    if global_config.exists():
        return global_config
    return None


def load_config(qcpool_dir: Path | None = None) -> QcpoolConfig:
    """Load configuration from config.yaml or defaults."""
    config = QcpoolConfig()

    config_path = find_config_path(qcpool_dir)
    if config_path is None or not config_path.exists():
        return config

    with config_path.open() as f:
        data = cast("dict[str, object]", yaml.safe_load(f) or {})

    kill_grace_period = data.get("kill_grace_period")
    if isinstance(kill_grace_period, (int, float)) and kill_grace_period >= 0:
        config.kill_grace_period = float(kill_grace_period)
    kill_confirm_timeout = data.get("kill_confirm_timeout")
    if isinstance(kill_confirm_timeout, (int, float)) and kill_confirm_timeout > 0:
        config.kill_confirm_timeout = float(kill_confirm_timeout)
    output_tail_bytes = data.get("output_tail_bytes")
    if isinstance(output_tail_bytes, int) and output_tail_bytes > 0:
        config.output_tail_bytes = output_tail_bytes
    executable = data.get("executable")
    if isinstance(executable, str) and executable:
        config.executable = executable

    return config


def resolve_executable(flag: str | None, config: QcpoolConfig) -> str:
    """Pick the tool to spawn: flag, then $MRIQC, then config."""
    if flag:
        return flag
    env_value = os.environ.get(EXECUTABLE_ENVVAR)
    if env_value:
        return env_value
    return config.executable
