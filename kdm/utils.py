from __future__ import annotations

import os
import re
import subprocess
from datetime import timedelta
from typing import Dict, List, Optional, Union

from kdm.logger import logger

_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parses a duration into seconds.

    Accepts a bare number of seconds ("300", 300) or a Go-style duration string
    made of number/unit pairs ("300s", "5m", "1h30m", "1500ms").

    Args:
        value (Union[str, int, float]): The duration to parse.

    Returns:
        float: The duration in seconds.

    Raises:
        ValueError: If the value is negative or not a valid duration.

    Example:
        >>> parse_duration("1m30s")
        90.0
    """
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip()
        if not text:
            raise ValueError("Invalid duration: empty string")
        if re.fullmatch(r"\d+(\.\d+)?", text):
            seconds = float(text)
        else:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    raise ValueError(f"Invalid duration: {value}")
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos != len(text):
                raise ValueError(f"Invalid duration: {value}")

    if seconds < 0:
        raise ValueError(f"Invalid duration: {value} is negative")
    return seconds


def format_timedelta(td: timedelta) -> str:
    total_seconds = int(td.total_seconds())
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)

    if hours > 0:
        return f"{hours}h{minutes}m{seconds}s"
    elif minutes > 0:
        return f"{minutes}m{seconds}s"
    else:
        return f"{seconds}s"


def format_seconds(seconds: float) -> str:
    return format_timedelta(timedelta(seconds=seconds))


def run_command(
    cmd: List[str],
    timeout: Optional[float] = 60,
    check: bool = True,
    env: Optional[Dict[str, str]] = None,
) -> subprocess.CompletedProcess:
    """
    Runs a command and captures its output as text.

    Args:
        cmd (List[str]): The command and its arguments.
        timeout (Optional[float]): Seconds before the command is killed.
        check (bool): Raise CalledProcessError on a non-zero exit status.
        env (Optional[Dict[str, str]]): Extra environment variables, merged
            into the current environment.

    Returns:
        subprocess.CompletedProcess: The finished process.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    full_env = os.environ.copy()
    if env:
        full_env.update(env)
    try:
        return subprocess.run(
            cmd,
            timeout=timeout,
            check=check,
            capture_output=True,
            text=True,
            env=full_env,
        )
    except subprocess.CalledProcessError as e:
        logger.debug(f"Command failed: {e.cmd}")
        if e.stderr:
            logger.debug(f"stderr: {e.stderr}")
        raise
