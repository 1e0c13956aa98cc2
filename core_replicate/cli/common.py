"""Common commandline helpers"""

from typing import Any
import os

from rich.console import Console
from rich.syntax import Syntax
import darkdetect  # type: ignore

import core_framework as util

from ..models import ReplicationTarget, SharingTarget

console = Console()

# Detect OS theme and select appropriate theme
if darkdetect.isDark():
    theme = "native"
else:
    theme = "github"


def yprint(data: Any, format: str = "yaml", end: str = "\n"):
    console.print(Syntax(data, format, theme=theme), end=end)


def cprint(data: Any, format: str = "text", end: str = "\n"):
    console.print(Syntax(data, format, theme=theme), end=end)


def parse_target(value: str) -> ReplicationTarget:
    """
    Parse ``ACCOUNT:REGION[:JOBTOKEN]`` into a target.

    Args:
        value (str): The target as given on the command line

    Returns:
        ReplicationTarget: The target
    """
    parts = value.split(":", 2)
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise ValueError(f"Invalid target '{value}', expected ACCOUNT:REGION[:JOBTOKEN]")
    job_id = parts[2] if len(parts) == 3 and parts[2] else None
    return ReplicationTarget(account_id=parts[0], region=parts[1], job_id=job_id)


def load_share_with_file(fn: str) -> list[ReplicationTarget]:
    """Load a share-with list (``- accountId: ..., regions: [...]``) from a YAML file"""

    if not os.path.exists(fn):
        raise FileNotFoundError(f"File not found: {fn}")

    with open(fn, "r") as f:
        share_with = util.read_yaml(f)

    if not isinstance(share_with, list):
        raise ValueError(f"Invalid share-with list in file: {fn}")

    result: list[ReplicationTarget] = []
    for raw in share_with:
        result.extend(SharingTarget(**raw).targets())
    return result


def read_artifact(fn: str) -> bytes:
    """Read a build artifact (zip) or manifest file as bytes"""

    with open(fn, "rb") as f:
        return f.read()
