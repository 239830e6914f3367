"""Thin wrapper around external CLI invocations."""

import subprocess
from typing import Sequence

import structlog

from src.common.errors import CommandError

logger = structlog.get_logger()


def run_command(
    args: Sequence[str],
    input_text: str | None = None,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """Run an external command with arguments passed as a list.

    Args:
        args: Command and arguments
        input_text: Optional text piped to stdin
        check: Raise CommandError on a non-zero exit status

    Returns:
        Completed process with captured output

    Raises:
        CommandError: If check is set and the command fails
    """
    args = list(args)
    logger.debug("Running command", command=args[0], args=args[1:])

    result = subprocess.run(
        args,
        input=input_text,
        capture_output=True,
        text=True,
        check=False,
    )

    if check and result.returncode != 0:
        raise CommandError(args, result.returncode, result.stderr or "")

    return result
