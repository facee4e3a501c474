"""
Subprocess execution for git, docker and build specification commands.
"""

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

from delivery_pipeline.utils.logging import get_logger

logger = get_logger(__name__)

OUTPUT_TAIL_CHARS = 4000


@dataclass
class CommandResult:
    """Outcome of one command."""

    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output_tail(self) -> str:
        output = (self.stderr or self.stdout or "").strip()
        return output[-OUTPUT_TAIL_CHARS:]


class CommandRunner:
    """
    Runs commands and captures their output.

    Never raises for a failing command; callers inspect ``CommandResult``
    and map failures onto their own error kinds.
    """

    def __init__(self, shell: str = "/bin/bash"):
        self.shell = shell

    def run(
        self,
        args: List[str],
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Dict[str, str]] = None,
        input: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run an argument vector."""
        return self._execute(args, " ".join(args), cwd, env, input, timeout)

    def run_shell(
        self,
        command: str,
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a shell command line, as written in a build specification."""
        return self._execute([self.shell, "-o", "pipefail", "-ec", command], command, cwd, env, None, timeout)

    def _execute(self, argv, display, cwd, env, input, timeout) -> CommandResult:
        logger.debug("Running command", extra={'command': display, 'cwd': str(cwd) if cwd else None})
        try:
            completed = subprocess.run(
                argv,
                cwd=cwd,
                env=env,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            logger.error("Command timed out", extra={'command': display, 'timeout_seconds': timeout})
            return CommandResult(
                command=display,
                returncode=-1,
                stdout=_as_text(e.stdout),
                stderr=_as_text(e.stderr) or f"Timed out after {timeout} seconds",
                timed_out=True,
            )
        except OSError as e:
            logger.error("Command could not be started", extra={'command': display, 'error': str(e)})
            return CommandResult(command=display, returncode=127, stderr=str(e))

        if completed.returncode != 0:
            logger.warning("Command failed", extra={
                'command': display,
                'exit_code': completed.returncode,
            })
        return CommandResult(
            command=display,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value
