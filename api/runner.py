import logging
import subprocess
from dataclasses import dataclass
from typing import Sequence

from errors import ToolInvocationError, ToolTimeoutError

logger = logging.getLogger(__name__)

# Exit codes a help/version invocation may return when the tool is installed.
INSTALLED_EXIT_CODES = (0, 1)


@dataclass
class ProcessResult:
    succeeded: bool
    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool = False


class ProcessRunner:
    """Runs external command-line tools synchronously and captures their output.

    `run` never raises for a failing tool: a non-zero exit, a missing executable
    and a timeout are all reported through `ProcessResult`.
    """

    def run(self, command: str, args: Sequence[str], timeout: float | None = None) -> ProcessResult:
        cmd = [command, *args]
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError:
            return ProcessResult(False, "", f"{command}: command not found", None)
        except PermissionError as e:
            return ProcessResult(False, "", f"{command}: {e}", None)
        except subprocess.TimeoutExpired as e:
            stderr = e.stderr.decode(errors="replace") if isinstance(e.stderr, bytes) else (e.stderr or "")
            logger.warning("%s timed out after %ss", command, timeout)
            return ProcessResult(
                False, "", f"{stderr}\n{command} timed out after {timeout}s".strip(), None, timed_out=True
            )

        return ProcessResult(
            succeeded=result.returncode == 0,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            exit_code=result.returncode,
        )

    def run_or_raise(self, command: str, args: Sequence[str], timeout: float | None = None) -> str:
        """Run a tool and return its stdout, raising ToolInvocationError on failure."""
        result = self.run(command, args, timeout=timeout)
        if result.succeeded:
            return result.stdout
        stderr = result.stderr.strip()
        message = stderr or f"Failed to run {command}"
        if result.timed_out:
            raise ToolTimeoutError(message, stderr=stderr)
        raise ToolInvocationError(message, stderr=stderr, exit_code=result.exit_code)

    def probe(self, command: str, args: Sequence[str] = ("--help",), timeout: float | None = 30) -> bool:
        """True when the tool is installed, even if it rejected these arguments."""
        result = self.run(command, args, timeout=timeout)
        return result.exit_code in INSTALLED_EXIT_CODES
