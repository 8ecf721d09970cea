"""External media tool invocation.

The probe, encoder and thumbnail extractor never spawn processes
themselves; they hand an argument vector to a MediaToolRunner. Production
uses SubprocessToolRunner, tests inject a scripted fake.
"""

import logging
import subprocess
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 4000


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one tool invocation."""
    stdout: str
    exit_status: int
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    def stderr_tail(self, limit: int = STDERR_TAIL_CHARS) -> str:
        """Last ``limit`` characters of stderr, where ffmpeg reports the actual error."""
        text = self.stderr.strip()
        if len(text) <= limit:
            return text
        return "..." + text[-(limit - 3):]


class ToolTimeout(Exception):
    """Raised when a tool does not finish within its timeout."""

    def __init__(self, args: Sequence[str], timeout: float):
        self.tool_args = list(args)
        self.timeout = timeout
        super().__init__(f"{args[0] if args else 'tool'} timed out after {timeout:.0f}s")


class ToolLaunchError(Exception):
    """Raised when a tool binary cannot be started at all."""

    pass


class MediaToolRunner(Protocol):
    """Runs an external media tool."""

    def invoke(self, args: Sequence[str], timeout: float) -> ToolResult:
        ...


class SubprocessToolRunner:
    """MediaToolRunner backed by subprocess.run."""

    def __init__(self, cwd: Optional[str] = None):
        self.cwd = cwd

    def invoke(self, args: Sequence[str], timeout: float) -> ToolResult:
        logger.debug("Running %s", " ".join(args))
        try:
            completed = subprocess.run(
                list(args),
                capture_output=True,
                text=True,
                # ffmpeg echoes container metadata in whatever encoding it was written
                errors="replace",
                timeout=timeout,
                cwd=self.cwd,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ToolTimeout(args, timeout) from e
        except OSError as e:
            raise ToolLaunchError(f"Could not start {args[0]}: {e}") from e

        return ToolResult(
            stdout=completed.stdout or "",
            exit_status=completed.returncode,
            stderr=completed.stderr or "",
        )
