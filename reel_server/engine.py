import logging
import shlex
import subprocess
from typing import List, Optional

from .errors import EngineError, EngineNotFoundError
from .filtergraph import EngineCommand

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20


def run_cmd(cmd: List[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess:
    logger.debug("Run command: %s", " ".join(shlex.quote(c) for c in cmd))
    return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)


def stderr_tail(text: Optional[str]) -> str:
    lines = (text or "").strip().splitlines()
    return "\n".join(lines[-STDERR_TAIL_LINES:])


class Engine:
    """Runs ffmpeg for one stage command at a time."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: float = 600.0):
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout

    def version(self) -> str:
        try:
            cp = run_cmd([self.ffmpeg_path, "-version"], timeout=10)
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            raise EngineNotFoundError("FFmpeg not found") from e
        if cp.returncode != 0:
            raise EngineNotFoundError("FFmpeg not found")
        return (cp.stdout or "").split("\n", 1)[0].strip()

    def run(self, command: EngineCommand) -> None:
        cmd = [self.ffmpeg_path] + command.to_args()
        logger.info("[ffmpeg] %s", " ".join(cmd)[:200])
        try:
            cp = run_cmd(cmd, timeout=self.timeout)
        except FileNotFoundError as e:
            raise EngineNotFoundError("FFmpeg not found") from e
        except subprocess.TimeoutExpired as e:
            logger.error("ffmpeg timed out after %ss: %s", self.timeout, command.output)
            raise EngineError(f"FFmpeg error: timed out after {self.timeout:g}s") from e
        if cp.returncode != 0:
            tail = stderr_tail(cp.stderr or cp.stdout)
            logger.error("ffmpeg failed (%d): %s", cp.returncode, tail)
            raise EngineError(f"FFmpeg error: {tail or 'exit code %d' % cp.returncode}", stderr=cp.stderr)
