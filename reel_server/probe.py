import json
import logging
import subprocess
from typing import Any, Dict

from .engine import run_cmd, stderr_tail
from .errors import ProbeError

logger = logging.getLogger(__name__)


class Prober:
    """Reads media metadata through ffprobe."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout: float = 60.0):
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    def _run(self, args, path: str) -> str:
        cmd = [self.ffprobe_path, "-v", "error"] + list(args) + [str(path)]
        try:
            cp = run_cmd(cmd, timeout=self.timeout)
        except FileNotFoundError as e:
            raise ProbeError("FFprobe not found") from e
        except subprocess.TimeoutExpired as e:
            raise ProbeError(f"ffprobe timed out on {path}") from e
        if cp.returncode != 0:
            raise ProbeError(f"ffprobe failed: {stderr_tail(cp.stderr) or cp.returncode}", stderr=cp.stderr)
        return cp.stdout or ""

    def duration(self, path: str) -> float:
        out = self._run(["-show_entries", "format=duration", "-of", "csv=p=0"], path).strip()
        try:
            value = float(out)
        except ValueError as e:
            raise ProbeError(f"ffprobe returned no duration for {path}: {out!r}") from e
        logger.debug("duration %s = %.3f", path, value)
        return value

    def metadata(self, path: str) -> Dict[str, Any]:
        out = self._run(
            [
                "-show_entries", "format=duration,size:stream=width,height,codec_name,r_frame_rate",
                "-of", "json",
            ],
            path,
        )
        try:
            return json.loads(out)
        except ValueError as e:
            raise ProbeError(f"ffprobe returned invalid JSON for {path}") from e
