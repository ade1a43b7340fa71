"""External tool runner with process isolation and timeout enforcement.

Every ffmpeg, ffprobe and heif-convert invocation goes through FfmpegRunner so
that the worker sees one failure taxonomy regardless of which tool broke.

Key Features:
- Process isolation with subprocess.Popen in a new session
- Hard timeout with process tree cleanup (SIGTERM, grace period, SIGKILL)
- Child is killed when the caller is interrupted
- Error classification into ConversionError subclasses
- Optional artifact preservation on failure
"""

import logging
import os
import shutil
import subprocess
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import imageio_ffmpeg
import psutil

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 500


class ToolErrorType(Enum):
    """Why a conversion step failed."""

    NOT_FOUND = "not_found"  # Executable could not be spawned
    EXIT_CODE = "exit_code"  # Tool ran and exited non-zero
    TIMEOUT = "timeout"  # Hard timeout, process tree killed
    PROBE_PARSE = "probe_parse"  # Probe output unusable
    OUTPUT_MISSING = "output_missing"  # Tool succeeded but wrote nothing
    REJECTED = "rejected"  # Input violates policy (e.g. too long)


class ConversionError(Exception):
    """Base error for everything that can go wrong while converting a job."""

    def __init__(
        self,
        message: str,
        error_type: ToolErrorType = ToolErrorType.EXIT_CODE,
        tool: Optional[str] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.tool = tool


class ToolNotFoundError(ConversionError):
    def __init__(self, message: str, tool: Optional[str] = None):
        super().__init__(message, ToolErrorType.NOT_FOUND, tool)


class ToolExitError(ConversionError):
    def __init__(self, message: str, tool: Optional[str] = None, returncode: int = 1, stderr: str = ""):
        super().__init__(message, ToolErrorType.EXIT_CODE, tool)
        self.returncode = returncode
        self.stderr = stderr


class ToolTimeoutError(ConversionError):
    def __init__(self, message: str, tool: Optional[str] = None):
        super().__init__(message, ToolErrorType.TIMEOUT, tool)


class ProbeError(ConversionError):
    def __init__(self, message: str, tool: Optional[str] = "ffprobe"):
        super().__init__(message, ToolErrorType.PROBE_PARSE, tool)


@dataclass
class ToolResult:
    """Result of a successful tool execution."""

    tool: str
    cmd: List[str]
    returncode: int
    stdout: str
    stderr: str
    duration_s: float


class FfmpegRunner:
    """Runs external media tools with timeout and zombie prevention.

    Executables resolve from explicit paths first, then PATH. ffmpeg falls
    back to the binary bundled with imageio-ffmpeg; ffprobe falls back to
    the sibling of whatever ffmpeg resolved to.

    Example:
        >>> runner = FfmpegRunner(kill_grace_period_s=2)
        >>> runner.ffmpeg(["-y", "-i", "in.mov", "-c", "copy", "out.mp4"], timeout_s=1200)
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        ffprobe_path: Optional[str] = None,
        heif_convert_path: Optional[str] = None,
        kill_grace_period_s: float = 5.0,
        save_artifacts_on_failure: bool = False,
        artifacts_dir: Optional[str] = None,
    ):
        """Initialize runner.

        Args:
            ffmpeg_path: ffmpeg executable (None = resolve)
            ffprobe_path: ffprobe executable (None = resolve)
            heif_convert_path: heif-convert executable (None = resolve)
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save a command/stdout/stderr log on failure
            artifacts_dir: Where failure logs go (None = system temp dir)
        """
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.heif_convert_path = heif_convert_path
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.artifacts_dir = artifacts_dir

    @classmethod
    def from_config(cls, config) -> "FfmpegRunner":
        """Build a runner from a PipelineConfig."""
        return cls(
            ffmpeg_path=config.tools.ffmpeg_path,
            ffprobe_path=config.tools.ffprobe_path,
            heif_convert_path=config.tools.heif_convert_path,
            kill_grace_period_s=config.tools.kill_grace_period_s,
            save_artifacts_on_failure=config.tools.save_artifacts_on_failure,
            artifacts_dir=config.tools.artifacts_dir,
        )

    # ------------------------------------------------------------------
    # Executable resolution
    # ------------------------------------------------------------------

    def ffmpeg_exe(self) -> str:
        if self.ffmpeg_path:
            return self.ffmpeg_path
        found = shutil.which("ffmpeg")
        if found:
            return found
        try:
            return imageio_ffmpeg.get_ffmpeg_exe()
        except RuntimeError:
            return "ffmpeg"

    def ffprobe_exe(self) -> str:
        if self.ffprobe_path:
            return self.ffprobe_path
        found = shutil.which("ffprobe")
        if found:
            return found
        ffmpeg_exe = Path(self.ffmpeg_exe())
        sibling = ffmpeg_exe.with_name(ffmpeg_exe.name.replace("ffmpeg", "ffprobe"))
        if sibling.name != ffmpeg_exe.name and sibling.exists():
            return str(sibling)
        return "ffprobe"

    def heif_convert_exe(self) -> str:
        return self.heif_convert_path or shutil.which("heif-convert") or "heif-convert"

    def check_tools(self) -> Dict[str, Optional[str]]:
        """Resolved path of each tool, or None if it cannot be executed."""
        return {
            "ffmpeg": shutil.which(self.ffmpeg_exe()),
            "ffprobe": shutil.which(self.ffprobe_exe()),
            "heif-convert": shutil.which(self.heif_convert_exe()),
        }

    # ------------------------------------------------------------------
    # Tool wrappers
    # ------------------------------------------------------------------

    def ffmpeg(self, args: Sequence[str], timeout_s: float) -> ToolResult:
        """Run ffmpeg with ``args`` (everything after the executable)."""
        return self.run([self.ffmpeg_exe(), *args], timeout_s, tool="ffmpeg")

    def ffprobe(self, args: Sequence[str], timeout_s: float) -> ToolResult:
        return self.run([self.ffprobe_exe(), *args], timeout_s, tool="ffprobe")

    def heif_convert(self, input_path: str, output_path: str, timeout_s: float) -> ToolResult:
        return self.run(
            [self.heif_convert_exe(), str(input_path), str(output_path)],
            timeout_s,
            tool="heif-convert",
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(self, cmd: Sequence[str], timeout_s: float, tool: Optional[str] = None) -> ToolResult:
        """Execute ``cmd`` with a hard timeout.

        Args:
            cmd: Command as list, executable first
            timeout_s: Seconds before the process tree is killed
            tool: Name used in error messages (defaults to the executable name)

        Returns:
            ToolResult on exit code 0

        Raises:
            ToolNotFoundError: If the executable does not exist
            ToolTimeoutError: If the timeout elapsed
            ToolExitError: If the tool exited non-zero
        """
        cmd = [str(part) for part in cmd]
        tool = tool or Path(cmd[0]).name
        start_time = time.time()

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                start_new_session=(os.name == "posix"),
            )
        except FileNotFoundError as e:
            raise ToolNotFoundError(f"{tool} not found: {cmd[0]}", tool=tool) from e
        except OSError as e:
            raise ConversionError(f"{tool} spawn error: {e}", ToolErrorType.NOT_FOUND, tool) from e

        try:
            stdout, stderr = process.communicate(timeout=timeout_s)
        except subprocess.TimeoutExpired:
            stdout, stderr = self._kill_process_tree(process)
            self._maybe_save_artifacts(cmd, stdout, stderr)
            raise ToolTimeoutError(f"{tool} timeout after {timeout_s:g}s", tool=tool)
        except BaseException:
            # Interrupted (signal, KeyboardInterrupt): never leave the child behind
            self._kill_process_tree(process)
            raise

        duration = time.time() - start_time
        stdout = stdout or ""
        stderr = stderr or ""

        if process.returncode != 0:
            self._maybe_save_artifacts(cmd, stdout, stderr)
            tail = stderr[-STDERR_TAIL_CHARS:] if stderr else "unknown error"
            raise ToolExitError(
                f"{tool} failed (code {process.returncode}): {tail}",
                tool=tool,
                returncode=process.returncode,
                stderr=stderr,
            )

        logger.debug("%s finished in %.2fs", tool, duration)
        return ToolResult(
            tool=tool,
            cmd=cmd,
            returncode=process.returncode,
            stdout=stdout,
            stderr=stderr,
            duration_s=duration,
        )

    def _kill_process_tree(self, process: subprocess.Popen) -> Tuple[str, str]:
        """Kill a process and all its children.

        Kill sequence:
        1. SIGTERM to every process in the tree
        2. Wait grace period
        3. SIGKILL survivors
        4. Collect whatever stdout/stderr is left

        Returns:
            Tuple of (stdout, stderr)
        """
        try:
            parent = psutil.Process(process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            procs = []

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            stdout, stderr = process.communicate(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            process.kill()
            stdout, stderr = process.communicate()
        return stdout or "", stderr or ""

    def _maybe_save_artifacts(self, cmd: List[str], stdout: str, stderr: str) -> List[Path]:
        if not self.save_artifacts_on_failure:
            return []
        return self._save_failure_artifacts(cmd, stdout, stderr)

    def _save_failure_artifacts(self, cmd: List[str], stdout: str, stderr: str) -> List[Path]:
        """Save ``<tool>_error_<timestamp>_<id>.log`` with command and output."""
        artifacts_dir = Path(self.artifacts_dir) if self.artifacts_dir else Path(
            os.environ.get("TMPDIR", "/tmp")
        )
        tool = Path(cmd[0]).name
        log_path = artifacts_dir / f"{tool}_error_{int(time.time())}_{uuid.uuid4().hex[:8]}.log"

        try:
            artifacts_dir.mkdir(parents=True, exist_ok=True)
            with open(log_path, "w", encoding="utf-8") as f:
                f.write("=" * 80 + "\n")
                f.write(f"{tool} error log\n")
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write(f"PID: {os.getpid()}\n")
                f.write("=" * 80 + "\n\n")
                f.write("COMMAND:\n")
                f.write(" ".join(cmd) + "\n\n")
                f.write("STDOUT:\n")
                f.write((stdout or "(empty)") + "\n\n")
                f.write("STDERR:\n")
                f.write((stderr or "(empty)") + "\n")
        except OSError as e:
            logger.warning("Failed to save failure artifacts: %s", e)
            return []

        logger.info("Saved failure artifacts to %s", log_path)
        return [log_path]
