"""
ffmpeg / ffprobe wrappers for merging recordings.

Commands are built as argument vectors and run with
asyncio.create_subprocess_exec; nothing goes through a shell.
"""

import asyncio
import shutil
from pathlib import Path

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

STDERR_TAIL_CHARS = 2000

_VIDEO_BASE = ["-c:v", "libvpx", "-crf", "23", "-cpu-used", "4", "-deadline", "realtime"]

CHANNEL_PROFILES: dict[str, list[str]] = {
    "screen": [*_VIDEO_BASE, "-b:v", "2000k", "-an"],
    "webcam": [*_VIDEO_BASE, "-b:v", "1200k", "-c:a", "libopus", "-b:a", "96k"],
    "microphone": ["-vn", "-c:a", "libopus", "-b:a", "96k"],
}


class TranscodeError(Exception):
    """ffmpeg or ffprobe failed, timed out or could not be started."""

    def __init__(self, message: str, returncode: int | None = None, stderr_tail: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr_tail = stderr_tail


def _tail(output: bytes, limit: int = STDERR_TAIL_CHARS) -> str:
    text = output.decode("utf-8", errors="replace").strip()
    return text[-limit:]


def build_transcode_command(
    channel: str, input_path: str | Path, output_path: str | Path, ffmpeg_bin: str | None = None
) -> list[str]:
    """argv for re-encoding a concatenated channel recording into a seekable WebM."""
    if channel not in CHANNEL_PROFILES:
        raise ValueError(f"Unknown channel: {channel}")

    return [
        ffmpeg_bin or settings.FFMPEG_BIN,
        "-y",
        "-hide_banner",
        "-nostats",
        "-loglevel",
        "error",
        "-fflags",
        "+genpts",
        "-i",
        str(input_path),
        *CHANNEL_PROFILES[channel],
        str(output_path),
    ]


async def _run(argv: list[str], timeout: float) -> tuple[int, bytes, bytes]:
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise TranscodeError(f"Could not start {argv[0]}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        raise TranscodeError(f"{Path(argv[0]).name} timed out after {timeout:.0f}s") from None
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    return process.returncode, stdout, stderr


async def run_transcode(
    channel: str,
    input_path: str | Path,
    output_path: str | Path,
    *,
    timeout: float | None = None,
) -> Path:
    """
    Re-encode one channel's concatenated recording.

    Returns:
        Path of the written output

    Raises:
        TranscodeError: non-zero exit, timeout or missing binary
    """
    argv = build_transcode_command(channel, input_path, output_path)
    limit = timeout if timeout is not None else settings.TRANSCODE_TIMEOUT_SECONDS

    logger.info("Transcode started", channel=channel, input=str(input_path), output=str(output_path))
    returncode, _, stderr = await _run(argv, limit)

    if returncode != 0:
        tail = _tail(stderr)
        logger.error("Transcode failed", channel=channel, returncode=returncode, stderr=tail)
        raise TranscodeError(
            f"ffmpeg exited with code {returncode}: {tail}", returncode=returncode, stderr_tail=tail
        )

    logger.info("Transcode finished", channel=channel, output=str(output_path))
    return Path(output_path)


async def probe_duration_seconds(path: str | Path, *, timeout: float | None = None) -> float | None:
    """Container duration reported by ffprobe, or None when it cannot be read."""
    argv = [
        settings.FFPROBE_BIN,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        str(path),
    ]
    limit = timeout if timeout is not None else settings.PROBE_TIMEOUT_SECONDS

    try:
        returncode, stdout, stderr = await _run(argv, limit)
    except TranscodeError as e:
        logger.warning("Duration probe failed", path=str(path), error=str(e))
        return None

    if returncode != 0:
        logger.warning("Duration probe failed", path=str(path), stderr=_tail(stderr, 500))
        return None

    try:
        return float(stdout.decode().strip())
    except ValueError:
        return None


def check_transcoder_available() -> dict:
    """Resolve the ffmpeg and ffprobe binaries on PATH."""
    ffmpeg = shutil.which(settings.FFMPEG_BIN)
    ffprobe = shutil.which(settings.FFPROBE_BIN)
    result = {
        "ok": bool(ffmpeg and ffprobe),
        "ffmpeg": ffmpeg,
        "ffprobe": ffprobe,
    }
    if not result["ok"]:
        logger.error(
            "Transcoder binaries not found",
            ffmpeg_bin=settings.FFMPEG_BIN,
            ffprobe_bin=settings.FFPROBE_BIN,
            ffmpeg_found=bool(ffmpeg),
            ffprobe_found=bool(ffprobe),
        )
    return result
