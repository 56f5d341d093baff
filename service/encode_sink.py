"""Streaming ffmpeg encoder sink with a bounded frame channel."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import io
import logging
import math
import os
import queue
import shutil
import subprocess
import threading
from typing import IO, Callable, Protocol, Sequence

from PIL import Image

from domain.lyric_video import DEFAULT_QUEUE_FRAMES, FrameFormat

FFMPEG_NOT_FOUND_CODE = "render_lyric_video.ffmpeg.not_found"
FFMPEG_EXEC_CODE = "render_lyric_video.ffmpeg.exec_error"
FFMPEG_PROCESS_CODE = "render_lyric_video.ffmpeg.process_failed"
FFMPEG_WRITE_CODE = "render_lyric_video.ffmpeg.write_failed"
OUTPUT_BUSY_CODE = "render_lyric_video.output.busy"
OUTPUT_PATH_CODE = "render_lyric_video.output.unwritable"
RENDER_CANCELLED_CODE = "render_lyric_video.render.cancelled"

H264_CODEC = "libx264"
H264_PIXEL_FORMAT = "yuv420p"
H264_CRF = "18"
H264_PRESET = "veryfast"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"
RAW_PIXEL_FORMAT = "rgb24"
PNG_COMPRESS_LEVEL = 1
PARTIAL_SUFFIX = ".partial"
QUEUE_POLL_SECONDS = 0.1
THREAD_JOIN_SECONDS = 5.0
STDERR_TAIL_LINES = 40

LOGGER = logging.getLogger(__name__)


class RenderPipelineError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class RenderCancelledError(RenderPipelineError):
    """Raised when a render session is aborted from outside."""

    def __init__(self, message: str = "render cancelled") -> None:
        super().__init__(RENDER_CANCELLED_CODE, message)


class EncoderProcess(Protocol):
    """The subset of subprocess.Popen the sink relies on."""

    stdin: IO[bytes] | None
    stderr: IO[bytes] | None

    def poll(self) -> int | None: ...

    def wait(self, timeout: float | None = None) -> int: ...

    def kill(self) -> None: ...


@dataclass(frozen=True)
class EncoderSettings:
    """Everything ffmpeg needs to mux frames with the audio track."""

    width: int
    height: int
    fps: int
    frame_format: FrameFormat
    audio_path: str
    output_path: str


def ensure_ffmpeg_available(binary: str = "ffmpeg") -> str:
    """Ensure ffmpeg is installed and executable."""
    ffmpeg_path = shutil.which(binary)
    if not ffmpeg_path:
        raise RenderPipelineError(FFMPEG_NOT_FOUND_CODE, f"{binary} not on PATH")
    try:
        subprocess.run(
            [ffmpeg_path, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise RenderPipelineError(
            FFMPEG_EXEC_CODE, f"{binary} exists but could not be executed"
        ) from exc
    return ffmpeg_path


def probe_audio_duration_seconds(audio_path: str) -> float | None:
    """Return the audio duration from ffprobe, or None when unavailable."""
    ffprobe_path = shutil.which("ffprobe")
    if not ffprobe_path:
        LOGGER.warning("%s: ffprobe not on PATH", FFMPEG_NOT_FOUND_CODE)
        return None
    try:
        result = subprocess.run(
            [
                ffprobe_path,
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                audio_path,
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
        )
    except OSError as exc:
        LOGGER.warning("%s: ffprobe could not run (%s)", FFMPEG_EXEC_CODE, exc)
        return None
    if result.returncode != 0:
        LOGGER.warning(
            "%s: ffprobe failed for audio track: %s",
            FFMPEG_PROCESS_CODE,
            result.stderr.strip(),
        )
        return None
    try:
        duration_seconds = float(result.stdout.strip())
    except ValueError:
        LOGGER.warning("audio duration unavailable for %s", audio_path)
        return None
    if not math.isfinite(duration_seconds) or duration_seconds <= 0:
        LOGGER.warning(
            "audio duration %r from ffprobe is unusable for %s",
            duration_seconds,
            audio_path,
        )
        return None
    return duration_seconds


def partial_output_path(output_path: str) -> str:
    """Sibling path the encoder writes to until the render succeeds."""
    root, extension = os.path.splitext(output_path)
    return f"{root}{PARTIAL_SUFFIX}{extension}"


def claim_output_path(path: str) -> None:
    """Create the path exclusively so two sessions cannot share a target."""
    try:
        file_descriptor = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError as exc:
        raise RenderPipelineError(
            OUTPUT_BUSY_CODE,
            f"{path} exists; another render may be writing this output",
        ) from exc
    except OSError as exc:
        raise RenderPipelineError(
            OUTPUT_PATH_CODE, f"cannot create output file {path}: {exc.strerror}"
        ) from exc
    os.close(file_descriptor)


def remove_file(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def build_ffmpeg_command(settings: EncoderSettings, target_path: str) -> list[str]:
    """Build the ffmpeg invocation reading frames from stdin."""
    command = ["ffmpeg", "-hide_banner", "-loglevel", "error", "-nostats", "-y"]
    if settings.frame_format == FrameFormat.PNG:
        command.extend(["-f", "image2pipe", "-c:v", "png"])
    else:
        command.extend(
            [
                "-f",
                "rawvideo",
                "-pix_fmt",
                RAW_PIXEL_FORMAT,
                "-s",
                f"{settings.width}x{settings.height}",
            ]
        )
    command.extend(
        [
            "-r",
            str(settings.fps),
            "-i",
            "pipe:0",
            "-i",
            settings.audio_path,
            "-map",
            "0:v:0",
            "-map",
            "1:a:0",
            "-c:v",
            H264_CODEC,
            "-pix_fmt",
            H264_PIXEL_FORMAT,
            "-crf",
            H264_CRF,
            "-preset",
            H264_PRESET,
            "-c:a",
            AUDIO_CODEC,
            "-b:a",
            AUDIO_BITRATE,
            "-shortest",
            "-movflags",
            "+faststart",
            target_path,
        ]
    )
    return command


def serialize_frame(image: Image.Image, frame_format: FrameFormat) -> bytes:
    """Encode a frame into the wire representation ffmpeg expects."""
    if image.mode != "RGB":
        image = image.convert("RGB")
    if frame_format == FrameFormat.PNG:
        buffer = io.BytesIO()
        image.save(buffer, format="PNG", compress_level=PNG_COMPRESS_LEVEL)
        return buffer.getvalue()
    return image.tobytes()


def spawn_encoder_process(command: Sequence[str]) -> EncoderProcess:
    """Start ffmpeg with a pipe for frames and a pipe for diagnostics."""
    try:
        return subprocess.Popen(
            list(command),
            stdin=subprocess.PIPE,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise RenderPipelineError(FFMPEG_NOT_FOUND_CODE, "ffmpeg not found") from exc
    except OSError as exc:
        raise RenderPipelineError(
            FFMPEG_EXEC_CODE, f"ffmpeg could not be started: {exc}"
        ) from exc


class FfmpegEncodeSink:
    """Feeds serialized frames to ffmpeg through a bounded queue.

    A writer thread drains the queue into the encoder's stdin. ``submit``
    blocks while the queue is full, so the producer can never run ahead of
    the encoder by more than ``queue_frames`` frames. The encoder writes to a
    partial path that is renamed onto the output only after a clean exit.
    """

    def __init__(
        self,
        settings: EncoderSettings,
        queue_frames: int = DEFAULT_QUEUE_FRAMES,
        process_factory: Callable[[Sequence[str]], EncoderProcess] = spawn_encoder_process,
    ) -> None:
        self.settings = settings
        self.partial_path = partial_output_path(settings.output_path)
        self.frames_submitted = 0
        self.frames_written = 0
        self._queue: queue.Queue[bytes | None] = queue.Queue(maxsize=queue_frames)
        self._process_factory = process_factory
        self._process: EncoderProcess | None = None
        self._writer: threading.Thread | None = None
        self._stderr_reader: threading.Thread | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._writer_error: BaseException | None = None
        self._aborted = threading.Event()
        self._closed = False

    def __enter__(self) -> "FfmpegEncodeSink":
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        if exc_type is not None:
            self.abort()

    def start(self) -> None:
        """Claim the partial output and spawn the encoder."""
        if self._process is not None:
            raise RenderPipelineError(FFMPEG_PROCESS_CODE, "encoder already started")
        claim_output_path(self.partial_path)
        command = build_ffmpeg_command(self.settings, self.partial_path)
        try:
            process = self._process_factory(command)
        except BaseException:
            remove_file(self.partial_path)
            raise
        if process.stdin is None:
            process.kill()
            process.wait()
            remove_file(self.partial_path)
            raise RenderPipelineError(FFMPEG_PROCESS_CODE, "ffmpeg stdin unavailable")

        self._process = process
        LOGGER.debug("started encoder: %s", " ".join(command))
        self._writer = threading.Thread(
            target=self._write_frames, name="encode-sink-writer", daemon=True
        )
        self._stderr_reader = threading.Thread(
            target=self._read_stderr, name="encode-sink-stderr", daemon=True
        )
        self._writer.start()
        self._stderr_reader.start()

    def submit(
        self, payload: bytes, cancel_event: threading.Event | None = None
    ) -> None:
        """Queue one serialized frame, blocking while the queue is full.

        A set ``cancel_event`` ends the wait with RenderCancelledError, so a
        stalled encoder cannot hold the producer past a cancel request.
        """
        if self._process is None or self._closed:
            raise RenderPipelineError(FFMPEG_PROCESS_CODE, "encoder is not running")
        self._put(payload, cancel_event)
        self.frames_submitted += 1

    def finish(self, cancel_event: threading.Event | None = None) -> str:
        """Flush remaining frames, wait for ffmpeg and publish the output."""
        if self._process is None or self._closed:
            raise RenderPipelineError(FFMPEG_PROCESS_CODE, "encoder is not running")
        process = self._process
        try:
            self._put(None, cancel_event)
            self._wait_for_writer(cancel_event)
            if self._writer_error is not None:
                self._raise_encoder_failure(self._writer_error)
            try:
                self._close_stdin()
            except OSError as exc:
                self._raise_encoder_failure(exc)
            return_code = process.wait()
            self._join_stderr_reader()
            if return_code != 0:
                raise RenderPipelineError(
                    FFMPEG_PROCESS_CODE,
                    f"ffmpeg failed with exit code {return_code}. {self.stderr_text()}",
                )
            os.replace(self.partial_path, self.settings.output_path)
        except BaseException:
            self.abort()
            raise
        self._closed = True
        LOGGER.debug("encoder finished after %d frames", self.frames_written)
        return self.settings.output_path

    def abort(self) -> None:
        """Stop the encoder without waiting for queued frames."""
        if self._closed:
            return
        self._closed = True
        self._aborted.set()
        process = self._process
        if process is not None and process.poll() is None:
            process.kill()
        self._drain_queue()
        if self._writer is not None:
            self._writer.join(timeout=THREAD_JOIN_SECONDS)
        if process is not None:
            try:
                self._close_stdin()
            except OSError as exc:
                LOGGER.debug("closing ffmpeg stdin after abort: %s", exc)
            process.wait()
            self._join_stderr_reader()
        remove_file(self.partial_path)
        LOGGER.debug("encoder aborted after %d frames", self.frames_written)

    def stderr_text(self) -> str:
        return "\n".join(self._stderr_tail).strip()

    def _put(
        self, item: bytes | None, cancel_event: threading.Event | None = None
    ) -> None:
        while True:
            if self._aborted.is_set():
                raise RenderCancelledError()
            if cancel_event is not None and cancel_event.is_set():
                raise RenderCancelledError(
                    f"render cancelled after {self.frames_submitted} frames"
                )
            if self._writer_error is not None:
                self._raise_encoder_failure(self._writer_error)
            if self._writer is not None and not self._writer.is_alive():
                raise RenderPipelineError(
                    FFMPEG_WRITE_CODE, "frame writer stopped unexpectedly"
                )
            try:
                self._queue.put(item, timeout=QUEUE_POLL_SECONDS)
                return
            except queue.Full:
                continue

    def _raise_encoder_failure(self, cause: BaseException) -> None:
        process = self._process
        return_code = process.wait() if process is not None else None
        if return_code:
            self._join_stderr_reader()
            raise RenderPipelineError(
                FFMPEG_PROCESS_CODE,
                f"ffmpeg failed with exit code {return_code}. {self.stderr_text()}",
            ) from cause
        raise RenderPipelineError(
            FFMPEG_WRITE_CODE, f"failed writing frame to ffmpeg: {cause}"
        ) from cause

    def _write_frames(self) -> None:
        process = self._process
        if process is None or process.stdin is None:
            return
        stdin = process.stdin
        while True:
            try:
                payload = self._queue.get(timeout=QUEUE_POLL_SECONDS)
            except queue.Empty:
                if self._aborted.is_set():
                    return
                continue
            if payload is None or self._aborted.is_set():
                return
            try:
                stdin.write(payload)
            except (OSError, ValueError) as exc:
                self._writer_error = exc
                return
            self.frames_written += 1

    def _read_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        for raw_line in iter(process.stderr.readline, b""):
            self._stderr_tail.append(raw_line.decode("utf-8", errors="replace").rstrip())

    def _wait_for_writer(self, cancel_event: threading.Event | None) -> None:
        writer = self._writer
        if writer is None:
            return
        while writer.is_alive():
            if cancel_event is not None and cancel_event.is_set():
                raise RenderCancelledError(
                    f"render cancelled after {self.frames_written} frames written"
                )
            writer.join(timeout=QUEUE_POLL_SECONDS)

    def _join_stderr_reader(self) -> None:
        if self._stderr_reader is not None:
            self._stderr_reader.join(timeout=THREAD_JOIN_SECONDS)
            if self._stderr_reader.is_alive():
                LOGGER.debug("ffmpeg stderr still open after exit")
                return
        process = self._process
        if process is not None and process.stderr is not None:
            process.stderr.close()

    def _drain_queue(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return

    def _close_stdin(self) -> None:
        process = self._process
        if process is not None and process.stdin and not process.stdin.closed:
            process.stdin.close()
