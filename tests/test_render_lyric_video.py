"""Integration tests for render_lyric_video CLI."""

from __future__ import annotations

import shutil
import subprocess
import sys
import wave
from pathlib import Path
from typing import List

import pytest

HELLO_SRT = (
    "1\n00:00:00,000 --> 00:00:00,600\nHello\n\n"
    "2\n00:00:00,600 --> 00:00:01,200\nworld <i>again</i>\n"
)


def run_render_lyric_video(args: List[str], repo_root: Path) -> subprocess.CompletedProcess[str]:
    """Run render_lyric_video.py with the provided arguments."""
    return subprocess.run(
        [sys.executable, str(repo_root / "render_lyric_video.py"), *args],
        cwd=repo_root,
        text=True,
        capture_output=True,
        check=False,
    )


def write_wav(target_path: Path, duration_seconds: float) -> None:
    """Write a silent PCM WAV file."""
    sample_rate = 48000
    frame_count = max(1, int(round(duration_seconds * sample_rate)))
    silence = b"\x00\x00" * frame_count
    with wave.open(str(target_path), "wb") as wav_file:
        wav_file.setnchannels(1)
        wav_file.setsampwidth(2)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(silence)


def build_common_args(
    audio_path: Path,
    srt_path: Path,
    output_path: Path,
    resolution: str = "64x48",
    fps: str = "15",
) -> List[str]:
    """Build common CLI arguments for render_lyric_video.py."""
    return [
        "--audio",
        str(audio_path),
        "--srt",
        str(srt_path),
        "--out",
        str(output_path),
        "--resolution",
        resolution,
        "--fps",
        fps,
        "--font-size",
        "12",
    ]


def test_missing_audio_fails(tmp_path: Path) -> None:
    """Fail before rendering when the audio track does not exist."""
    repo_root = Path(__file__).resolve().parents[1]
    srt_path = tmp_path / "song.srt"
    srt_path.write_text(HELLO_SRT, encoding="utf-8")

    result = run_render_lyric_video(
        build_common_args(tmp_path / "missing.wav", srt_path, tmp_path / "out.mp4"),
        repo_root,
    )

    assert result.returncode == 1
    assert "render_lyric_video.input.audio_track" in result.stderr
    assert not (tmp_path / "out.mp4").exists()


def test_invalid_resolution_fails(tmp_path: Path) -> None:
    """Reject malformed resolutions with a stable code."""
    repo_root = Path(__file__).resolve().parents[1]
    audio_path = tmp_path / "song.wav"
    write_wav(audio_path, 1.0)
    srt_path = tmp_path / "song.srt"
    srt_path.write_text(HELLO_SRT, encoding="utf-8")

    result = run_render_lyric_video(
        build_common_args(audio_path, srt_path, tmp_path / "out.mp4", resolution="64by48"),
        repo_root,
    )

    assert result.returncode == 1
    assert "render_lyric_video.input.invalid_resolution" in result.stderr


def test_srt_without_cues_fails(tmp_path: Path) -> None:
    """Fail when the transcript yields no lyric lines."""
    repo_root = Path(__file__).resolve().parents[1]
    audio_path = tmp_path / "song.wav"
    write_wav(audio_path, 1.0)
    srt_path = tmp_path / "song.srt"
    srt_path.write_text("this is not\nan srt file\n", encoding="utf-8")

    result = run_render_lyric_video(
        build_common_args(audio_path, srt_path, tmp_path / "out.mp4"), repo_root
    )

    assert result.returncode == 1
    assert "render_lyric_video.input.empty_lyrics" in result.stderr


def test_non_utf8_srt_fails(tmp_path: Path) -> None:
    """Reject transcripts that are not valid UTF-8."""
    repo_root = Path(__file__).resolve().parents[1]
    audio_path = tmp_path / "song.wav"
    write_wav(audio_path, 1.0)
    srt_path = tmp_path / "song.srt"
    srt_path.write_bytes(b"1\n00:00:00,000 --> 00:00:01,000\n\xff\xfe\n")

    result = run_render_lyric_video(
        build_common_args(audio_path, srt_path, tmp_path / "out.mp4"), repo_root
    )

    assert result.returncode == 1
    assert "render_lyric_video.input.file_error" in result.stderr


@pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg and ffprobe are required",
)
@pytest.mark.parametrize("background", ["gradient", "shapes"])
def test_render_success(tmp_path: Path, background: str) -> None:
    """Render a short lyric video and publish it atomically."""
    repo_root = Path(__file__).resolve().parents[1]
    audio_path = tmp_path / "song.wav"
    write_wav(audio_path, 1.2)
    srt_path = tmp_path / "song.srt"
    srt_path.write_text(HELLO_SRT, encoding="utf-8")
    output_path = tmp_path / "out.mp4"

    args = build_common_args(audio_path, srt_path, output_path)
    args.extend(["--bg", background, "--seed", "3"])
    result = run_render_lyric_video(args, repo_root)

    assert result.returncode == 0, result.stderr
    assert output_path.exists()
    assert output_path.stat().st_size > 0
    assert not (tmp_path / "out.partial.mp4").exists()
    assert "Rendering 18 frames @ 15 FPS" in result.stderr
    assert f"Done -> {output_path}" in result.stderr
