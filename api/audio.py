import logging
import os

import librosa  # ty: ignore[unresolved-import]
import numpy as np

from runner import ProcessRunner

logger = logging.getLogger(__name__)

TARGET_EXTENSION = ".mp3"
MP3_QUALITY = "2"  # libmp3lame VBR quality


def is_target_format(path: str) -> bool:
    return os.path.splitext(path)[1].lower() == TARGET_EXTENSION


def transcode(
    runner: ProcessRunner,
    input_path: str,
    output_path: str,
    ffmpeg_cmd: str = "ffmpeg",
    timeout: float | None = None,
) -> str:
    """Convert any decodable audio file to MP3. Raises ToolInvocationError on failure."""
    logger.info(f"Transcoding {input_path} -> {output_path}")
    runner.run_or_raise(
        ffmpeg_cmd,
        [
            "-y",
            "-i", input_path,
            "-codec:a", "libmp3lame",
            "-q:a", MP3_QUALITY,
            output_path,
        ],
        timeout=timeout,
    )
    return output_path


def estimate_bpm(file_path: str) -> int | None:
    """Estimate tempo from the percussive component of the first two minutes."""
    logger.info(f"Estimating BPM for {file_path}")

    y, sr = librosa.load(file_path, sr=None, mono=True, duration=120.0)
    if y.size == 0:
        return None

    _, y_percussive = librosa.effects.hpss(y)
    tempo, _ = librosa.beat.beat_track(y=y_percussive, sr=sr)
    tempo_bpm = float(np.atleast_1d(tempo)[0])

    if not np.isfinite(tempo_bpm) or tempo_bpm <= 0:
        return None
    logger.info(f"Estimated tempo={tempo_bpm:.1f} for {file_path}")
    return int(round(tempo_bpm))
