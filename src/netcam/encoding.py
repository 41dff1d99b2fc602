"""Frame inspection and container conversion helpers for recorded streams."""

from __future__ import annotations

import logging
from fractions import Fraction
from pathlib import Path

import av
import numpy as np
import simplejpeg

logger = logging.getLogger(__name__)


class RemuxError(RuntimeError):
    """Raised when a recorded MJPEG stream could not be converted."""


_VIDEO_CODEC_CANDIDATES: tuple[str, ...] = (
    "libx264",
    "h264",
    "mpeg4",
)


_CODECS_REQUIRE_EVEN_DIMENSIONS: frozenset[str] = frozenset({"h264", "libx264"})


def jpeg_dimensions(payload: bytes) -> tuple[int, int] | None:
    """Return ``(width, height)`` read from a JPEG header, or ``None``."""

    if not payload:
        return None
    try:
        height, width, _colorspace, _subsampling = simplejpeg.decode_jpeg_header(payload)
    except Exception as exc:  # simplejpeg raises several types
        logger.debug("Unable to read JPEG header: %s", exc)
        return None
    if width <= 0 or height <= 0:
        return None
    return int(width), int(height)


def select_video_codec(exclude: frozenset[str] = frozenset()) -> str | None:
    """Return the first encoder from the candidate list that FFmpeg provides."""

    for candidate in _VIDEO_CODEC_CANDIDATES:
        if candidate in exclude:
            continue
        try:
            context = av.CodecContext.create(candidate, "w")
        except av.FFmpegError as exc:  # pragma: no cover - codec probing failure
            logger.debug("Codec %s unavailable: %s", candidate, exc)
            continue
        except Exception as exc:  # pragma: no cover
            logger.debug("Failed to initialise codec %s: %s", candidate, exc)
            continue
        if not getattr(context, "is_encoder", True):
            continue
        return candidate
    return None


def _prepare_frame(array: np.ndarray, codec: str) -> np.ndarray:
    frame_array = np.asarray(array)
    if frame_array.dtype != np.uint8:
        frame_array = np.clip(frame_array, 0, 255).astype(np.uint8)
    if codec in _CODECS_REQUIRE_EVEN_DIMENSIONS:
        height = frame_array.shape[0] - frame_array.shape[0] % 2
        width = frame_array.shape[1] - frame_array.shape[1] % 2
        frame_array = frame_array[:height, :width]
    return np.ascontiguousarray(frame_array)


def remux_mjpeg_to_mp4(
    source_path: Path,
    target_path: Path,
    *,
    fps: float | None = None,
    codec: str | None = None,
) -> dict[str, object]:
    """Re-encode a concatenated-JPEG file into an MP4 container.

    ``source_path`` holds raw JPEG images written back to back, as produced by
    a recording session. The target is written in one pass; on failure the
    partial output is removed and :class:`RemuxError` is raised. The source is
    never modified.
    """

    selected = codec or select_video_codec()
    if selected is None:
        raise RemuxError("No usable video encoder available")
    rate = Fraction(int(round(fps))) if fps and fps >= 1 else Fraction(10)
    frame_count = 0
    try:
        with av.open(str(source_path), mode="r", format="mjpeg") as source:
            video_stream = next((s for s in source.streams if s.type == "video"), None)
            if video_stream is None:
                raise RemuxError("Recording does not contain a video stream")
            with av.open(str(target_path), mode="w", format="mp4") as target:
                stream = target.add_stream(selected, rate=rate)
                stream.pix_fmt = "yuv420p"
                for frame in source.decode(video_stream):
                    array = _prepare_frame(frame.to_ndarray(format="rgb24"), selected)
                    if frame_count == 0:
                        stream.height, stream.width = array.shape[0], array.shape[1]
                    elif (array.shape[1], array.shape[0]) != (stream.width, stream.height):
                        logger.debug("Skipping frame with mismatched size in %s", source_path)
                        continue
                    output = av.VideoFrame.from_ndarray(array, format="rgb24")
                    output.pts = frame_count
                    for packet in stream.encode(output):
                        target.mux(packet)
                    frame_count += 1
                if frame_count:
                    for packet in stream.encode(None):
                        target.mux(packet)
    except RemuxError:
        target_path.unlink(missing_ok=True)
        raise
    except (av.FFmpegError, OSError, ValueError) as exc:
        target_path.unlink(missing_ok=True)
        raise RemuxError(f"Unable to convert {source_path.name}: {exc}") from exc
    if frame_count == 0:
        target_path.unlink(missing_ok=True)
        raise RemuxError("Recording did not contain any decodable frames")
    return {
        "file": target_path.name,
        "codec": selected,
        "frame_count": frame_count,
        "duration_seconds": round(frame_count / float(rate), 3),
        "size_bytes": target_path.stat().st_size,
    }


__all__ = ["RemuxError", "jpeg_dimensions", "remux_mjpeg_to_mp4", "select_video_codec"]
