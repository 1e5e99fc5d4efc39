# -*- coding: utf-8 -*-
"""Frame extraction and reassembly through ``ffmpeg``.

The pipeline treats ffmpeg as an executable dependency with a narrow contract:

* ``probe``: duration, frame rate, resolution, audio presence (ffprobe JSON,
  with an OpenCV fallback when ffprobe output is unusable).
* ``extract_frames``: every frame at the requested rate as ``frame_%06d.jpg``,
  in order.
* ``reassemble``: edited frames back into one H.264 MP4, with the source audio
  stream copied bit-for-bit (``-c:a copy``).

Any non-zero exit is a :class:`ToolInvocationError`; without frames or a final
mux there is no meaningful output, so callers let it abort the run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import cv2
import numpy as np

from clipgrade.core.errors import ToolInvocationError


LOG = logging.getLogger("clipgrade.frames")

FRAME_PATTERN = "frame_%06d.jpg"

# Extraction-rate ladder: longer inputs are sampled more sparsely to bound
# the total frame count.
MAX_EXTRACTION_FPS = 30.0
REDUCED_FPS_15 = 15.0
REDUCED_FPS_10 = 10.0
REDUCED_FPS_5 = 5.0
MAX_RECOMMENDED_DURATION = 120.0


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Frame:
    """One still from the source video, either on disk or in memory."""

    index: int
    timestamp: float
    path: Optional[Path] = None
    data: Optional[np.ndarray] = field(default=None, repr=False, compare=False)

    def pixels(self) -> np.ndarray:
        """Return the frame as a read-only HxWx3 uint8 BGR array."""
        if self.data is not None:
            arr = self.data
        elif self.path is not None:
            arr = read_image(self.path)
        else:
            raise ValueError(f"frame {self.index} has neither data nor path")
        view = arr.view()
        view.setflags(write=False)
        return view


@dataclass(frozen=True)
class VideoProbe:
    """Describe the source media so downstream helpers can make safe decisions."""

    duration: float
    fps: float
    width: int
    height: int
    has_audio: bool
    size_bytes: int


# ---------------------------------------------------------------------------
# Image I/O
# ---------------------------------------------------------------------------


def read_image(path: Path) -> np.ndarray:
    img = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if img is None:
        raise OSError(f"could not read image: {path}")
    return img


def write_image(path: Path, frame: np.ndarray, quality: int = 95) -> None:
    """Write *frame* as JPEG, raising when OpenCV refuses."""
    ok, buf = cv2.imencode(".jpg", np.ascontiguousarray(frame), [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise OSError(f"could not encode frame for {path}")
    path.write_bytes(buf.tobytes())


def frame_filename(index: int) -> str:
    """ffmpeg image sequences are 1-based."""
    return FRAME_PATTERN % (index + 1)


def collect_frame_paths(frame_dir: Path) -> List[Path]:
    """Return sorted frame paths (``frame_*.jpg``) in *frame_dir*."""
    return sorted(p for p in Path(frame_dir).glob("frame_*.jpg") if p.is_file())


# ---------------------------------------------------------------------------
# Extraction-rate policy
# ---------------------------------------------------------------------------


def determine_extraction_fps(source_fps: float, duration: float) -> float:
    """Pick the extraction rate for a clip of *duration* seconds."""

    fps = source_fps if source_fps and source_fps > 0 else MAX_EXTRACTION_FPS
    if duration <= 30.0:
        return min(fps, MAX_EXTRACTION_FPS)
    if duration <= 60.0:
        return min(fps, REDUCED_FPS_15)
    if duration <= 120.0:
        return min(fps, REDUCED_FPS_10)
    return min(fps, REDUCED_FPS_5)


def is_duration_recommended(duration: float) -> bool:
    return duration <= MAX_RECOMMENDED_DURATION


# ---------------------------------------------------------------------------
# ffmpeg toolkit
# ---------------------------------------------------------------------------


def _parse_rate(value: Optional[str]) -> Optional[float]:
    if not value or "/" not in value:
        try:
            return float(value) if value else None
        except ValueError:
            return None
    num, den = value.split("/", 1)
    try:
        return float(num) / float(den) if float(den) != 0 else None
    except ValueError:
        return None


class FfmpegToolkit:
    """Thin wrapper around the ffmpeg/ffprobe executables."""

    def __init__(self, ffmpeg_bin: str = "ffmpeg", ffprobe_bin: str = "ffprobe") -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "FfmpegToolkit":
        ff = cfg.get("ffmpeg") or {}
        return cls(str(ff.get("bin", "ffmpeg")), str(ff.get("probe", "ffprobe")))

    # -- process helpers ---------------------------------------------------

    def _resolve(self, binary: str) -> str:
        found = shutil.which(binary)
        if not found:
            raise ToolInvocationError(f"{binary} not found on PATH")
        return found

    def _run(self, cmd: List[str]) -> str:
        """Execute *cmd* returning stdout; non-zero exit raises ToolInvocationError."""

        LOG.debug("command: %s", " ".join(cmd))
        try:
            res = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise ToolInvocationError(f"could not launch {cmd[0]}: {exc}") from exc
        if res.returncode != 0:
            stderr = (res.stderr or "").strip()
            LOG.warning("%s failed (%s): %s", Path(cmd[0]).name, res.returncode, stderr[-2000:])
            raise ToolInvocationError(
                f"{Path(cmd[0]).name} exited with status {res.returncode}",
                returncode=res.returncode,
                stderr=stderr,
            )
        return res.stdout or ""

    # -- probe ---------------------------------------------------------------

    def probe(self, path: Path) -> VideoProbe:
        path = Path(path)
        if not path.is_file():
            raise ToolInvocationError(f"input video not found: {path}")
        size = path.stat().st_size
        out = self._run(
            [
                self._resolve(self.ffprobe_bin),
                "-v", "error",
                "-print_format", "json",
                "-show_format",
                "-show_streams",
                str(path),
            ]
        )
        try:
            meta = json.loads(out or "{}")
        except json.JSONDecodeError:
            meta = {}
        streams = meta.get("streams") or []
        vstreams = [s for s in streams if s.get("codec_type") == "video"]
        has_audio = any(s.get("codec_type") == "audio" for s in streams)
        if not vstreams:
            return self._probe_opencv(path, has_audio, size)
        v = vstreams[0]
        fps = _parse_rate(v.get("avg_frame_rate")) or _parse_rate(v.get("r_frame_rate")) or 0.0
        try:
            duration = float((meta.get("format") or {}).get("duration") or v.get("duration") or 0.0)
        except (TypeError, ValueError):
            duration = 0.0
        return VideoProbe(
            duration=duration,
            fps=float(fps),
            width=int(v.get("width") or 0),
            height=int(v.get("height") or 0),
            has_audio=has_audio,
            size_bytes=size,
        )

    def _probe_opencv(self, path: Path, has_audio: bool, size: int) -> VideoProbe:
        cap = cv2.VideoCapture(str(path))
        if not cap.isOpened():
            raise ToolInvocationError(f"no video stream found in {path}")
        try:
            fps = float(cap.get(cv2.CAP_PROP_FPS) or 0.0)
            count = int(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
            width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
            height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
        finally:
            cap.release()
        return VideoProbe(
            duration=(count / fps) if fps > 0 else 0.0,
            fps=fps,
            width=width,
            height=height,
            has_audio=has_audio,
            size_bytes=size,
        )

    # -- extraction ----------------------------------------------------------

    def extraction_command(
        self, source: Path, fps: float, source_fps: float, out_dir: Path, qscale: int = 2
    ) -> List[str]:
        cmd = [self._resolve(self.ffmpeg_bin), "-i", str(source), "-qscale:v", str(int(qscale))]
        if source_fps <= 0 or fps < source_fps:
            cmd += ["-vf", f"fps={fps:.3f}"]
        cmd += ["-vsync", "0", "-y", str(Path(out_dir) / FRAME_PATTERN)]
        return cmd

    def extract_frames(
        self,
        source: Path,
        fps: float,
        out_dir: Path,
        *,
        source_fps: float = 0.0,
        qscale: int = 2,
    ) -> List[Frame]:
        """Extract every frame of *source* at *fps* into *out_dir*, in order."""

        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        LOG.info("extracting frames from %s at %.2f fps", Path(source).name, fps)
        self._run(self.extraction_command(Path(source), fps, source_fps, out_dir, qscale))
        paths = collect_frame_paths(out_dir)
        if not paths:
            raise ToolInvocationError(f"no frames extracted from {Path(source).name}")
        step = 1.0 / fps if fps > 0 else 0.0
        frames = [Frame(index=i, timestamp=i * step, path=p) for i, p in enumerate(paths)]
        LOG.info("extracted %d frames", len(frames))
        return frames

    # -- reassembly ----------------------------------------------------------

    def reassembly_command(
        self,
        frame_dir: Path,
        original: Path,
        fps: float,
        output_path: Path,
        *,
        crf: int = 18,
        preset: str = "slow",
        target_fps: Optional[float] = None,
    ) -> List[str]:
        cmd = [
            self._resolve(self.ffmpeg_bin),
            "-framerate", f"{fps:.3f}",
            "-i", str(Path(frame_dir) / FRAME_PATTERN),
            "-i", str(original),
            "-map", "0:v",
            "-map", "1:a?",
        ]
        if target_fps and target_fps > fps:
            cmd += ["-vf", f"minterpolate=fps={target_fps:.3f}:mi_mode=blend"]
        cmd += [
            "-c:v", "libx264",
            "-crf", str(int(crf)),
            "-preset", preset,
            "-pix_fmt", "yuv420p",
            "-c:a", "copy",
            "-movflags", "+faststart",
            "-y", str(output_path),
        ]
        return cmd

    def reassemble(
        self,
        frame_dir: Path,
        original: Path,
        fps: float,
        output_path: Path,
        *,
        crf: int = 18,
        preset: str = "slow",
        target_fps: Optional[float] = None,
    ) -> Path:
        """Encode the frames in *frame_dir* and mux the audio of *original* unmodified."""

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        LOG.info("reassembling %s at %.2f fps", output_path.name, fps)
        self._run(
            self.reassembly_command(
                frame_dir, original, fps, output_path, crf=crf, preset=preset, target_fps=target_fps
            )
        )
        if not output_path.is_file() or output_path.stat().st_size == 0:
            raise ToolInvocationError(f"reassembly produced no output at {output_path}")
        return output_path


def frames_from_arrays(arrays: Sequence[np.ndarray], fps: float = 30.0) -> List[Frame]:
    """Wrap in-memory images as an ordered frame sequence."""
    step = 1.0 / fps if fps > 0 else 0.0
    return [Frame(index=i, timestamp=i * step, data=np.asarray(a, dtype=np.uint8)) for i, a in enumerate(arrays)]


__all__ = [
    "FRAME_PATTERN",
    "MAX_RECOMMENDED_DURATION",
    "Frame",
    "VideoProbe",
    "FfmpegToolkit",
    "read_image",
    "write_image",
    "frame_filename",
    "collect_frame_paths",
    "determine_extraction_fps",
    "is_duration_recommended",
    "frames_from_arrays",
]
