"""End-to-end video enhancement pipeline.

Stages
------
1. **Configuration & probe** – merge config, probe the input, and refuse
   inputs over the duration/size limits before any frame is extracted.
2. **Extraction** – pick the extraction rate (explicit or by duration ladder)
   and let ffmpeg write every frame to the work directory.
3. **Grouping** – split the sequence into visually consistent groups by
   histogram correlation and pick one representative per group.
4. **Enhancement** – a bounded worker pool runs the enhance/critique loop on
   each representative, builds the group's color transform from the accepted
   edit, and writes every frame of the group at its own sequence position.
5. **Reassembly** – once every group is done, encode the edited frames and
   copy the source audio stream unmodified.
6. **Manifest** – optional ``.cube`` LUTs per group and a JSON run manifest.

Group-local failures are reported as :class:`GroupDegradationNotice` entries
on the result.  Run-level failures (ffmpeg, limits, config, writing frames)
propagate as a single :class:`ClipgradeError` or ``OSError``.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
import logging
from pathlib import Path
import shutil
import tempfile
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import cv2
import numpy as np

from clipgrade.core.errors import (
    DegradationReason,
    GeometryMismatchError,
    GroupDegradationNotice,
    NotCostEffectiveError,
)
from clipgrade.core.frames import (
    FfmpegToolkit,
    Frame,
    VideoProbe,
    determine_extraction_fps,
    frame_filename,
    write_image,
)
from clipgrade.core.grouping import FrameGroup, group_frames, spans_to_metadata
from clipgrade.core.orchestrator import EnhancementOrchestrator, EnhancementPolicy
from clipgrade.core.retry import CallGate, RetryPolicy
from clipgrade.core.selector import assign_representatives
from clipgrade.core.transform import ColorTransform, apply_transform, build_transform, identity_transform
from clipgrade.core.utils import (
    Deadline,
    load_config_file,
    prepare_config,
    stable_config_signature,
    write_json,
)
from clipgrade.services.base import ImageCritic, ImageEnhancer, SurgicalEditor, region_mask


LOG = logging.getLogger("clipgrade.pipeline")

ProgressCb = Optional[Callable[[float, str], None]]

_BYTES_PER_MB = 1024.0 * 1024.0

# Rough cost model used for estimates shown before a run.
_FRAMES_PER_GROUP_ESTIMATE = 30.0
_SECONDS_PER_GROUP_ESTIMATE = 15.0
_OVERHEAD_SECONDS_ESTIMATE = 15.0


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PipelineContext:
    """Configuration, paths and run-wide shared objects."""

    cfg: Dict[str, Any]
    source: Path
    output_path: Path
    output_dir: Path
    work_dir: Path
    frames_dir: Path
    edited_dir: Path
    cfg_signature: str
    deadline: Deadline
    gate: CallGate
    retry: RetryPolicy
    policy: EnhancementPolicy


@dataclass(frozen=True)
class GroupResult:
    index: int
    start: int
    end: int
    representative: Optional[int]
    phase: str
    score: Optional[float] = None
    iterations: int = 0
    applied_issues: Tuple[str, ...] = ()
    identity_transform: bool = True
    observed_nodes: int = 0
    lut_path: Optional[str] = None
    notices: Tuple[GroupDegradationNotice, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group": self.index,
            "start": self.start,
            "end": self.end,
            "representative": self.representative,
            "phase": self.phase,
            "score": self.score,
            "iterations": self.iterations,
            "applied_issues": list(self.applied_issues),
            "identity_transform": self.identity_transform,
            "observed_nodes": self.observed_nodes,
            "lut_path": self.lut_path,
            "notices": [n.to_dict() for n in self.notices],
        }


@dataclass
class EnhancementResult:
    output_path: Path
    notices: List[GroupDegradationNotice] = field(default_factory=list)
    groups: List[GroupResult] = field(default_factory=list)
    frame_count: int = 0
    group_count: int = 0
    extraction_fps: float = 0.0
    wall_seconds: float = 0.0
    manifest_path: Optional[Path] = None

    @property
    def degraded(self) -> bool:
        return bool(self.notices)


# ---------------------------------------------------------------------------
# Configuration & limits
# ---------------------------------------------------------------------------


def _initialise_context(
    source: Path,
    config: Optional[Mapping[str, Any]],
    output_path: Optional[Path],
    clock: Callable[[], float],
) -> PipelineContext:
    cfg = prepare_config(config if config is not None else load_config_file())
    output_cfg = cfg.get("output") or {}
    output_dir = Path(output_cfg.get("folder", "clipgrade_outputs"))
    output_dir.mkdir(parents=True, exist_ok=True)
    final_path = Path(output_path) if output_path else output_dir / f"{source.stem}_enhanced.mp4"

    work_dir = Path(tempfile.mkdtemp(prefix=f"{source.stem}_", dir=str(output_dir)))
    frames_dir = work_dir / "frames"
    edited_dir = work_dir / "edited"
    frames_dir.mkdir()
    edited_dir.mkdir()

    limits = cfg.get("limits") or {}
    services = cfg.get("services") or {}
    return PipelineContext(
        cfg=cfg,
        source=source,
        output_path=final_path,
        output_dir=output_dir,
        work_dir=work_dir,
        frames_dir=frames_dir,
        edited_dir=edited_dir,
        cfg_signature=stable_config_signature(cfg),
        deadline=Deadline(float(limits.get("time_budget_seconds", 900.0)), clock=clock),
        gate=CallGate(int(services.get("max_concurrent_calls", 5))),
        retry=RetryPolicy.from_config(cfg),
        policy=EnhancementPolicy.from_config(cfg),
    )


def check_cost_effective(probe: VideoProbe, cfg: Mapping[str, Any]) -> None:
    """Raise :class:`NotCostEffectiveError` when *probe* exceeds the limits."""

    limits = cfg.get("limits") or {}
    max_duration = float(limits.get("max_duration_seconds", 120.0))
    max_mb = float(limits.get("max_file_mb", 1024.0))
    if probe.duration > max_duration:
        raise NotCostEffectiveError(
            f"video is {probe.duration:.1f}s long; the limit is {max_duration:.0f}s"
        )
    size_mb = probe.size_bytes / _BYTES_PER_MB
    if size_mb > max_mb:
        raise NotCostEffectiveError(f"video is {size_mb:.1f} MB; the limit is {max_mb:.0f} MB")


def estimate_processing_seconds(duration: float, fps: float = 30.0) -> float:
    """Rough wall time: ~30 frames per group, ~15 s per group, plus 15 s overhead."""

    total_frames = duration * determine_extraction_fps(fps, duration)
    groups = max(1.0, total_frames / _FRAMES_PER_GROUP_ESTIMATE)
    return groups * _SECONDS_PER_GROUP_ESTIMATE + _OVERHEAD_SECONDS_ESTIMATE


# ---------------------------------------------------------------------------
# Per-group processing
# ---------------------------------------------------------------------------


def _write_frame(context: PipelineContext, frame: Frame, pixels: Optional[np.ndarray] = None) -> None:
    target = context.edited_dir / frame_filename(frame.index)
    if pixels is None:
        if frame.path is not None:
            shutil.copyfile(frame.path, target)
            return
        pixels = frame.pixels()
    write_image(target, pixels)


def _pass_through(context: PipelineContext, frames: Sequence[Frame], group: FrameGroup) -> None:
    for idx in group.frame_indices():
        _write_frame(context, frames[idx])


def _sampling_mask(shape: Tuple[int, ...], regions: Sequence[str]) -> Optional[np.ndarray]:
    """Pixels the transform may learn from: everything outside surgical edits."""

    if not regions:
        return None
    height, width = shape[:2]
    edited = np.zeros((height, width), dtype=bool)
    for region in regions:
        edited |= region_mask(width, height, region) > 0
    return ~edited


def _export_lut(context: PipelineContext, group: FrameGroup, transform: ColorTransform) -> Optional[str]:
    if not (context.cfg.get("output") or {}).get("export_luts") or transform.is_identity:
        return None
    path = context.output_dir / "luts" / f"{context.source.stem}_group_{group.index:04d}.cube"
    transform.write_cube(path, title=f"{context.source.stem} group {group.index}")
    return str(path)


def _process_group(
    context: PipelineContext,
    frames: Sequence[Frame],
    group: FrameGroup,
    orchestrator: EnhancementOrchestrator,
) -> GroupResult:
    if context.deadline.expired():
        LOG.warning("group %d not started before the time budget ran out; passing through", group.index)
        _pass_through(context, frames, group)
        notice = GroupDegradationNotice(group.index, DegradationReason.DEADLINE, "group not started")
        return GroupResult(group.index, group.start, group.end, group.representative, "skipped",
                           notices=(notice,))

    rep_index = group.representative if group.representative is not None else group.start
    original = frames[rep_index].pixels()
    outcome = orchestrator.run(group.index, original)
    notices = list(outcome.notices)

    transform_cfg = context.cfg.get("transform") or {}
    levels = int(transform_cfg.get("levels", 32))
    transform = identity_transform(levels)
    final = outcome.final
    if outcome.enhanced:
        try:
            transform = build_transform(
                original, outcome.global_edit, levels=levels,
                sample_step=int(transform_cfg.get("sample_step", 2)),
                mask=_sampling_mask(original.shape, outcome.surgical_regions),
            )
        except GeometryMismatchError as exc:
            LOG.warning("group %d: %s; other frames left unchanged", group.index, exc)
            notices.append(GroupDegradationNotice(group.index, DegradationReason.GEOMETRY_MISMATCH, str(exc)))
        if final.shape != original.shape:
            height, width = original.shape[:2]
            final = cv2.resize(final, (width, height), interpolation=cv2.INTER_AREA)

    for idx in group.frame_indices():
        if idx == rep_index and final is not None:
            _write_frame(context, frames[idx], final)
        elif transform.is_identity:
            _write_frame(context, frames[idx])
        else:
            _write_frame(context, frames[idx], apply_transform(transform, frames[idx].pixels()))

    lut_path = _export_lut(context, group, transform)
    LOG.info("group %d [%d, %d): %s after %d iterations (score %s)",
             group.index, group.start, group.end, outcome.phase.value, outcome.iterations,
             "n/a" if outcome.score is None else f"{outcome.score:.2f}")
    return GroupResult(
        index=group.index,
        start=group.start,
        end=group.end,
        representative=rep_index,
        phase=outcome.phase.value,
        score=outcome.score,
        iterations=outcome.iterations,
        applied_issues=outcome.applied_issues,
        identity_transform=transform.is_identity,
        observed_nodes=transform.observed_nodes,
        lut_path=lut_path,
        notices=tuple(notices),
    )


def _enhance_groups(
    context: PipelineContext,
    frames: Sequence[Frame],
    groups: Sequence[FrameGroup],
    orchestrator: EnhancementOrchestrator,
    progress_cb: Callable[[float, str], None],
) -> List[GroupResult]:
    """Run every group on a bounded pool; returns once all groups finished."""

    workers = int((context.cfg.get("enhance") or {}).get("concurrency", 5))
    results: List[GroupResult] = []
    with ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="clipgrade-group") as pool:
        futures: Dict[Future, FrameGroup] = {
            pool.submit(_process_group, context, frames, group, orchestrator): group for group in groups
        }
        try:
            for done, future in enumerate(as_completed(futures), start=1):
                results.append(future.result())
                progress_cb(0.2 + 0.7 * done / len(futures), f"enhanced {done}/{len(futures)} groups")
        except BaseException:
            for future in futures:
                future.cancel()
            raise
    return sorted(results, key=lambda r: r.index)


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


def _build_manifest(
    context: PipelineContext,
    probe: VideoProbe,
    fps: float,
    groups: Sequence[FrameGroup],
    results: Sequence[GroupResult],
    wall_seconds: float,
) -> Path:
    manifest = {
        "schema_version": "1.0",
        "source": {
            "path": str(context.source),
            "duration_sec": probe.duration,
            "fps": probe.fps,
            "resolution": {"width": probe.width, "height": probe.height},
            "has_audio": probe.has_audio,
            "size_bytes": probe.size_bytes,
        },
        "config_signature": context.cfg_signature,
        "extraction_fps": fps,
        "groups": spans_to_metadata(groups),
        "results": [r.to_dict() for r in results],
        "output": str(context.output_path),
        "wall_seconds": wall_seconds,
    }
    manifest_path = context.output_dir / f"{context.source.stem}_manifest.json"
    write_json(manifest_path, manifest)
    return manifest_path


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


def enhance_video(
    input_path: Path,
    config: Optional[Mapping[str, Any]] = None,
    *,
    enhancer: ImageEnhancer,
    critic: ImageCritic,
    surgeon: Optional[SurgicalEditor] = None,
    output_path: Optional[Path] = None,
    toolkit: Optional[FfmpegToolkit] = None,
    progress_cb: ProgressCb = None,
    clock: Optional[Callable[[], float]] = None,
) -> EnhancementResult:
    """Enhance *input_path* and return the output path with any degradation notices."""

    progress_cb = progress_cb or (lambda frac, msg: None)
    clock = clock or time.monotonic
    source = Path(input_path)
    context = _initialise_context(source, config, output_path, clock)
    toolkit = toolkit or FfmpegToolkit.from_config(context.cfg)
    keep_work = bool((context.cfg.get("output") or {}).get("keep_work_dir"))

    try:
        progress_cb(0.02, "probing source")
        probe = toolkit.probe(source)
        check_cost_effective(probe, context.cfg)

        extract_cfg = context.cfg.get("extract") or {}
        fps = extract_cfg.get("frame_rate") or determine_extraction_fps(probe.fps, probe.duration)
        fps = float(fps)
        progress_cb(0.05, f"extracting frames at {fps:.2f} fps")
        frames = toolkit.extract_frames(
            source, fps, context.frames_dir,
            source_fps=probe.fps, qscale=int(extract_cfg.get("jpeg_qscale", 2)),
        )

        grouping_cfg = context.cfg.get("grouping") or {}
        progress_cb(0.12, f"grouping {len(frames)} frames")
        groups = group_frames(
            frames,
            float(grouping_cfg.get("similarity_threshold", 0.92)),
            int(grouping_cfg.get("histogram_bins", 32)),
        )
        assign_representatives(groups, frames, str(grouping_cfg.get("representative", "midpoint")))

        orchestrator = EnhancementOrchestrator(
            enhancer, critic, surgeon,
            policy=context.policy, retry=context.retry, gate=context.gate, deadline=context.deadline,
        )
        progress_cb(0.2, f"enhancing {len(groups)} groups")
        results = _enhance_groups(context, frames, groups, orchestrator, progress_cb)

        reassemble_cfg = context.cfg.get("reassemble") or {}
        target_fps = probe.fps if reassemble_cfg.get("interpolate") and probe.fps > fps else None
        progress_cb(0.92, "reassembling video")
        final_path = toolkit.reassemble(
            context.edited_dir, source, fps, context.output_path,
            crf=int(reassemble_cfg.get("crf", 18)),
            preset=str(reassemble_cfg.get("preset", "slow")),
            target_fps=target_fps,
        )

        wall = context.deadline.elapsed()
        notices = [n for r in results for n in r.notices]
        manifest_path = None
        if (context.cfg.get("output") or {}).get("save_manifest", True):
            manifest_path = _build_manifest(context, probe, fps, groups, results, wall)
        progress_cb(1.0, "enhancement complete")
        LOG.info("enhanced %d frames in %d groups in %.1fs (%d notices) -> %s",
                 len(frames), len(groups), wall, len(notices), final_path)
        return EnhancementResult(
            output_path=Path(final_path),
            notices=notices,
            groups=list(results),
            frame_count=len(frames),
            group_count=len(groups),
            extraction_fps=fps,
            wall_seconds=wall,
            manifest_path=manifest_path,
        )
    finally:
        if not keep_work:
            shutil.rmtree(context.work_dir, ignore_errors=True)


__all__ = [
    "PipelineContext",
    "GroupResult",
    "EnhancementResult",
    "check_cost_effective",
    "enhance_video",
    "estimate_processing_seconds",
]
