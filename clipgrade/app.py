# -*- coding: utf-8 -*-
"""
Command-line entry point.
Run:
  python -m clipgrade.app --in clip.mp4 --out clip_enhanced.mp4
Estimate only:
  python -m clipgrade.app --in clip.mp4 --estimate
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from clipgrade.core import pipeline
from clipgrade.core.errors import ClipgradeError, NotCostEffectiveError
from clipgrade.core.frames import FfmpegToolkit, is_duration_recommended
from clipgrade.core.utils import apply_cli_overrides, load_config_file, prepare_config

LOG = logging.getLogger("clipgrade.app")


def _apply_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Map CLI flags to config override keys."""
    overrides: Dict[str, Any] = {}
    if args.threshold is not None:
        overrides["grouping.similarity_threshold"] = float(args.threshold)
    if args.max_iterations is not None:
        overrides["enhance.max_iterations"] = int(args.max_iterations)
    if args.concurrency is not None:
        overrides["enhance.concurrency"] = int(args.concurrency)
    if args.fps is not None:
        overrides["extract.frame_rate"] = float(args.fps)
    if args.feedback:
        overrides["enhance.user_feedback"] = args.feedback
    if args.export_luts:
        overrides["output.export_luts"] = True
    return overrides


def _run_estimate(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    probe = FfmpegToolkit.from_config(cfg).probe(Path(args.input))
    seconds = pipeline.estimate_processing_seconds(probe.duration, probe.fps)
    LOG.info("%s: %.1fs at %.2f fps -> roughly %.0fs of processing",
             Path(args.input).name, probe.duration, probe.fps, seconds)
    if not is_duration_recommended(probe.duration):
        LOG.warning("clips longer than 120s are not recommended")
    return 0


def _run_cli(args: argparse.Namespace) -> int:
    """CLI execution path."""
    cfg = load_config_file(Path(args.config) if args.config else None)
    cfg = prepare_config(apply_cli_overrides(cfg, _apply_overrides(args)))
    if args.estimate:
        try:
            return _run_estimate(args, cfg)
        except ClipgradeError as exc:
            LOG.error("estimate failed: %s", exc)
            return 1

    # Import lazily so --estimate runs without an API client.
    from clipgrade.services.openai_services import build_services

    try:
        enhancer, critic, surgeon = build_services(cfg)
        result = pipeline.enhance_video(
            Path(args.input),
            cfg,
            enhancer=enhancer,
            critic=critic,
            surgeon=None if args.no_surgical else surgeon,
            output_path=Path(args.out) if args.out else None,
            progress_cb=lambda frac, msg: LOG.info("%03d%% %s", int(frac * 100), msg),
        )
    except NotCostEffectiveError as exc:
        LOG.error("%s", exc)
        return 2
    except ClipgradeError as exc:
        LOG.error("enhancement failed: %s", exc)
        return 1
    for notice in result.notices:
        LOG.warning("group %d degraded (%s): %s", notice.group_index, notice.reason.value, notice.detail)
    LOG.info("wrote %s (%d frames, %d groups)", result.output_path, result.frame_count, result.group_count)
    if result.manifest_path:
        LOG.info("manifest: %s", result.manifest_path)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="clipgrade AI video enhancer")
    parser.add_argument("--in", dest="input", required=True, help="Input video path")
    parser.add_argument("--out", dest="out", help="Output video path")
    parser.add_argument("--config", dest="config", default="", help="Path to config.yaml")
    parser.add_argument("--threshold", dest="threshold", type=float, help="Group similarity threshold (0-1]")
    parser.add_argument("--max-iterations", dest="max_iterations", type=int, help="Enhance/critique rounds per group")
    parser.add_argument("--concurrency", dest="concurrency", type=int, help="Groups enhanced in parallel")
    parser.add_argument("--fps", dest="fps", type=float, help="Extraction frame rate override")
    parser.add_argument("--feedback", dest="feedback", default="", help="Extra guidance for the enhancer")
    parser.add_argument("--no-surgical", dest="no_surgical", action="store_true", help="Disable masked edits")
    parser.add_argument("--export-luts", dest="export_luts", action="store_true", help="Write per-group .cube LUTs")
    parser.add_argument("--estimate", action="store_true", help="Print a processing-time estimate and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    return _run_cli(args)


if __name__ == "__main__":
    sys.exit(main())
