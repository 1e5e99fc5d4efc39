"""Utility helpers shared across the clipgrade pipeline.

This module centralises configuration loading/validation, path normalisation,
the run deadline, and manifest/JSON helpers.  The goal is to keep the core
pipeline lean while providing clearly documented building blocks that are easy
to unit test.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import json
import logging
from pathlib import Path
import time
from typing import Any, Callable, Dict, Mapping, MutableMapping, Optional, Tuple

from clipgrade.core.errors import ConfigError


LOG = logging.getLogger("clipgrade.utils")


# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"


# ---------------------------------------------------------------------------
# Config helpers
# ---------------------------------------------------------------------------

DEFAULT_INSTRUCTION = (
    "Enhance this video frame to look like it was shot by a professional "
    "cinematographer on a high-end camera. Improve exposure, dynamic range, "
    "white balance, color grading, clarity and micro-contrast so the result "
    "looks near-photographic and natural. Do NOT change the composition: keep "
    "every subject, object, edge and the framing exactly where it is, and keep "
    "the same resolution and aspect ratio. Do not add, remove or move anything."
)

_DEFAULT_CONFIG: Dict[str, Any] = {
    "limits": {
        "max_duration_seconds": 120.0,
        "max_file_mb": 1024.0,
        "time_budget_seconds": 900.0,
    },
    "extract": {"frame_rate": None, "jpeg_qscale": 2},
    "grouping": {
        "similarity_threshold": 0.92,
        "histogram_bins": 32,
        "representative": "midpoint",
    },
    "enhance": {
        "max_iterations": 3,
        "quality_target": 8.5,
        "concurrency": 5,
        "instruction": DEFAULT_INSTRUCTION,
        "user_feedback": "",
    },
    "retry": {"attempts": 2, "backoff_seconds": 2.0, "rate_limit_backoff_seconds": 30.0},
    "transform": {"levels": 32, "sample_step": 2},
    "reassemble": {"crf": 18, "preset": "slow", "interpolate": False},
    "services": {
        "enhance_model": "gpt-image-1",
        "critique_model": "gpt-4.1-mini",
        "surgical_model": "gpt-image-1",
        "max_concurrent_calls": 5,
        "timeout_sec": 120.0,
    },
    "ffmpeg": {"bin": "ffmpeg", "probe": "ffprobe"},
    "output": {
        "folder": "clipgrade_outputs",
        "save_manifest": True,
        "export_luts": False,
        "keep_work_dir": False,
    },
}

# Flat keys accepted from the job layer, mapped onto the nested config.
CONFIG_ALIASES: Dict[str, str] = {
    "maxDurationSeconds": "limits.max_duration_seconds",
    "extractionFrameRate": "extract.frame_rate",
    "groupSimilarityThreshold": "grouping.similarity_threshold",
    "maxIterationsPerGroup": "enhance.max_iterations",
    "qualityScoreTarget": "enhance.quality_target",
    "concurrency": "enhance.concurrency",
}

_REPRESENTATIVE_STRATEGIES = ("midpoint", "sharpest")


def default_config() -> Dict[str, Any]:
    return json.loads(json.dumps(_DEFAULT_CONFIG))  # deep copy via JSON


def load_config_file(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load a YAML configuration file if it exists, otherwise return defaults."""

    import yaml  # Local import to keep the module importable during tests

    cfg_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not cfg_path.exists():
        LOG.warning("config not found at %s; using defaults", cfg_path)
        return default_config()
    try:
        with cfg_path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"could not parse config {cfg_path}: {exc}") from exc
    if not isinstance(loaded, Mapping):
        raise ConfigError(f"config {cfg_path} must contain a mapping at the top level")
    return merge_dicts(_DEFAULT_CONFIG, loaded)


def merge_dicts(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge *override* into *base* returning a new dictionary."""

    out: Dict[str, Any] = json.loads(json.dumps(base))  # deep copy
    stack: list[Tuple[MutableMapping[str, Any], Mapping[str, Any]]] = [(out, override)]
    while stack:
        dest, src = stack.pop()
        for key, value in src.items():
            if isinstance(value, Mapping) and isinstance(dest.get(key), MutableMapping):
                stack.append((dest[key], value))  # type: ignore[arg-type]
            else:
                dest[key] = value  # type: ignore[index]
    return out


def _clamp(value: Any, lo: float, hi: float, default: float, *, key: str) -> float:
    """Clamp numeric config values with logging."""

    try:
        v = float(value)
    except (TypeError, ValueError):
        LOG.warning("config[%s]=%r invalid; using default %.3f", key, value, default)
        return float(default)
    if v < lo:
        LOG.warning("config[%s]=%.3f below %.3f; clamped", key, v, lo)
        return float(lo)
    if v > hi:
        LOG.warning("config[%s]=%.3f above %.3f; clamped", key, v, hi)
        return float(hi)
    return v


def apply_cli_overrides(cfg: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a new config with dot-notation overrides applied."""

    out = json.loads(json.dumps(cfg))
    for dotted_key, value in overrides.items():
        parts = dotted_key.split(".")
        cursor: Any = out
        for part in parts[:-1]:
            cursor = cursor.setdefault(part, {})  # type: ignore[assignment]
        cursor[parts[-1]] = value  # type: ignore[index]
    return out


def _apply_aliases(raw_cfg: Mapping[str, Any]) -> Dict[str, Any]:
    nested = {k: v for k, v in raw_cfg.items() if k not in CONFIG_ALIASES}
    flat = {CONFIG_ALIASES[k]: v for k, v in raw_cfg.items() if k in CONFIG_ALIASES}
    return apply_cli_overrides(nested, flat) if flat else dict(nested)


def prepare_config(raw_cfg: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Validate and normalise configuration:

    * Map the flat job-layer keys (``maxIterationsPerGroup`` ...) onto blocks.
    * Merge with defaults.
    * Clamp numeric ranges.
    * Normalise the output folder to an absolute path.
    """

    cfg = merge_dicts(_DEFAULT_CONFIG, _apply_aliases(raw_cfg or {}))

    limits = cfg.setdefault("limits", {})
    limits["max_duration_seconds"] = _clamp(
        limits.get("max_duration_seconds", 120.0), 1.0, 24 * 3600.0, 120.0,
        key="limits.max_duration_seconds",
    )
    limits["max_file_mb"] = _clamp(
        limits.get("max_file_mb", 1024.0), 1.0, 1e6, 1024.0, key="limits.max_file_mb"
    )
    limits["time_budget_seconds"] = _clamp(
        limits.get("time_budget_seconds", 900.0), 1.0, 7 * 24 * 3600.0, 900.0,
        key="limits.time_budget_seconds",
    )

    extract = cfg.setdefault("extract", {})
    if extract.get("frame_rate") is not None:
        extract["frame_rate"] = _clamp(extract["frame_rate"], 0.1, 120.0, 30.0, key="extract.frame_rate")
    extract["jpeg_qscale"] = int(_clamp(extract.get("jpeg_qscale", 2), 1, 31, 2, key="extract.jpeg_qscale"))

    grouping = cfg.setdefault("grouping", {})
    grouping["similarity_threshold"] = _clamp(
        grouping.get("similarity_threshold", 0.92), 0.0, 1.0, 0.92,
        key="grouping.similarity_threshold",
    )
    grouping["histogram_bins"] = int(
        _clamp(grouping.get("histogram_bins", 32), 2, 256, 32, key="grouping.histogram_bins")
    )
    strategy = str(grouping.get("representative", "midpoint")).lower()
    if strategy not in _REPRESENTATIVE_STRATEGIES:
        LOG.warning("config[grouping.representative]=%r unknown; using midpoint", strategy)
        strategy = "midpoint"
    grouping["representative"] = strategy

    enhance = cfg.setdefault("enhance", {})
    enhance["max_iterations"] = max(1, int(enhance.get("max_iterations", 3)))
    enhance["quality_target"] = _clamp(
        enhance.get("quality_target", 8.5), 0.0, 10.0, 8.5, key="enhance.quality_target"
    )
    enhance["concurrency"] = max(1, int(enhance.get("concurrency", 5)))
    enhance["instruction"] = str(enhance.get("instruction") or DEFAULT_INSTRUCTION)
    enhance["user_feedback"] = str(enhance.get("user_feedback") or "")

    retry = cfg.setdefault("retry", {})
    retry["attempts"] = max(1, int(retry.get("attempts", 2)))
    retry["backoff_seconds"] = _clamp(
        retry.get("backoff_seconds", 2.0), 0.0, 600.0, 2.0, key="retry.backoff_seconds"
    )
    retry["rate_limit_backoff_seconds"] = _clamp(
        retry.get("rate_limit_backoff_seconds", 30.0), 0.0, 600.0, 30.0,
        key="retry.rate_limit_backoff_seconds",
    )

    transform = cfg.setdefault("transform", {})
    transform["levels"] = int(_clamp(transform.get("levels", 32), 2, 256, 32, key="transform.levels"))
    transform["sample_step"] = max(1, int(transform.get("sample_step", 2)))

    reassemble = cfg.setdefault("reassemble", {})
    reassemble["crf"] = int(_clamp(reassemble.get("crf", 18), 0, 51, 18, key="reassemble.crf"))
    reassemble["preset"] = str(reassemble.get("preset", "slow"))
    reassemble["interpolate"] = bool(reassemble.get("interpolate", False))

    services = cfg.setdefault("services", {})
    services["max_concurrent_calls"] = max(1, int(services.get("max_concurrent_calls", 5)))
    services["timeout_sec"] = _clamp(
        services.get("timeout_sec", 120.0), 1.0, 3600.0, 120.0, key="services.timeout_sec"
    )

    output = cfg.setdefault("output", {})
    output["folder"] = str(as_absolute(output.get("folder", "clipgrade_outputs"), Path.cwd()))
    output["save_manifest"] = bool(output.get("save_manifest", True))
    output["export_luts"] = bool(output.get("export_luts", False))
    output["keep_work_dir"] = bool(output.get("keep_work_dir", False))

    return cfg


def stable_config_signature(cfg: Mapping[str, Any]) -> str:
    """Return a deterministic hash of the configuration dictionary."""

    payload = json.dumps(cfg, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def write_json(path: Path, payload: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2)
    tmp.replace(path)


def as_absolute(path: str | Path, base: Optional[Path] = None) -> Path:
    p = Path(path).expanduser()
    if p.is_absolute():
        return p
    base = base or PROJECT_ROOT
    return (base / p).resolve()


# ---------------------------------------------------------------------------
# Wall-clock budget
# ---------------------------------------------------------------------------


@dataclass
class Deadline:
    """Monotonic wall-clock budget shared by every worker of one run."""

    seconds: float
    clock: Callable[[], float] = time.monotonic
    started: float = field(init=False)

    def __post_init__(self) -> None:
        self.started = self.clock()

    def elapsed(self) -> float:
        return self.clock() - self.started

    def remaining(self) -> float:
        return max(0.0, self.seconds - self.elapsed())

    def expired(self) -> bool:
        return self.elapsed() >= self.seconds


__all__ = [
    "PROJECT_ROOT",
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_INSTRUCTION",
    "CONFIG_ALIASES",
    "default_config",
    "load_config_file",
    "merge_dicts",
    "prepare_config",
    "apply_cli_overrides",
    "stable_config_signature",
    "write_json",
    "as_absolute",
    "Deadline",
]
