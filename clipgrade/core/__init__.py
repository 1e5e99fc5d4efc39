# Core subpackage marker.
__all__ = [
    "errors",
    "utils",
    "frames",
    "histogram",
    "grouping",
    "selector",
    "orchestrator",
    "transform",
    "retry",
    "pipeline",
]
