"""
Render collaborator contract.

The queue treats rendering as an opaque, possibly slow, possibly failing
callable:

    render(payload) -> result
    render(payload, progress) -> result     # progress(percent) may be called

Raising any exception fails the attempt. The production renderer (text
overlay + FFmpeg encode + upload) lives outside this package and is wired in
through ``worker.render_callable``.
"""

import hashlib
import importlib
import json
import time
from typing import Any, Callable, Dict, Optional

from .queue.errors import RenderError
from .queue.models import RenderRequest

ProgressFn = Callable[[float], None]


def load_render_callable(target: str) -> Callable[..., Any]:
    """Import a render function from a 'module:function' string."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Render callable must look like 'module:function', got '{target}'")

    module = importlib.import_module(module_name)
    try:
        fn = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"Module '{module_name}' has no attribute '{attr}'")
    if not callable(fn):
        raise ValueError(f"'{target}' is not callable")
    return fn


def compute_output_key(payload: Dict[str, Any]) -> str:
    """Deterministic storage key for a payload (sorted-key JSON, SHA-256)."""
    normalized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
    return f"reels/{digest[:16]}.mp4"


def dry_run(payload: Dict[str, Any], progress: Optional[ProgressFn] = None) -> Dict[str, Any]:
    """
    Stand-in renderer for demos and smoke tests.

    Walks through the same progress milestones as a real render without
    touching any media. Two payload keys drive its behavior:
    - simulate_seconds: total time to spend (split across milestones)
    - simulate_failure: if truthy, raise RenderError with this message

    Returns:
        Dict with output_key, text and quality
    """
    request = RenderRequest(**payload)
    extras = request.model_extra or {}
    total = float(extras.get("simulate_seconds", 0) or 0)
    failure = extras.get("simulate_failure")

    milestones = (10, 40, 90, 100)
    for percent in milestones:
        if total:
            time.sleep(total / len(milestones))
        if failure and percent >= 40:
            raise RenderError(str(failure))
        if progress:
            progress(percent)

    return {
        "output_key": compute_output_key(payload),
        "text": request.text,
        "quality": request.quality,
    }
