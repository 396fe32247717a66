"""Post-bind culling of splats that sit too far from their bound vertex."""

import logging
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from splatrig.core.config_loader import load_config
from splatrig.core.skeleton import Skeleton

logger = logging.getLogger(__name__)


def offset_thresholds(skeleton: Skeleton, bone_ids: NDArray,
                      config: Optional[dict] = None) -> NDArray[np.float64]:
    """Per-splat maximum offset length, resolved from humanoid bone names."""
    if config is None:
        config = load_config("culling.json")
    default = float(config.get("default", 0.2))
    limits = np.full(len(bone_ids), default, dtype=np.float64)

    for name, value in config.get("bones", {}).items():
        bone = skeleton.bone_index(name)
        if bone is None:
            logger.warning("Culling threshold for unknown bone %r ignored", name)
            continue
        limits[np.asarray(bone_ids) == bone] = float(value)
    return limits


def cull_far_splats(
    colors: NDArray,
    bone_ids: NDArray,
    offsets: NDArray,
    skeleton: Skeleton,
    config: Optional[dict] = None,
) -> NDArray[np.bool_]:
    """Zero the alpha of splats whose offset exceeds their bone's limit.

    ``colors`` is modified in place; records are never removed so indices
    stay aligned with the binding arrays.  Returns the culled mask.
    """
    offsets = np.asarray(offsets, dtype=np.float64).reshape(-1, 3)
    distance = np.linalg.norm(offsets, axis=1)
    culled = distance > offset_thresholds(skeleton, bone_ids, config)
    colors[culled, 3] = 0.0
    logger.info("Culled %d of %d splats by offset distance", int(culled.sum()), len(distance))
    return culled
