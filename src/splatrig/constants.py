"""Shared constants and paths for SplatRig."""

from pathlib import Path

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent.parent
ASSETS_DIR = PROJECT_ROOT / "assets"
CONFIG_DIR = ASSETS_DIR / "config"

# Zeroth-order spherical harmonic coefficient (DC term -> RGB)
SH_C0 = 0.28209479177387814

# Archive entry names
ARCHIVE_MESH_ENTRY = "model.vrm"
ARCHIVE_CLOUD_ENTRY = "model.ply"
ARCHIVE_DATA_ENTRY = "data.json"
ARCHIVE_SUFFIX = ".gvrm"

# Raw (pre-sigmoid) opacity written for hidden splats
HIDDEN_OPACITY = -20.0

# Pose oracle keypoints below this score are unusable
KEYPOINT_SCORE_THRESHOLD = 0.01

# Skeleton-only meshes carry at most this many vertices
SKELETON_ONLY_MAX_VERTS = 3

# Synthetic bone appended above the head for capsule building
HEAD_TOP_BONE = "headTopEnd"

# Default gs rotation for clouds stored Y-down (180 degrees about Z)
DEFAULT_GS_QUATERNION = (0.0, 0.0, 1.0, 0.0)

# Depth nudge applied to the mesh placement
MODEL_Z_OFFSET = 0.02
