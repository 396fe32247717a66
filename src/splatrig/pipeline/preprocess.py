"""End-to-end preprocessing: raw splat cloud + avatar -> binding archive."""

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import numpy as np

from splatrig.binding.binder import SplatBinding, bind_splats
from splatrig.binding.capsules import (
    BoneCapsule,
    CapsuleTable,
    build_capsules,
    ensure_head_top_bone,
)
from splatrig.binding.classify import classify_splats, classify_vertices
from splatrig.calibration.calibrator import CalibrationConfig, CalibrationResult, FloorCalibrator
from splatrig.calibration.placement import (
    Placement,
    default_placement,
    hide_far_background,
    orient,
    place,
    tilt,
)
from splatrig.constants import ARCHIVE_SUFFIX
from splatrig.core.config_loader import load_config
from splatrig.core.errors import GroundPenetrationFailure, SplatRigError
from splatrig.core.events import EventBus, EventType
from splatrig.core.math_utils import transform_points
from splatrig.core.splats import SplatCloud
from splatrig.export.container import BindingArchive, save_archive
from splatrig.loaders.glb_loader import MeshAsset
from splatrig.loaders.ply_io import ply_bytes, write_ply
from splatrig.loaders.sources import MeshSource, PointCloudSource
from splatrig.pipeline.diagnostics import save_error
from splatrig.pipeline.pose_oracle import (
    CameraView,
    PoseOracle,
    bone_operations_from_keypoints,
    check_ground,
    detect_view,
    find_best_angle,
    find_facing_angle,
)

logger = logging.getLogger(__name__)

STAGES = (0, 1, 2, 3)

# Orbit radius of the detection camera, from its (-1.7, 0.6, 1.7) start position
DEFAULT_CAMERA_RADIUS = math.hypot(1.7, 1.7)
# Side and ground-check views are taken from further away
WIDE_VIEW = 1.5
GROUND_SCAN_HALF_RANGE = math.pi / 15.0
SCAN_STEPS = 12
# Retries allowed after the first attempt
MAX_RETRIES = 1


@dataclass
class Hints:
    """Corrections carried from a failed attempt into the retry."""
    knee_height: Optional[float] = None
    retry: int = 0


@dataclass
class PipelineOptions:
    stage: int = 0
    nocheck: bool = False      # skip oracle validation (ground check)
    nobg: bool = False         # do not write the background cloud
    fast: bool = False         # sampled classification/binding for previews
    use_gpu: bool = False      # accepted; the vectorized host path runs either way
    save_ply: bool = False     # also write the processed foreground PLY
    bone_operations: Optional[list[dict]] = None   # used by stage 3
    model_scale: Optional[float] = None
    calibration: Optional[CalibrationConfig] = None
    capsule_table: Optional[CapsuleTable] = None


@dataclass
class PipelineResult:
    archive_path: Optional[Path] = None
    background_path: Optional[Path] = None
    processed_ply_path: Optional[Path] = None
    debug_ply_path: Optional[Path] = None
    placement: Optional[Placement] = None
    calibration: Optional[CalibrationResult] = None
    bone_operations: list[dict] = field(default_factory=list)
    binding: Optional[SplatBinding] = None
    capsules: list[BoneCapsule] = field(default_factory=list)
    error: Optional[str] = None
    error_path: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SceneState:
    """What a pose oracle gets to render: both clouds and the placed avatar."""
    cloud: SplatCloud
    background: Optional[SplatCloud]
    placement: Placement
    asset: MeshAsset


def default_bone_operations() -> list[dict]:
    return list(load_config("default_pose.json")["boneOperations"])


def _bound_colors(classification, binding: SplatBinding, capsules: list[BoneCapsule],
                  palette) -> np.ndarray:
    """Per-splat debug colors matching the bone each splat ended up bound to.

    Splats moved off an empty vertex pool take the color of the first
    capsule of their new bone.
    """
    colors = classification.colors.copy()
    moved = np.flatnonzero(binding.bone_ids != classification.bone_ids)
    if len(moved):
        palette = np.asarray(palette, dtype=np.float32).reshape(-1, 3)
        first_tag: dict[int, int] = {}
        for capsule in capsules:
            first_tag.setdefault(capsule.bone_id, capsule.color_tag)
        for i in moved:
            tag = first_tag.get(int(binding.bone_ids[i]), 0)
            colors[i] = palette[tag % len(palette)] / 255.0
    return colors


class Preprocessor:
    """Runs the preprocessing stages and reports progress on an EventBus.

    Stages:
    0: clean the cloud, place and orient it, validate, fit bone operations
    1: cloud already clean and centered; fit bone operations
    2: cloud already clean and centered; default bone operations
    3: as 2, with the bone operations given in the options
    """

    def __init__(self, event_bus: Optional[EventBus] = None,
                 oracle: Optional[PoseOracle] = None,
                 camera_radius: float = DEFAULT_CAMERA_RADIUS):
        self.event_bus = event_bus or EventBus()
        self.oracle = oracle
        self.camera_radius = camera_radius

    def _report(self, phase: str, progress: float) -> None:
        self.event_bus.publish(EventType.PIPELINE_PHASE, phase=phase)
        self.event_bus.publish(EventType.PIPELINE_PROGRESS, phase=phase, progress=progress)

    def _progress(self, phase: str, fraction: float) -> None:
        self.event_bus.publish(EventType.PIPELINE_PROGRESS, phase=phase, progress=fraction)

    def run(
        self,
        mesh_source: MeshSource,
        cloud_source: PointCloudSource,
        output_path: Union[str, Path],
        options: Optional[PipelineOptions] = None,
        hints: Optional[Hints] = None,
    ) -> PipelineResult:
        """Produce the binding archive at ``output_path``.

        Pipeline errors never escape: a failed run writes an error record
        next to ``output_path`` and returns a result with ``error`` set.
        A failed ground check retries once with a knee-height hint.
        """
        options = options or PipelineOptions()
        if options.stage not in STAGES:
            raise ValueError(f"stage must be one of {STAGES}, got {options.stage!r}")
        output_path = Path(output_path)
        if not output_path.suffix:
            output_path = output_path.with_suffix(ARCHIVE_SUFFIX)

        while True:
            self.event_bus.publish(EventType.PIPELINE_STARTED,
                                   file_name=output_path.name, stage=options.stage)
            try:
                result = self._run_once(mesh_source, cloud_source, output_path, options, hints)
            except SplatRigError as exc:
                if isinstance(exc, GroundPenetrationFailure):
                    # A second ground failure means the hint did not help
                    hints = Hints(knee_height=exc.knee_height) if hints is None else None
                if hints is not None:
                    hints.retry += 1
                    if hints.retry <= MAX_RETRIES:
                        logger.warning("Retrying with hints %s: %s", hints, exc)
                        self.event_bus.publish(EventType.PIPELINE_RETRY, hints=hints, error=str(exc))
                        continue
                message = f"Preprocessing failed: {exc}"
                path = save_error(message, output_path.name, output_path.parent)
                self.event_bus.publish(EventType.PIPELINE_FAILED,
                                       message=message, error_id=exc.error_id)
                return PipelineResult(error=str(exc), error_path=path)

            self.event_bus.publish(EventType.PIPELINE_COMPLETE, output=result.archive_path)
            return result

    # ── One attempt ───────────────────────────────────────────────────

    def _run_once(self, mesh_source: MeshSource, cloud_source: PointCloudSource,
                  output_path: Path, options: PipelineOptions,
                  hints: Optional[Hints]) -> PipelineResult:
        cfg = options.calibration or CalibrationConfig.from_config()
        table = options.capsule_table or CapsuleTable.from_config()
        if options.use_gpu:
            logger.info("GPU requested; using the vectorized host path")

        self._report("Loading assets...", 0.0)
        asset = mesh_source.load()
        cloud = cloud_source.load()
        skeleton, mesh = asset.skeleton, asset.mesh
        ensure_head_top_bone(skeleton, table)

        # Clean and place
        calibration = None
        background = None
        if options.stage < 1:
            self._report("Cleaning splats...", 0.05)
            knee = hints.knee_height if hints is not None else None
            cleaned = FloorCalibrator(cfg).clean(cloud.centers, knee_height=knee)
            calibration = cleaned.calibration
            background = cloud.subset(cleaned.background)
            cloud = cloud.subset(cleaned.foreground)
            placement = place(calibration, asset.height, mesh.is_skeleton_only, cfg.up_sign,
                              asset.legacy_facing, options.model_scale)
            hide_far_background(background.colors, background.centers,
                                calibration.centroid_xz, cfg.background_cull_radius)
        else:
            placement = default_placement(asset.height, mesh.is_skeleton_only, cfg.up_sign,
                                          asset.legacy_facing, options.model_scale)
        scene = SceneState(cloud, background, placement, asset)
        skeleton.model_matrix = placement.model_matrix

        # Orient and validate
        if options.stage < 1:
            self._report("Finding facing direction...", 0.15)
            if self.oracle is not None:
                orient(placement, find_facing_angle(self.oracle, self.camera_radius, scene, SCAN_STEPS))
            else:
                logger.warning("No pose oracle; facing direction left unchanged")

        if not options.nocheck and calibration is not None:
            self._report("Checking the ground...", 0.2)
            if self.oracle is not None:
                self._check_ground(scene, calibration)
            else:
                logger.warning("No pose oracle; ground check skipped")

        if calibration is not None:
            tilt(placement, calibration)
        skeleton.model_matrix = placement.model_matrix

        # Bone operations
        self._report("Applying bone operations...", 0.25)
        ops = self._bone_operations(options, scene)
        skeleton.set_pose(ops)
        pose = skeleton.pose()

        # Classify and bind
        self._report("Building bone capsules...", 0.3)
        capsules = build_capsules(skeleton, pose, table)
        gs_matrix = placement.gs_matrix

        self._report("Assigning splats to bones...", 0.35)
        world_centers = transform_points(gs_matrix, cloud.centers.astype(np.float64))
        classification = classify_splats(world_centers, capsules, table.palette,
                                         fast=options.fast, progress=self._progress)

        self._report("Assigning vertices to bones...", 0.6)
        pools = classify_vertices(mesh, pose, capsules, progress=self._progress)

        self._report("Binding splats to vertices...", 0.7)
        binding = bind_splats(cloud.centers, classification.bone_ids, mesh, pose, gs_matrix,
                              pools, fast=options.fast, progress=self._progress)
        binding.validate()
        cloud.bone_ids = binding.bone_ids
        cloud.vertex_ids = binding.vertex_ids
        cloud.offsets = binding.offsets
        cloud.debug_colors = _bound_colors(classification, binding, capsules, table.palette)

        # Save
        self._report("Saving...", 0.95)
        archive = BindingArchive(
            mesh_bytes=mesh_source.read_bytes(),
            cloud_bytes=ply_bytes(cloud),
            model_scale=placement.model_scale,
            bone_operations=ops,
            gs_quaternion=placement.gs_quaternion.tolist(),
            gs_position=placement.gs_position.tolist(),
            binding=binding,
        )
        output_path.parent.mkdir(parents=True, exist_ok=True)
        result = PipelineResult(
            archive_path=save_archive(archive, output_path),
            placement=placement,
            calibration=calibration,
            bone_operations=ops,
            binding=binding,
            capsules=capsules,
        )

        stem = output_path.stem
        if background is not None and not options.nobg:
            result.background_path = output_path.with_name(f"{stem}_background.ply")
            write_ply(background, result.background_path)
        if options.save_ply:
            result.processed_ply_path = output_path.with_name(f"{stem}_processed.ply")
            write_ply(cloud, result.processed_ply_path)
            # Bone colors in place of the scan colors, for checking the classification
            result.debug_ply_path = output_path.with_name(f"{stem}_debug.ply")
            write_ply(cloud, result.debug_ply_path, debug_colors=True)

        self._report("Done", 1.0)
        return result

    def _check_ground(self, scene: SceneState, calibration: CalibrationResult) -> None:
        radius = self.camera_radius * WIDE_VIEW
        angle, _ = find_best_angle(self.oracle, -GROUND_SCAN_HALF_RANGE, GROUND_SCAN_HALF_RANGE,
                                   SCAN_STEPS, radius, scene)
        view = CameraView(angle if angle is not None else 0.0, self.camera_radius, WIDE_VIEW, scene)
        ground = scene.placement.ground
        check_ground(detect_view(self.oracle, view), ground, ground, calibration.floor_height)

    def _bone_operations(self, options: PipelineOptions, scene: Any) -> list[dict]:
        base = default_bone_operations()
        if options.stage == 3 and options.bone_operations is not None:
            return list(options.bone_operations)
        if options.stage >= 2:
            return base
        if self.oracle is None:
            logger.warning("No pose oracle; using default bone operations")
            return base

        r = self.camera_radius
        front = detect_view(self.oracle, CameraView(0.0, r, 1.0, scene))
        right = detect_view(self.oracle, CameraView(-math.pi / 2.0, r, WIDE_VIEW, scene))
        left = detect_view(self.oracle, CameraView(math.pi / 2.0, r, WIDE_VIEW, scene))
        return bone_operations_from_keypoints(front, right, left, base)
