"""Floor/ceiling/centroid estimation for a raw splat cloud.

The calibrator looks for a vertical column of points that plausibly
belongs to a standing person.  Heights are measured along ``up_sign * y``
so that clouds stored Y-down (the common reconstruction convention) and
Y-up clouds share one code path.

Floor detection slides a pair of 5 cm windows (1 cm bins) up the height
histogram and picks the height where "points above" most exceeds
"points below".  That transition is far more robust than the minimum
height, which floor noise and shoe geometry corrupt.  If the result does
not validate, the search radius grows by 10 cm and the measurement
repeats, up to a 3 m cap.
"""

import logging
from dataclasses import dataclass, field, fields
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from splatrig.core.config_loader import load_config
from splatrig.core.errors import CalibrationFailure, EmptyRegionFailure

logger = logging.getLogger(__name__)


@dataclass
class CalibrationConfig:
    """Calibrator parameters; defaults mirror ``calibration.json``."""
    initial_radius: float = 0.3
    radius_step: float = 0.1
    max_radius: float = 3.0
    vertical_limit: float = 2.0      # |y| cut applied before histogramming
    min_points: int = 10000
    min_height: float = 0.3
    outer_ring_width: float = 0.02
    outer_ratio: float = 0.00025
    outer_min_count: int = 10
    ceiling_margin: float = 0.3      # ceiling search starts this far above the floor
    density_ratio: float = 0.00025   # ceiling = first bin below this share of the column
    window: int = 5
    floor_margin_ratio: float = 0.05
    shoe_band: float = 0.05
    shoe_radius: float = 0.5
    shoe_grid_half_extent: int = 51
    shoe_min_mean_height: float = 0.01
    shoe_demote_neighbors: int = 5
    foreground_margin: float = 0.5
    foreground_thresh: float = 0.5
    background_cull_radius: float = 0.5
    up_sign: int = -1

    @classmethod
    def from_config(cls, overrides: Optional[dict] = None) -> "CalibrationConfig":
        data = dict(load_config("calibration.json"))
        if overrides:
            data.update(overrides)
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class HeightEstimate:
    floor: float
    ceiling: float
    radius: float
    radii_tried: list[float] = field(default_factory=list)


@dataclass
class CalibrationResult:
    floor_height: float
    ceiling_height: float
    centroid_xz: NDArray[np.float64]         # feet centroid (x, z)
    head_centroid_xz: NDArray[np.float64]    # head centroid (x, z)
    search_radius_xz: float
    radii_tried: list[float] = field(default_factory=list)

    @property
    def body_height(self) -> float:
        return self.ceiling_height - self.floor_height


@dataclass
class CleanResult:
    calibration: CalibrationResult
    foreground: NDArray[np.int64]   # indices of kept body splats
    background: NDArray[np.int64]   # everything else, shoe outliers last


def _round_half_up(values: NDArray) -> NDArray[np.int64]:
    return np.floor(values + 0.5).astype(np.int64)


class FloorCalibrator:
    """Estimates floor, ceiling and body centroids from raw splat centers."""

    def __init__(self, config: Optional[CalibrationConfig] = None):
        self.config = config or CalibrationConfig()

    # ── Helpers ───────────────────────────────────────────────────────

    def heights(self, points: NDArray) -> NDArray[np.float64]:
        return self.config.up_sign * points[:, 1].astype(np.float64)

    @staticmethod
    def xz_distance(points: NDArray, centroid) -> NDArray[np.float64]:
        dx = points[:, 0].astype(np.float64) - centroid[0]
        dz = points[:, 2].astype(np.float64) - centroid[1]
        return np.sqrt(dx * dx + dz * dz)

    # ── Floor / ceiling ───────────────────────────────────────────────

    def _histogram_floor(self, h: NDArray, knee_height: Optional[float]) -> tuple[float, float]:
        cfg = self.config
        n_win = cfg.window
        keys = _round_half_up(h * 100.0)
        lo = int(keys.min()) - n_win
        hi = int(keys.max()) + n_win
        counts = np.bincount(keys - lo, minlength=hi - lo + 1)
        cum = np.concatenate([[0], np.cumsum(counts)])

        idx = np.arange(n_win, len(counts) - n_win + 1)
        lower = cum[idx] - cum[idx - n_win]
        upper = cum[idx + n_win] - cum[idx]
        if knee_height is not None:
            allowed = ~((lo + idx) / 100.0 > knee_height)
            idx, lower, upper = idx[allowed], lower[allowed], upper[allowed]
        if len(idx) == 0:
            raise CalibrationFailure("No floor candidate in the height histogram")

        best = int(np.argmax(upper - lower))
        floor_key = lo + int(idx[best]) + 1

        bin_keys = lo + np.arange(len(counts))
        cliff = (bin_keys / 100.0 > floor_key / 100.0 + cfg.ceiling_margin) & \
            (counts < len(h) * cfg.density_ratio)
        hits = np.flatnonzero(cliff)
        ceiling_key = int(bin_keys[hits[0]]) if len(hits) else hi - n_win
        return floor_key / 100.0, ceiling_key / 100.0

    def calculate_heights(
        self,
        points: NDArray,
        centroid,
        radius: Optional[float] = None,
        thresh: float = 1.0,
        knee_height: Optional[float] = None,
    ) -> HeightEstimate:
        """Find floor and ceiling, growing the search radius until they validate.

        Raises CalibrationFailure once the radius cap is reached, with
        every radius attempted attached.
        """
        cfg = self.config
        pts = np.asarray(points)
        if radius is None:
            radius = cfg.initial_radius
        h_all = self.heights(pts)
        dxz = self.xz_distance(pts, centroid)
        vertical = np.abs(pts[:, 1]) < cfg.vertical_limit
        radii: list[float] = []

        while True:
            radii.append(radius)
            column = vertical & (dxz < radius * thresh)
            if not column.any():
                logger.warning("No points within %.2f of (%.3f, %.3f); using the full cloud",
                               radius * thresh, centroid[0], centroid[1])
                column = vertical
            if not column.any():
                raise CalibrationFailure("No valid points for height calculation", radii)

            floor, ceiling = self._histogram_floor(h_all[column], knee_height)

            # Validate the band between floor margin and ceiling
            height = ceiling - floor
            ymin = height * cfg.floor_margin_ratio + floor
            band = (dxz < radius) & (ymin < h_all) & (h_all < ceiling)
            n_band = int(band.sum())
            outer = band & (dxz > radius - cfg.outer_ring_width) & (dxz <= radius)
            n_outer = int(outer.sum())
            ratio = n_outer / n_band if n_band else 0.0

            logger.info("Calibration radius %.2f: floor %.2f ceiling %.2f points %d "
                        "height %.2f outer ring %d (ratio %.5f)",
                        radius, floor, ceiling, n_band, height, n_outer, ratio)

            if (n_band < cfg.min_points or height <= cfg.min_height or
                    (n_outer > cfg.outer_min_count and ratio > cfg.outer_ratio)):
                if radius < cfg.max_radius:
                    radius = round(radius + cfg.radius_step, 10)
                    logger.warning("Calibration did not validate; widening search radius to %.2f",
                                   radius)
                    continue
                logger.error("Calibration failed at radius %.2f", radius)
                raise CalibrationFailure(
                    f"Could not find a standing figure. radius: {radius:.2f}", radii)

            return HeightEstimate(floor, ceiling, radius, radii)

    # ── Centroids ─────────────────────────────────────────────────────

    def _band_centroid(self, points: NDArray, floor: float, ceiling: float,
                       centroid, radius: float, lo_frac: float, hi_frac: float,
                       label: str) -> NDArray[np.float64]:
        h = self.heights(points)
        height = ceiling - floor
        ymin = height * lo_frac + floor
        ymax = height * hi_frac + floor
        sel = (self.xz_distance(points, centroid) < radius) & (ymin < h) & (h < ymax)
        if not sel.any():
            logger.error("No points in the %s band", label)
            raise EmptyRegionFailure(f"No points found for the {label} centroid")
        chosen = points[sel].astype(np.float64)
        return np.array([chosen[:, 0].mean(), chosen[:, 2].mean()])

    def centroid_feet(self, points, floor, ceiling, centroid, radius) -> NDArray[np.float64]:
        """Mean XZ of points in the 10-20 % height band."""
        return self._band_centroid(points, floor, ceiling, centroid, radius, 0.1, 0.2, "feet")

    def centroid_head(self, points, floor, ceiling, centroid, radius) -> NDArray[np.float64]:
        """Mean XZ of points in the 90-100 % height band."""
        return self._band_centroid(points, floor, ceiling, centroid, radius, 0.9, 1.0, "head")

    # ── Shoe outliers ─────────────────────────────────────────────────

    def detect_shoes(self, points: NDArray, floor: float, ceiling: float,
                     centroid) -> NDArray[np.bool_]:
        """Keep mask that drops shoe-tip spikes from the bottom band.

        Points in the bottom 5 % of the body near the vertical axis are
        binned on a 1 cm XZ grid.  Cells with above-mean counts and a mean
        height over 1 cm are kept, then kept cells with too few kept
        neighbours are demoted in a single in-place raster pass.
        """
        cfg = self.config
        h = self.heights(points)
        ymin = (ceiling - floor) * cfg.shoe_band + floor
        rx = points[:, 0].astype(np.float64) - centroid[0]
        rz = points[:, 2].astype(np.float64) - centroid[1]
        r = np.sqrt(rx * rx + rz * rz)

        half = cfg.shoe_grid_half_extent
        size = 2 * half + 1
        ix = _round_half_up(rx * 100.0) + half
        iz = _round_half_up(rz * 100.0) + half
        in_grid = (ix >= 0) & (ix < size) & (iz >= 0) & (iz < size)
        band = (h < ymin) & (r < cfg.shoe_radius) & in_grid

        cell = ix[band] * size + iz[band]
        counts = np.bincount(cell, minlength=size * size).reshape(size, size)
        sums = np.bincount(cell, weights=h[band] - floor, minlength=size * size).reshape(size, size)
        means = np.divide(sums, counts, out=np.zeros_like(sums), where=counts > 0)

        keep = (counts > counts.mean()) & (means > cfg.shoe_min_mean_height)

        # Sequential demotion: earlier demotions influence later cells
        for x in range(size):
            for z in range(size):
                if not keep[x, z]:
                    continue
                missing = 0
                for dx in (-1, 0, 1):
                    for dz in (-1, 0, 1):
                        if dx == 0 and dz == 0:
                            continue
                        nx, nz = x + dx, z + dz
                        if not (0 <= nx < size and 0 <= nz < size) or not keep[nx, nz]:
                            missing += 1
                if missing >= cfg.shoe_demote_neighbors:
                    keep[x, z] = False

        cell_keep = np.zeros(len(points), dtype=bool)
        cell_keep[in_grid] = keep[ix[in_grid], iz[in_grid]]
        return (h >= ymin) | ((h >= floor) & (h <= ymin) & (r < cfg.shoe_radius) & cell_keep)

    # ── Full cleaning pass ────────────────────────────────────────────

    def clean(self, points: NDArray, knee_height: Optional[float] = None) -> CleanResult:
        """Calibrate and split the cloud into foreground and background.

        Two full searches from the initial radius refine the feet centroid;
        a third, tighter search runs on the candidate column alone before
        shoe outliers are removed and the head centroid is measured.
        """
        cfg = self.config
        pts = np.asarray(points)
        if len(pts) == 0:
            raise EmptyRegionFailure("Point cloud is empty")

        centroid = np.array([pts[:, 0].astype(np.float64).mean(),
                             pts[:, 2].astype(np.float64).mean()])
        logger.info("Initial centroid x=%.3f z=%.3f", centroid[0], centroid[1])
        radii: list[float] = []

        for _ in range(2):
            est = self.calculate_heights(pts, centroid, cfg.initial_radius, 1.0, knee_height)
            radii.extend(est.radii_tried)
            centroid = self.centroid_feet(pts, est.floor, est.ceiling, centroid, est.radius)

        h = self.heights(pts)
        dxz = self.xz_distance(pts, centroid)
        column = (dxz <= est.radius) & \
            (h >= est.floor - cfg.foreground_margin) & (h <= est.ceiling + cfg.foreground_margin)
        column_idx = np.flatnonzero(column)
        outside_idx = np.flatnonzero(~column)
        candidates = pts[column_idx]

        centroid = self.centroid_feet(candidates, est.floor, est.ceiling, centroid, est.radius)
        est = self.calculate_heights(candidates, centroid, est.radius,
                                     cfg.foreground_thresh, knee_height)
        radii.extend(est.radii_tried)

        keep = self.detect_shoes(candidates, est.floor, est.ceiling, centroid)
        foreground = column_idx[keep]
        background = np.concatenate([outside_idx, column_idx[~keep]])

        head = self.centroid_head(pts[foreground], est.floor, est.ceiling, centroid, est.radius)

        result = CalibrationResult(
            floor_height=est.floor,
            ceiling_height=est.ceiling,
            centroid_xz=centroid,
            head_centroid_xz=head,
            search_radius_xz=est.radius,
            radii_tried=radii,
        )
        logger.info("Calibrated floor %.2f ceiling %.2f radius %.2f; %d foreground, %d background",
                    est.floor, est.ceiling, est.radius, len(foreground), len(background))
        return CleanResult(result, foreground, background)
