"""Command-line entry point: bind a splat cloud to a VRM/GLB avatar.

Usage::

    # Full run from a raw reconstruction:
    splatrig scan.ply scan.gvrm --mesh avatar.vrm

    # Already cleaned and centered cloud, default pose, preview quality:
    splatrig body.ply --mesh avatar.vrm --stage 2 --fast

    # Keep the processed foreground cloud and skip the background:
    splatrig scan.ply out/scan.gvrm --mesh avatar.vrm --save-ply --nobg

No pose detector ships with the package, so the detector-driven steps
(facing direction, ground check, fitted bone operations) are skipped and
the default A-pose operations are used.
"""

import argparse
import logging
from pathlib import Path

from splatrig.binding.capsules import CapsuleTable
from splatrig.constants import ARCHIVE_SUFFIX
from splatrig.core.events import EventBus, EventType
from splatrig.export.capsule_glb import export_capsules_glb
from splatrig.loaders.sources import FileMeshSource, FilePointCloudSource
from splatrig.pipeline.preprocess import STAGES, PipelineOptions, Preprocessor

logger = logging.getLogger("splatrig")


# ── CLI ──────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="splatrig",
        description="Bind a Gaussian splat cloud to a skinned humanoid avatar",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("input", type=Path, help="Splat cloud (.ply)")
    parser.add_argument(
        "output", type=Path, nargs="?", default=None,
        help=f"Archive to write (default: <input>{ARCHIVE_SUFFIX})",
    )
    parser.add_argument(
        "--mesh", type=Path, required=True, metavar="FILE",
        help="Avatar (.vrm or .glb)",
    )
    parser.add_argument(
        "--nocheck", action="store_true",
        help="Skip pose validation",
    )
    parser.add_argument(
        "--nobg", action="store_true",
        help="Do not write the background cloud",
    )
    device = parser.add_mutually_exclusive_group()
    device.add_argument(
        "--cpu", dest="use_gpu", action="store_false", default=False,
        help="Run classification on the CPU (default)",
    )
    device.add_argument(
        "--gpu", dest="use_gpu", action="store_true",
        help="Request GPU classification",
    )
    parser.add_argument(
        "--fast", action="store_true",
        help="Sampled classification and binding for quick previews",
    )
    parser.add_argument(
        "--stage", type=int, choices=STAGES, default=0,
        help="0: full run, 1: skip cleaning, 2: default bone operations, "
             "3: bind with default or supplied operations (default: 0)",
    )
    parser.add_argument(
        "--save-ply", action="store_true",
        help="Also write the processed foreground cloud and a bone-colored copy",
    )
    parser.add_argument(
        "--capsules-glb", type=Path, default=None, metavar="FILE",
        help="Write the bone capsules to a GLB file for inspection",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable verbose logging",
    )
    return parser


def _log_phase(phase: str) -> None:
    logger.info("%s", phase)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=log_level, format="%(name)s: %(message)s")

    for path in (args.input, args.mesh):
        if not path.is_file():
            parser.error(f"File not found: {path}")
    output = args.output or args.input.with_suffix(ARCHIVE_SUFFIX)

    nocheck = args.nocheck
    if not nocheck:
        logger.warning("No pose detector available; running with --nocheck")
        nocheck = True

    options = PipelineOptions(
        stage=args.stage,
        nocheck=nocheck,
        nobg=args.nobg,
        fast=args.fast,
        use_gpu=args.use_gpu,
        save_ply=args.save_ply,
    )

    bus = EventBus()
    bus.subscribe(EventType.PIPELINE_PHASE, _log_phase)
    result = Preprocessor(event_bus=bus).run(
        FileMeshSource(args.mesh), FilePointCloudSource(args.input), output, options,
    )
    if not result.ok:
        logger.error("Failed: %s (details in %s)", result.error, result.error_path)
        return 1

    if args.capsules_glb is not None:
        export_capsules_glb(result.capsules, CapsuleTable.from_config().palette, args.capsules_glb)
    logger.info("Wrote %s", result.archive_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
