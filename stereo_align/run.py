import argparse
import logging
import signal
import sys
import tempfile
import threading
from dataclasses import dataclass

from align_pipeline.errors import ConfigurationError, InvalidImageError, QueueFullError
from align_pipeline.synthetic import default_camera_matrix, write_rectified_rig

from .adjustment import suggest_adjustment
from .config import PipelineConfig, load_config
from .frame_source import ImagePairSource, SyntheticPairSource
from .logging_utils import add_file_handler, setup_logger
from .pipeline import AlignmentPipeline


@dataclass
class RunSummary:
    frames: int
    passed: int
    failed: int
    detection_failures: int
    rejected: int
    dropped: int


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Verify stereo rig alignment frame by frame")
    ap.add_argument("--config", required=True, help="Path to JSON/YAML config")

    ap.add_argument("--rig-name")
    ap.add_argument("--width", type=int)
    ap.add_argument("--height", type=int)
    ap.add_argument("--input-dir", help="Directory of l_*/r_* image pairs")
    ap.add_argument("--dry-run", action="store_true", help="Use synthetic frames and an ideal rig")
    ap.add_argument("--max-frames", type=int)
    ap.add_argument("--log-level")
    ap.add_argument("--log-file")
    ap.add_argument("--grace", type=float, help="Shutdown grace period (seconds)")

    return ap


def _apply_args(cfg: PipelineConfig, args: argparse.Namespace) -> PipelineConfig:
    cfg.apply_overrides(
        rig_name=args.rig_name,
        width=args.width,
        height=args.height,
        input_dir=args.input_dir,
        dry_run=args.dry_run if args.dry_run else None,
        max_frames=args.max_frames,
        log_level=args.log_level.upper() if args.log_level else None,
        log_file=args.log_file,
    )
    if args.grace is not None:
        cfg.runtime.shutdown_grace_sec = args.grace
    return cfg


def _prepare_dry_run(cfg: PipelineConfig, workdir: str) -> SyntheticPairSource:
    paths = write_rectified_rig(workdir, cfg.image_size)
    for key, value in paths.items():
        setattr(cfg.calibration, key, value)
    # synthetic frames carry only the circle grid
    cfg.fiducial.kind = "grid"
    return SyntheticPairSource(cfg.image_size, default_camera_matrix(cfg.image_size), cfg.pattern,
                               count=cfg.max_frames or 10)


def main(argv=None) -> int:
    ap = _build_parser()
    args = ap.parse_args(argv)

    cfg = load_config(args.config)
    cfg = _apply_args(cfg, args)

    log = setup_logger(cfg.rig_name, getattr(logging, cfg.log_level, logging.INFO))
    if cfg.log_file:
        add_file_handler(log, cfg.rig_name, cfg.log_file)

    workdir = tempfile.TemporaryDirectory(prefix="stereo_align_") if cfg.dry_run else None
    if workdir is not None:
        source = _prepare_dry_run(cfg, workdir.name)
    elif cfg.input_dir:
        source = ImagePairSource(cfg.input_dir)
    else:
        ap.error("either --input-dir (or input_dir in the config) or --dry-run is required")

    try:
        pipeline = AlignmentPipeline.from_config(cfg, log)
    except ConfigurationError as e:
        log.error("calibration not usable: %s", e)
        if workdir is not None:
            workdir.cleanup()
        return 2

    stop = threading.Event()

    def _handle_signal(_sig, _frame):
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handle_signal)

    results = []
    submitted = 0
    try:
        source.start()
        while not stop.is_set():
            if cfg.max_frames is not None and submitted >= cfg.max_frames:
                break
            item = source.read()
            if item is None:
                break
            left, right, idx = item
            try:
                pipeline.process_frame(left, right, timeout=1.0)
                submitted += 1
            except InvalidImageError as e:
                log.warning("pair=%d rejected: %s", idx, e)
            except QueueFullError:
                log.warning("pair=%d skipped: pipeline saturated", idx)
            while True:
                r = pipeline.try_get_result()
                if r is None:
                    break
                results.append(r)
    finally:
        pipeline.shutdown()
        source.stop()
        if workdir is not None:
            workdir.cleanup()

    while True:
        r = pipeline.try_get_result()
        if r is None:
            break
        results.append(r)

    for r in sorted(results, key=lambda r: r.frame_id):
        adj = suggest_adjustment(r)
        log.info("frame=%d next=%s dx=%.3f dy=%.3f", r.frame_id, adj.priority.value, adj.delta_x, adj.delta_y)

    stats = pipeline.get_performance_stats()
    pipeline.print_performance_stats()
    passed = sum(1 for r in results if r.alignment_result is not None and r.alignment_result.passed)
    summary = RunSummary(
        frames=len(results),
        passed=passed,
        failed=len(results) - passed,
        detection_failures=stats.detection_failures,
        rejected=stats.frames_rejected + stats.frames_invalid,
        dropped=stats.frames_dropped,
    )
    print(summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
