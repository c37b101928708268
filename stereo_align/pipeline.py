"""Threaded per-frame alignment verification.

Frames flow through three named stages joined by bounded queues::

    submit -> [pose] -> [rectify] -> [fusion] -> results

The pose stage detects the pattern and solves both eyes in parallel, then
joins them into a :class:`PosePair`. A frame whose eyes do not both pass
is finished there; only frames with two passing poses are rectified and
checked for fusion. Every accepted frame produces exactly one result unless
it is still in flight when the shutdown grace period runs out.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

import numpy as np

from align_pipeline.ap_types import (
    AlignmentResult,
    CenteringResult,
    Frame,
    Outcome,
    PipelineResult,
    PoseResult,
)
from align_pipeline.errors import InvalidImageError, PipelineShutdownError, QueueFullError
from align_pipeline.factory import StrategyFactory
from align_pipeline.services.calib import load_calibration

from .adjustment import check_centering
from .config import PipelineConfig
from .logging_utils import STAGE_THREAD_PREFIX, setup_logger
from .stats import PipelineStats, StatsRecorder


STAGES = ("pose", "rectify", "fusion")

_DTYPES = (np.uint8, np.uint16)


@dataclass(frozen=True)
class PosePair:
    frame: Frame
    left: PoseResult
    right: PoseResult
    left_centering: Optional[CenteringResult] = None


@dataclass(frozen=True)
class RectifiedPair:
    poses: PosePair
    left_image: np.ndarray
    right_image: np.ndarray


def _frame_of(item) -> Frame:
    if isinstance(item, RectifiedPair):
        return item.poses.frame
    if isinstance(item, PosePair):
        return item.frame
    return item


class AlignmentPipeline:
    """
    Accept stereo frames and verify rig alignment on a fixed set of threads.

    Args:
        image_size: (width, height) every submitted image must have
        left_intrinsics, right_intrinsics, stereo_extrinsics,
        rectify_params, rectify_maps: calibration artifact paths
        config: detection, tolerance and queue settings
        logger: defaults to ``setup_logger(config.rig_name)``

    Raises:
        ConfigurationError: a calibration artifact is missing or malformed
    """

    def __init__(
        self,
        image_size,
        left_intrinsics: str,
        right_intrinsics: str,
        stereo_extrinsics: str,
        rectify_params: str,
        rectify_maps: str,
        config: PipelineConfig = None,
        logger: logging.Logger = None,
    ):
        self.config = config or PipelineConfig()
        self.log = logger or setup_logger(self.config.rig_name)
        self.geometry = load_calibration(
            image_size, left_intrinsics, right_intrinsics, stereo_extrinsics,
            rectify_params, rectify_maps,
            pattern=self.config.pattern, fiducial=self.config.fiducial,
        )
        (self.detector, self.left_pose, self.right_pose,
         self.rectifier, self.fusion) = StrategyFactory.from_config(self.geometry, self.config)

        rt = self.config.runtime
        self._poll = rt.poll_interval_sec
        self._submit_q: queue.Queue = queue.Queue(maxsize=rt.submit_capacity)
        self._rectify_q: queue.Queue = queue.Queue(maxsize=rt.stage_capacity)
        self._fusion_q: queue.Queue = queue.Queue(maxsize=rt.stage_capacity)
        self._result_q: queue.Queue = queue.Queue(maxsize=rt.result_capacity)

        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._submit_lock = threading.Lock()
        self._shutdown_lock = threading.Lock()
        self._accepting = True
        self._closed = False
        self._next_id = 1
        self._in_flight = 0
        self._stats = StatsRecorder(STAGES)

        self._eye_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"{STAGE_THREAD_PREFIX}pose-eye")
        wiring = [
            ("pose", self._submit_q, self._pose_stage, self._rectify_q),
            ("rectify", self._rectify_q, self._rectify_stage, self._fusion_q),
            ("fusion", self._fusion_q, self._fusion_stage, None),
        ]
        self._threads = [
            threading.Thread(target=self._stage_loop, args=w, name=f"{STAGE_THREAD_PREFIX}{w[0]}", daemon=True)
            for w in wiring
        ]
        for t in self._threads:
            t.start()
        w, h = self.geometry.image_size
        self.log.info("pipeline started %dx%d baseline=%.2fmm", w, h, self.geometry.baseline_mm)

    @classmethod
    def from_config(cls, config: PipelineConfig, logger: logging.Logger = None) -> "AlignmentPipeline":
        c = config.calibration
        if logger is None:
            logger = setup_logger(config.rig_name, getattr(logging, config.log_level, logging.INFO))
        return cls(config.image_size, c.left_intrinsics, c.right_intrinsics, c.stereo_extrinsics,
                   c.rectify_params, c.rectify_maps, config=config, logger=logger)

    # ------------------------------------------------------------------ submission

    def _validate(self, left, right) -> None:
        w, h = self.geometry.image_size
        for name, img in (("left", left), ("right", right)):
            if img is None:
                raise InvalidImageError(f"{name} image is missing")
            if not isinstance(img, np.ndarray) or img.size == 0:
                raise InvalidImageError(f"{name} image is empty")
            if img.dtype not in _DTYPES:
                raise InvalidImageError(f"{name} image has unsupported dtype {img.dtype}")
            if img.ndim not in (2, 3) or (img.ndim == 3 and img.shape[2] not in (1, 3, 4)):
                raise InvalidImageError(f"{name} image has unsupported shape {img.shape}")
            if img.shape[:2] != (h, w):
                raise InvalidImageError(f"{name} image is {img.shape[1]}x{img.shape[0]}, expected {w}x{h}")
        if left.shape != right.shape or left.dtype != right.dtype:
            raise InvalidImageError("left and right images differ in shape or type")

    def process_frame(self, left: np.ndarray, right: np.ndarray, timeout: Optional[float] = None) -> int:
        """
        Submit one stereo frame and return its id.

        ``timeout=None`` fails fast when the submission queue is full;
        otherwise waits up to ``timeout`` seconds for room.

        Raises:
            InvalidImageError: an image is empty, corrupt or the wrong size
            QueueFullError: no room in the submission queue
            PipelineShutdownError: ``shutdown()`` has been called
        """
        with self._lock:
            if not self._accepting:
                raise PipelineShutdownError("pipeline is shut down")
        try:
            self._validate(left, right)
        except InvalidImageError:
            self._stats.invalid()
            raise

        with self._submit_lock:
            with self._lock:
                if not self._accepting:
                    raise PipelineShutdownError("pipeline is shut down")
                frame = Frame(self._next_id, left, right, time.perf_counter())
                self._in_flight += 1
            try:
                if timeout is None:
                    self._submit_q.put_nowait(frame)
                else:
                    self._submit_q.put(frame, timeout=timeout)
            except queue.Full:
                with self._lock:
                    self._in_flight -= 1
                    self._idle.notify_all()
                self._stats.rejected()
                raise QueueFullError(f"submission queue full ({self._submit_q.maxsize} frames)") from None
            with self._lock:
                self._next_id += 1
            self._stats.submitted()

        self.log.debug("frame=%d submitted", frame.frame_id)
        return frame.frame_id

    # ------------------------------------------------------------------ results

    def try_get_result(self) -> Optional[PipelineResult]:
        try:
            return self._result_q.get_nowait()
        except queue.Empty:
            return None

    def get_result(self, timeout: Optional[float] = None) -> Optional[PipelineResult]:
        """Block up to ``timeout`` seconds (forever if None) for the next result."""
        try:
            return self._result_q.get(timeout=timeout)
        except queue.Empty:
            return None

    # ------------------------------------------------------------------ stages

    def _detect_and_solve(self, estimator, image):
        obs = self.detector.detect(image)
        return estimator.estimate(obs), obs

    def _pose_stage(self, frame: Frame):
        fl = self._eye_pool.submit(self._detect_and_solve, self.left_pose, frame.left_image)
        fr = self._eye_pool.submit(self._detect_and_solve, self.right_pose, frame.right_image)
        left, left_obs = fl.result()
        right, _ = fr.result()

        centering = None
        if self.config.centering.enabled:
            centering = check_centering(left_obs, self.config.centering)

        pair = PosePair(frame, left, right, centering)
        if left.passed and right.passed:
            return pair
        return self._result(pair, None)

    def _rectify_stage(self, pair: PosePair):
        g = self.geometry
        left = self.rectifier.apply(pair.frame.left_image, g.left_map1, g.left_map2)
        right = self.rectifier.apply(pair.frame.right_image, g.right_map1, g.right_map2)
        return RectifiedPair(pair, left, right)

    def _fusion_stage(self, rect: RectifiedPair):
        alignment = self.fusion.check(rect.left_image, rect.right_image)
        return self._result(rect.poses, alignment)

    def _result(self, pair: PosePair, alignment: Optional[AlignmentResult]) -> PipelineResult:
        return PipelineResult(
            frame_id=pair.frame.frame_id,
            processing_time=time.perf_counter() - pair.frame.submitted_at,
            left_pose_result=pair.left,
            right_pose_result=pair.right,
            alignment_result=alignment,
            left_centering=pair.left_centering,
        )

    def _failed_result(self, item) -> PipelineResult:
        if isinstance(item, Frame):
            failed = PoseResult.failed(Outcome.DEGENERATE)
            return self._result(PosePair(item, failed, failed), None)
        pair = item.poses if isinstance(item, RectifiedPair) else item
        return self._result(pair, AlignmentResult(Outcome.DEGENERATE))

    def _stage_loop(self, name: str, inbox: queue.Queue, handler, outbox: Optional[queue.Queue]) -> None:
        while not self._stop.is_set():
            try:
                item = inbox.get(timeout=self._poll)
            except queue.Empty:
                continue

            t0 = time.perf_counter()
            try:
                out = handler(item)
            except Exception:
                self.log.exception("frame=%d stage %s failed", _frame_of(item).frame_id, name)
                out = self._failed_result(item)
            self._stats.stage(name, time.perf_counter() - t0)

            if isinstance(out, PipelineResult):
                self._emit(out)
            else:
                self._forward(outbox, out)

    def _forward(self, outbox: queue.Queue, item) -> None:
        while not self._stop.is_set():
            try:
                outbox.put(item, timeout=self._poll)
                return
            except queue.Full:
                continue

    def _emit(self, result: PipelineResult) -> None:
        while True:
            with self._lock:
                if self._stop.is_set():
                    return
                try:
                    self._result_q.put_nowait(result)
                except queue.Full:
                    pass
                else:
                    self._in_flight -= 1
                    self._stats.completed(result.processing_time, result.detection_failed)
                    self._idle.notify_all()
                    break
            # result queue full: wait for the consumer, or for shutdown
            self._stop.wait(self._poll)

        a = result.alignment_result
        self.log.info(
            "frame=%d left=%s right=%s fusion=%s rms=%s %.1fms",
            result.frame_id,
            result.left_pose_result.outcome.value,
            result.right_pose_result.outcome.value,
            a.outcome.value if a is not None else "-",
            f"{a.rms:.3f}" if a is not None and a.rms is not None else "-",
            result.processing_time * 1000.0,
        )

    # ------------------------------------------------------------------ lifecycle

    def shutdown(self, grace: Optional[float] = None) -> None:
        """
        Stop accepting frames, let in-flight frames finish for up to ``grace``
        seconds (config default), then stop and join the stage threads.
        Frames still in flight are discarded and counted as dropped.
        Safe to call more than once.
        """
        with self._shutdown_lock:
            if self._closed:
                return
            if grace is None:
                grace = self.config.runtime.shutdown_grace_sec

            with self._lock:
                self._accepting = False
            # let a submission that already passed the check finish
            with self._submit_lock:
                pass

            with self._idle:
                drained = self._idle.wait_for(lambda: self._in_flight == 0, timeout=max(0.0, grace))
                self._stop.set()
                dropped = self._in_flight
            self._stats.set_dropped(dropped)

            for t in self._threads:
                t.join(timeout=max(1.0, grace))
            self._eye_pool.shutdown(wait=False, cancel_futures=True)
            for q in (self._submit_q, self._rectify_q, self._fusion_q):
                while True:
                    try:
                        q.get_nowait()
                    except queue.Empty:
                        break

            self._closed = True
            if drained:
                self.log.info("pipeline stopped")
            else:
                self.log.warning("pipeline stopped, %d frame(s) dropped after %.1fs grace", dropped, grace)

    @property
    def is_running(self) -> bool:
        return not self._stop.is_set()

    def __enter__(self) -> "AlignmentPipeline":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    # ------------------------------------------------------------------ stats

    def get_performance_stats(self) -> PipelineStats:
        return self._stats.snapshot()

    def print_performance_stats(self) -> None:
        print(f"=== {self.config.rig_name} performance ===")
        for line in self.get_performance_stats().lines():
            print(line)
