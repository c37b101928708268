"""Exception hierarchy for the alignment pipeline.

Detection failures are not exceptions: they are reported as
:class:`align_pipeline.ap_types.Outcome` values on the per-frame results.
"""


class AlignmentError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(AlignmentError):
    """Calibration artifacts or parameters are missing or malformed."""


class SubmissionError(AlignmentError):
    """A frame could not be submitted to the pipeline."""


class QueueFullError(SubmissionError):
    """The submission queue is saturated; the caller may retry later."""


class InvalidImageError(SubmissionError):
    """An input image is empty, corrupt or has the wrong dimensions."""


class PipelineShutdownError(SubmissionError):
    """The pipeline has been shut down and accepts no new frames."""
