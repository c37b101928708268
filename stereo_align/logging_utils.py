import logging

STAGE_THREAD_PREFIX = "align-"

_FORMAT = "%(asctime)s %(levelname)s [%(stage)s] %(message)s"


class StageNameFilter(logging.Filter):
    """Stamp ``record.stage``: the pipeline stage for stage threads, else the rig name."""

    def __init__(self, rig_name: str):
        super().__init__()
        self.rig_name = rig_name

    def filter(self, record: logging.LogRecord) -> bool:
        thread = record.threadName or ""
        if thread.startswith(STAGE_THREAD_PREFIX):
            record.stage = thread[len(STAGE_THREAD_PREFIX):]
        else:
            record.stage = self.rig_name
        return True


def setup_logger(rig_name: str, level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(f"stereo_align.{rig_name}")
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler.addFilter(StageNameFilter(rig_name))
        logger.addHandler(handler)

    return logger


def add_file_handler(logger: logging.Logger, rig_name: str, log_path: str) -> None:
    handler = logging.FileHandler(log_path)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler.addFilter(StageNameFilter(rig_name))
    logger.addHandler(handler)
