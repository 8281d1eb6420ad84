from __future__ import annotations
import logging
from .events import BaseEvent


def _level(etype: str) -> int:
    if etype.endswith(("Failed", "TimedOut")):
        return logging.ERROR
    if etype.endswith("Skipped"):
        return logging.WARNING
    return logging.DEBUG


class LoggerObserver:
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        etype = event.__class__.__name__
        msg = ", ".join(f"{k}={v}" for k, v in d.items() if k not in ("ts", "run_id"))

        self.logger.log(_level(etype), f"[EVENT] {etype}: {msg}")
