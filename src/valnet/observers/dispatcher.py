# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/observers/dispatcher.py
from __future__ import annotations

import logging
from typing import List, Optional, Protocol

from .events import BaseEvent

log = logging.getLogger("valnet")


class Observer(Protocol):
    def notify(self, event: BaseEvent) -> None: ...


class EventBus:
    """Fans lifecycle events out to observers; a broken observer never aborts a deploy."""

    def __init__(self, observers: Optional[List[Observer]] = None):
        self._observers: List[Observer] = list(observers or [])

    def emit(self, event: BaseEvent) -> None:
        for ob in self._observers:
            try:
                ob.notify(event)
            except Exception as e:
                log.debug(
                    "observer %s dropped %s: %s",
                    type(ob).__name__, type(event).__name__, e,
                )
