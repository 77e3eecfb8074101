# events.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from fc_types import FilterInfo, ImageType, TriggerStatus
from logging_utils import log_error


class EventType(str, Enum):
    # telescope
    AFTER_MERIDIAN_FLIP = "AFTER_MERIDIAN_FLIP"

    # guider
    AFTER_DITHER = "AFTER_DITHER"

    # image persistence
    BEFORE_IMAGE_SAVED = "BEFORE_IMAGE_SAVED"

    # filter wheel / focuser
    FILTER_CHANGED = "FILTER_CHANGED"
    FOCUS_CHANGED = "FOCUS_CHANGED"

    # sequence lifecycle
    STATUS_CHANGED = "STATUS_CHANGED"


@dataclass(frozen=True)
class Event:
    type: EventType
    payload: Dict[str, Any]
    t: float


def _now() -> float:
    return time.time()


Handler = Callable[[Event], Any]


# -------------------------
# Factories
# -------------------------
def after_meridian_flip() -> Event:
    return Event(EventType.AFTER_MERIDIAN_FLIP, {}, _now())


def after_dither(dx_px: float = 0.0, dy_px: float = 0.0) -> Event:
    return Event(EventType.AFTER_DITHER, {"dx_px": float(dx_px), "dy_px": float(dy_px)}, _now())


def before_image_saved(image_type: ImageType, rms_total: float, rms_scale: float) -> Event:
    return Event(
        EventType.BEFORE_IMAGE_SAVED,
        {"image_type": image_type, "rms_total": float(rms_total), "rms_scale": float(rms_scale)},
        _now(),
    )


def filter_changed(selected: Optional[FilterInfo]) -> Event:
    return Event(EventType.FILTER_CHANGED, {"filter": selected}, _now())


def focus_changed(position: int) -> Event:
    return Event(EventType.FOCUS_CHANGED, {"position": int(position)}, _now())


def status_changed(status: TriggerStatus) -> Event:
    return Event(EventType.STATUS_CHANGED, {"status": TriggerStatus(status)}, _now())


# -------------------------
# Hub
# -------------------------
class Subscription:
    """
    Handle returned by EventHub.subscribe. Usable as a context manager;
    close() is idempotent.
    """

    def __init__(self, hub: "EventHub", event_type: EventType, handler: Handler) -> None:
        self._hub = hub
        self.event_type = event_type
        self.handler = handler
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._hub._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class EventHub:
    """
    Thread-safe in-process dispatcher. Devices publish, the compensator subscribes.

    A handler that raises is logged and does not stop delivery to the others.
    """

    def __init__(self, out_log=None) -> None:
        self.out_log = out_log
        self._lock = threading.Lock()
        self._subs: Dict[EventType, List[Subscription]] = {}

    def subscribe(self, event_type: EventType, handler: Handler) -> Subscription:
        sub = Subscription(self, EventType(event_type), handler)
        with self._lock:
            self._subs.setdefault(sub.event_type, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.event_type, [])
            if sub in subs:
                subs.remove(sub)

    def subscriber_count(self, event_type: Optional[EventType] = None) -> int:
        with self._lock:
            if event_type is not None:
                return len(self._subs.get(EventType(event_type), []))
            return sum(len(v) for v in self._subs.values())

    def publish(self, event: Event) -> int:
        with self._lock:
            subs = list(self._subs.get(event.type, []))
        delivered = 0
        for sub in subs:
            try:
                sub.handler(event)
                delivered += 1
            except Exception as exc:
                log_error(self.out_log, f"Events: handler failed for {event.type.value}", exc)
        return delivered
