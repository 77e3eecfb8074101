# trigger.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fc_types import Binning, ExposureItem, ImageType
from logging_utils import log_debug


class TriggerPhase(str, Enum):
    IDLE = "IDLE"
    PENDING_BEFORE = "PENDING_BEFORE"
    PENDING_AFTER = "PENDING_AFTER"
    PENDING_BOTH = "PENDING_BOTH"


@dataclass
class TriggerStateMachine:
    """
    Arms before/after checks around LIGHT exposures.

    - should_trigger(next_item): a LIGHT frame is about to start
    - should_trigger_after(previous_item): a LIGHT frame just finished;
      also bumps the exposure counter
    - take_after()/take_before(): consume the armed check (after first)
    """
    after_exposures: int = 1

    next_binning: Optional[Binning] = None
    previous_binning: Optional[Binning] = None
    exposure_s: float = 0.0

    image_count: int = 0
    last_image_count: int = 0

    @staticmethod
    def _is_light(item: Optional[ExposureItem]) -> bool:
        return item is not None and item.image_type == ImageType.LIGHT

    @property
    def phase(self) -> TriggerPhase:
        if self.previous_binning is not None and self.next_binning is not None:
            return TriggerPhase.PENDING_BOTH
        if self.previous_binning is not None:
            return TriggerPhase.PENDING_AFTER
        if self.next_binning is not None:
            return TriggerPhase.PENDING_BEFORE
        return TriggerPhase.IDLE

    @property
    def progress_exposures(self) -> int:
        n = int(self.after_exposures)
        if n <= 0:
            return 0
        return (self.image_count - self.last_image_count) % n

    @property
    def progress_exposures_plus_one(self) -> int:
        return self.progress_exposures + 1

    @property
    def measurement_due(self) -> bool:
        return self.progress_exposures == 0

    def should_trigger(self, next_item: Optional[ExposureItem]) -> bool:
        if not self._is_light(next_item):
            return False
        self.next_binning = next_item.binning
        self.exposure_s = float(next_item.exposure_s)
        log_debug(None, f"Trigger: before-check armed ({next_item.binning.name}, {next_item.exposure_s}s)")
        return True

    def should_trigger_after(self, previous_item: Optional[ExposureItem]) -> bool:
        if not self._is_light(previous_item):
            return False
        self.previous_binning = previous_item.binning
        self.exposure_s = float(previous_item.exposure_s)
        self.image_count += 1
        log_debug(None, f"Trigger: after-check armed (image #{self.image_count})")
        return True

    def take_after(self) -> Optional[Binning]:
        b = self.previous_binning
        self.previous_binning = None
        return b

    def take_before(self) -> Optional[Binning]:
        b = self.next_binning
        self.next_binning = None
        return b

    def mark_measured(self) -> None:
        self.last_image_count = self.image_count

    def rearm(self) -> None:
        # re-arm the exposure counter baseline
        self.last_image_count = self.image_count
