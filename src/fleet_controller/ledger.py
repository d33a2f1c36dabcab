"""
In-flight instance bookkeeping.

The provider's instance listing lags behind launch requests, so every launch
that has been requested but not yet confirmed is tracked here per image. Caps
are checked against provider counts plus these in-flight counts.
"""
import logging
import sys
import threading
from collections import defaultdict
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class CapacityLedger:
    """Thread-safe per-image counter of launches in flight."""

    def __init__(self, provider, instance_cap: int = sys.maxsize):
        """
        Args:
            provider: Compute provider exposing count_instances(image_id=None)
            instance_cap: Global cap across all images
        """
        self.provider = provider
        self.instance_cap = instance_cap
        self._in_flight: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def reserve(self, image_id: str, image_cap: int = sys.maxsize) -> bool:
        """Reserve a launch slot for image_id if neither cap is reached.

        Provider counts are read before taking the lock; only the
        compare-and-increment runs under it. Provider errors propagate.

        Returns:
            True if a slot was reserved, False if a cap refused it
        """
        estimated_total = self.provider.count_instances()
        estimated_for_image = self.provider.count_instances(image_id)

        with self._lock:
            current = self._in_flight.get(image_id, 0)
            estimated_total += sum(self._in_flight.values())
            estimated_for_image += current

            if estimated_total >= self.instance_cap:
                logger.info(f"Total instance cap of {self.instance_cap} reached, not provisioning.")
                return False

            if estimated_for_image >= image_cap:
                logger.info(f"Image instance cap of {image_cap} reached for {image_id}, not provisioning.")
                return False

            logger.info(
                f"Provisioning for image {image_id}; "
                f"estimated total instances: {estimated_total}; "
                f"estimated instances for image: {estimated_for_image}"
            )
            self._in_flight[image_id] = current + 1
            return True

    def release(self, image_id: str) -> None:
        """Give back a slot taken by reserve(); unknown images are ignored."""
        with self._lock:
            if image_id not in self._in_flight:
                return
            self._in_flight[image_id] = max(self._in_flight[image_id] - 1, 0)

    def in_flight(self, image_id: Optional[str] = None) -> int:
        """Current in-flight count for one image, or across all images."""
        with self._lock:
            if image_id is None:
                return sum(self._in_flight.values())
            return self._in_flight.get(image_id, 0)
