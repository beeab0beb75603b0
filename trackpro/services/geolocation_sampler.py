"""
Geolocation Sampler

Wraps the platform's position sensing (a PositionSource adapter) as a
cancellable, restartable watch. Sensor errors never cross the sample
callback; they are logged, recorded in SamplerStatus and reported through
the on_error side channel while the watch keeps running.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Iterable, List, Optional, Union

from trackpro.config import Settings, settings as default_settings
from trackpro.exceptions import (
    SensorPermissionError,
    SensorTimeoutError,
    SensorUnavailableError,
    TrackingError,
)
from trackpro.schemas.tracking import AccuracyTier, PositionSample

logger = logging.getLogger(__name__)

SampleCallback = Callable[[PositionSample], None]
ErrorCallback = Callable[[TrackingError], None]


@dataclass(frozen=True)
class SamplerOptions:
    accuracy: AccuracyTier = AccuracyTier.navigation
    min_interval_ms: int = 2000
    min_distance_m: float = 3.0
    maximum_age_ms: int = 0
    timeout_ms: int = 15000

    @classmethod
    def from_settings(
        cls,
        config: Optional[Settings] = None,
        accuracy: AccuracyTier = AccuracyTier.navigation,
    ) -> "SamplerOptions":
        cfg = config or default_settings
        return cls(
            accuracy=accuracy,
            min_interval_ms=cfg.UPDATE_INTERVAL_MS,
            min_distance_m=cfg.MIN_DISTANCE_CHANGE_METERS,
            maximum_age_ms=cfg.SENSOR_MAXIMUM_AGE_MS,
            timeout_ms=cfg.SENSOR_TIMEOUT_MS,
        )


class PositionSource(ABC):
    """Platform adapter for continuous position sensing."""

    @abstractmethod
    async def get_position(self, options: SamplerOptions) -> PositionSample:
        """One-shot reading. Raises a sensor error on failure."""

    @abstractmethod
    def stream(self, options: SamplerOptions) -> AsyncIterator[PositionSample]:
        """Continuous readings. Raises a sensor error to end the stream."""


@dataclass
class SamplerStatus:
    consecutive_failures: int = 0
    restarts: int = 0
    warning: bool = False
    permission_denied: bool = False
    last_error: Optional[str] = None


class WatchHandle:
    """Cancellable subscription to a running watch."""

    def __init__(self, task: asyncio.Task):
        self._task = task

    @property
    def active(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        """Stop the watch. Takes effect before the next sample is delivered."""
        self._task.cancel()

    async def wait(self) -> None:
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class GeolocationSampler:
    def __init__(self, source: PositionSource, config: Optional[Settings] = None):
        cfg = config or default_settings
        self.source = source
        self.timeout_backoff = cfg.SENSOR_TIMEOUT_BACKOFF_SECONDS
        self.unavailable_backoff = cfg.SENSOR_UNAVAILABLE_BACKOFF_SECONDS
        self.max_retries = cfg.SENSOR_MAX_RETRIES
        self.status = SamplerStatus()

    async def get_once(self, options: SamplerOptions) -> PositionSample:
        """Single reading for permission probing and manual refresh."""
        return await self.source.get_position(options)

    def start_watching(
        self,
        options: SamplerOptions,
        on_sample: SampleCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> WatchHandle:
        self.status = SamplerStatus()
        task = asyncio.create_task(self._watch(options, on_sample, on_error))
        return WatchHandle(task)

    async def _watch(
        self,
        options: SamplerOptions,
        on_sample: SampleCallback,
        on_error: Optional[ErrorCallback],
    ) -> None:
        while True:
            try:
                async for sample in self.source.stream(options):
                    self._record_success()
                    try:
                        on_sample(sample)
                    except Exception as e:
                        logger.error(f"Sample handler failed: {e}", exc_info=True)
                logger.info("Position stream ended")
                return
            except SensorPermissionError as e:
                logger.error(f"Location access denied: {e}")
                self.status.permission_denied = True
                self.status.last_error = str(e)
                self._report(on_error, e)
                return
            except SensorTimeoutError as e:
                logger.warning(f"Location request timeout, restarting watch in {self.timeout_backoff}s")
                self._record_failure(e, on_error)
                await asyncio.sleep(self.timeout_backoff)
            except SensorUnavailableError as e:
                logger.warning(f"Location information unavailable: {e}")
                self._record_failure(e, on_error)
                await asyncio.sleep(self.unavailable_backoff)
            self.status.restarts += 1

    def _record_success(self) -> None:
        if self.status.consecutive_failures:
            logger.info("Position sensing recovered")
        self.status.consecutive_failures = 0
        self.status.warning = False

    def _record_failure(self, error: TrackingError, on_error: Optional[ErrorCallback]) -> None:
        self.status.consecutive_failures += 1
        self.status.last_error = str(error)
        if self.status.consecutive_failures >= self.max_retries and not self.status.warning:
            self.status.warning = True
            logger.warning(
                f"Position sensing failing after {self.status.consecutive_failures} attempts"
            )
        self._report(on_error, error)

    def _report(self, on_error: Optional[ErrorCallback], error: TrackingError) -> None:
        if on_error is None:
            return
        try:
            on_error(error)
        except Exception as e:
            logger.error(f"Sensor error handler failed: {e}", exc_info=True)


# ==================== Platform adapters ====================


class ReplayPositionSource(PositionSource):
    """
    Replays a recorded track, for simulation and tests.

    Items may be PositionSample or TrackingError instances; an error item is
    raised from the stream at that point, like a live sensor failure. The
    cursor survives restarts, so a restarted watch resumes where it stopped.
    When realtime is set, playback sleeps for the gap between captures
    divided by speedup.
    """

    def __init__(
        self,
        items: Iterable[Union[PositionSample, TrackingError]],
        realtime: bool = False,
        speedup: float = 1.0,
    ):
        self.items: List[Union[PositionSample, TrackingError]] = list(items)
        self.realtime = realtime
        self.speedup = speedup
        self._cursor = 0
        self._last: Optional[PositionSample] = None

    @property
    def remaining(self) -> int:
        return len(self.items) - self._cursor

    async def get_position(self, options: SamplerOptions) -> PositionSample:
        """
        Current fix. Before playback starts this consumes the next item, so a
        one-shot reading is not streamed again; a denied permission stays denied.
        """
        if self._last is not None:
            return self._last
        if self._cursor >= len(self.items):
            raise SensorUnavailableError("Track exhausted")
        item = self.items[self._cursor]
        if isinstance(item, SensorPermissionError):
            raise item
        self._cursor += 1
        if isinstance(item, TrackingError):
            raise item
        self._last = item
        return item

    async def stream(self, options: SamplerOptions) -> AsyncIterator[PositionSample]:
        while self._cursor < len(self.items):
            item = self.items[self._cursor]
            self._cursor += 1
            if isinstance(item, TrackingError):
                raise item
            if self.realtime and self._last is not None:
                gap = (item.captured_at - self._last.captured_at).total_seconds()
                if gap > 0:
                    await asyncio.sleep(gap / self.speedup)
            self._last = item
            yield item
