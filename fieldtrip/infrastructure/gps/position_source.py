"""Position sources: gpsd client, simulated walk and recorded replay."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import math
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Protocol, Sequence

from ...domain.models import PositionSample
from .distance import calculate_distance

logger = logging.getLogger(__name__)

SampleCallback = Callable[[PositionSample], None]


class PositionSource(Protocol):
    """Live supplier of position samples."""

    async def request_access(self) -> bool: ...

    async def subscribe(self, on_sample: SampleCallback) -> int: ...

    async def unsubscribe(self, handle: int) -> None: ...


@dataclass
class SampleThrottle:
    """
    Delivery cadence filter.

    A sample passes when it is at least ``min_distance_m`` from the last
    delivered sample and at least ``min_interval_s`` after it.
    The first sample always passes.
    """

    min_distance_m: float = 0.0
    min_interval_s: float = 0.0
    _last: Optional[PositionSample] = field(default=None, repr=False)

    def accept(self, sample: PositionSample) -> bool:
        last = self._last
        if last is not None:
            if self.min_distance_m > 0:
                moved = calculate_distance(
                    last.latitude, last.longitude, sample.latitude, sample.longitude
                )
                if moved < self.min_distance_m:
                    return False
            if self.min_interval_s > 0:
                waited = (sample.timestamp - last.timestamp).total_seconds()
                if waited < self.min_interval_s:
                    return False
        self._last = sample
        return True

    def reset(self) -> None:
        self._last = None


class StreamingPositionSource:
    """
    Base for sources backed by an async sample stream.

    Each subscription runs ``stream_samples()`` in its own task and hands
    throttled samples to the callback. Unsubscribing cancels the task and
    waits for it, so no callback fires after ``unsubscribe`` returns.
    """

    def __init__(self, throttle: SampleThrottle | None = None) -> None:
        self.throttle = throttle or SampleThrottle()
        self._tasks: dict[int, asyncio.Task[None]] = {}
        self._ids = itertools.count(1)

    async def request_access(self) -> bool:
        return True

    def stream_samples(self) -> AsyncIterator[PositionSample]:
        raise NotImplementedError

    async def subscribe(self, on_sample: SampleCallback) -> int:
        """Start delivering samples to ``on_sample``. Returns a handle."""
        handle = next(self._ids)
        self._tasks[handle] = asyncio.create_task(self._pump(on_sample))
        logger.debug("%s subscription %d started", type(self).__name__, handle)
        return handle

    async def unsubscribe(self, handle: int) -> None:
        """Stop a subscription. Unknown handles are ignored."""
        task = self._tasks.pop(handle, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("%s subscription %d ended with error: %s", type(self).__name__, handle, e)
        logger.debug("%s subscription %d stopped", type(self).__name__, handle)

    @property
    def subscription_count(self) -> int:
        return len(self._tasks)

    async def close(self) -> None:
        for handle in list(self._tasks):
            await self.unsubscribe(handle)

    async def _pump(self, on_sample: SampleCallback) -> None:
        async for sample in self.stream_samples():
            if not self.throttle.accept(sample):
                continue
            try:
                on_sample(sample)
            except Exception as e:
                logger.error("Position callback error: %s", e)


@dataclass
class GpsdSettings:
    """GPS daemon connection settings."""

    host: str = "localhost"
    port: int = 2947
    reconnect_delay: float = 5.0
    timeout: float = 10.0
    max_reconnect_attempts: int = 0  # 0 = infinite


class GpsdPositionSource(StreamingPositionSource):
    """
    gpsd client with auto-reconnect.

    Access is granted when the daemon accepts a connection. TPV reports
    with a 2D/3D fix become PositionSamples; SKY reports are ignored.
    """

    def __init__(
        self,
        settings: GpsdSettings | None = None,
        throttle: SampleThrottle | None = None,
    ) -> None:
        super().__init__(throttle)
        self.settings = settings or GpsdSettings()
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reconnect_attempts = 0
        self.error_count = 0

    @property
    def is_connected(self) -> bool:
        return self._reader is not None

    async def request_access(self) -> bool:
        if self.is_connected:
            return True
        return await self.connect()

    async def connect(self) -> bool:
        """
        Connect to gpsd daemon.

        Returns:
            True if connected successfully, False otherwise.
        """
        host, port = self.settings.host, self.settings.port
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.settings.timeout,
            )

            # Enable JSON streaming mode
            self._writer.write(b'?WATCH={"enable":true,"json":true}\n')
            await self._writer.drain()

            self._reconnect_attempts = 0
            logger.info("Connected to gpsd at %s:%d", host, port)
            return True

        except asyncio.TimeoutError:
            logger.warning("GPS connection timeout to %s:%d", host, port)
        except ConnectionRefusedError:
            logger.warning("GPS connection refused - is gpsd running?")
        except OSError as e:
            logger.warning("GPS connection failed: %s", e)

        self.error_count += 1
        self._reader = None
        self._writer = None
        return False

    async def disconnect(self) -> None:
        """Disconnect from gpsd gracefully."""
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is None:
            return
        try:
            writer.write(b'?WATCH={"enable":false}\n')
            await writer.drain()
            writer.close()
            await writer.wait_closed()
        except (OSError, ConnectionError) as e:
            logger.debug("GPS disconnect error ignored: %s", e)

    async def close(self) -> None:
        await super().close()
        await self.disconnect()

    async def stream_samples(self) -> AsyncIterator[PositionSample]:
        """
        Yield samples as gpsd reports them.

        Reconnects on errors until ``max_reconnect_attempts`` is reached.
        """
        while True:
            if self._reader is None:
                if not await self.connect():
                    self._reconnect_attempts += 1
                    limit = self.settings.max_reconnect_attempts
                    if limit > 0 and self._reconnect_attempts >= limit:
                        logger.error("GPS max reconnect attempts reached, stopping")
                        return
                    await asyncio.sleep(self.settings.reconnect_delay)
                    continue

            try:
                line = await asyncio.wait_for(
                    self._reader.readline(),  # type: ignore[union-attr]
                    timeout=self.settings.timeout,
                )
                if not line:
                    raise ConnectionError("GPS connection closed by server")

                data = json.loads(line.decode("utf-8"))
                if not isinstance(data, dict):
                    logger.debug("GPS report ignored, not an object: %r", data)
                    continue
                if data.get("class") == "TPV":
                    sample = parse_tpv(data)
                    if sample is not None:
                        yield sample

            except asyncio.TimeoutError:
                logger.debug("GPS read timeout, connection still alive")

            except json.JSONDecodeError as e:
                logger.warning("GPS JSON parse error: %s", e)

            except (ConnectionError, OSError) as e:
                logger.warning("GPS stream error: %s, reconnecting...", e)
                self.error_count += 1
                await self.disconnect()
                await asyncio.sleep(self.settings.reconnect_delay)


def parse_tpv(data: dict) -> Optional[PositionSample]:
    """
    Parse a gpsd TPV (Time-Position-Velocity) report.

    Returns:
        PositionSample for a 2D/3D fix with lat/lon, None otherwise
    """
    if "lat" not in data or "lon" not in data:
        return None

    # Mode: 0=unknown, 1=no fix, 2=2D, 3=3D
    if data.get("mode", 0) < 2:
        return None

    try:
        timestamp = (
            datetime.fromisoformat(data["time"].replace("Z", "+00:00"))
            if data.get("time")
            else datetime.now(UTC)
        )
        return PositionSample(
            latitude=float(data["lat"]),
            longitude=float(data["lon"]),
            altitude=data.get("altMSL", data.get("alt")),
            accuracy=data.get("eph"),
            speed=data.get("speed"),
            heading=data.get("track"),
            timestamp=timestamp,
        )
    except (KeyError, ValueError, TypeError) as e:
        logger.error("TPV parse error: %s - data: %s", e, data)
        return None


class MockPositionSource(StreamingPositionSource):
    """
    Simulated walker for development.

    Walks east from the start point at a constant speed with a little
    north-south wobble.
    """

    def __init__(
        self,
        start_lat: float = 55.6761,  # Copenhagen
        start_lon: float = 12.5683,
        speed_mps: float = 1.4,
        interval: float = 1.0,
        granted: bool = True,
        throttle: SampleThrottle | None = None,
    ) -> None:
        super().__init__(throttle)
        self._start_lat = start_lat
        self._start_lon = start_lon
        self._speed = speed_mps
        self._interval = interval
        self._granted = granted
        self._step = 0
        self._origin: datetime | None = None

    async def request_access(self) -> bool:
        logger.info("Mock GPS access %s", "granted" if self._granted else "denied")
        return self._granted

    async def stream_samples(self) -> AsyncIterator[PositionSample]:
        meters_per_deg_lat = 111_320.0
        meters_per_deg_lon = meters_per_deg_lat * math.cos(math.radians(self._start_lat))

        if self._origin is None:
            self._origin = datetime.now(UTC)

        while True:
            elapsed = self._step * self._interval
            walked = elapsed * self._speed
            wobble = 3.0 * math.sin(self._step / 5.0)
            sample = PositionSample(
                latitude=self._start_lat + wobble / meters_per_deg_lat,
                longitude=self._start_lon + walked / meters_per_deg_lon,
                altitude=15.0,
                accuracy=5.0,
                speed=self._speed,
                heading=90.0,
                timestamp=self._origin + timedelta(seconds=elapsed),
            )
            self._step += 1
            yield sample
            await asyncio.sleep(self._interval)


class ReplayPositionSource(StreamingPositionSource):
    """Plays back a recorded sequence of samples, then goes quiet."""

    def __init__(
        self,
        samples: Sequence[PositionSample],
        interval: float = 0.0,
        throttle: SampleThrottle | None = None,
    ) -> None:
        super().__init__(throttle)
        self._samples = list(samples)
        self._interval = interval
        self._position = 0

    @property
    def remaining(self) -> int:
        return len(self._samples) - self._position

    async def stream_samples(self) -> AsyncIterator[PositionSample]:
        # Resubscribing continues where the previous subscription stopped.
        while self._position < len(self._samples):
            sample = self._samples[self._position]
            self._position += 1
            yield sample
            await asyncio.sleep(self._interval)


def load_samples(path: Path) -> list[PositionSample]:
    """
    Load a recorded track from JSON.

    Accepts a list of objects with ``latitude``/``longitude`` (and the other
    PositionSample fields). Samples without a timestamp are spaced one
    second apart.
    """
    raw = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a JSON list of samples")

    base = datetime.now(UTC)
    samples = []
    for i, item in enumerate(raw):
        item = dict(item)
        item.setdefault("timestamp", base + timedelta(seconds=i))
        samples.append(PositionSample.model_validate(item))
    return samples
