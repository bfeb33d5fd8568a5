"""Current block height with caching, fallback and extrapolation."""
from __future__ import annotations

import math
import time
from typing import Any, Callable, Optional, Protocol

import httpx
import structlog

from powjobs.exceptions import HeightOracleError
from powjobs.observability.tracing import log_height_estimate, log_height_fallback
from powjobs.settings import HeightSettings, PowSettings

LOGGER = structlog.get_logger(__name__)


class HeightSource(Protocol):
    name: str

    def fetch_height(self) -> int:
        ...


def _coerce_height(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"unexpected block height value: {value!r}")
    if isinstance(value, int):
        height = value
    else:
        height = int(str(value).strip())
    if height <= 0:
        raise ValueError(f"block height must be positive, got {height}")
    return height


class ConsensusApiSource:
    """Reads ``/structs/blockheight`` from the chain's REST API."""

    name = "consensus_api"

    def __init__(self, base_url: str, *, client: httpx.Client) -> None:
        self._url = f"{base_url.rstrip('/')}/structs/blockheight"
        self._client = client

    def fetch_height(self) -> int:
        response = self._client.get(self._url)
        response.raise_for_status()
        payload = response.json()
        if isinstance(payload, dict):
            for key in ("blockheight", "block_height", "height"):
                if payload.get(key) is not None:
                    return _coerce_height(payload[key])
            raise ValueError(f"no height field in response: {sorted(payload)}")
        return _coerce_height(payload)


class RpcStatusSource:
    """Reads ``latest_block_height`` from the Tendermint RPC ``/status`` endpoint."""

    name = "consensus_rpc"

    def __init__(self, base_url: str, *, client: httpx.Client) -> None:
        self._url = f"{base_url.rstrip('/')}/status"
        self._client = client

    def fetch_height(self) -> int:
        response = self._client.get(self._url)
        response.raise_for_status()
        payload = response.json()
        try:
            value = payload["result"]["sync_info"]["latest_block_height"]
        except (KeyError, TypeError) as exc:
            raise ValueError("status response has no latest_block_height") from exc
        return _coerce_height(value)


class HeightOracle:
    """Answers the current block height without ever waiting for certainty.

    Successful reads are cached for ``cache_seconds``. When every source
    fails, the last observed height is extrapolated by one block per
    ``block_interval_seconds`` elapsed since it was observed.
    """

    def __init__(
        self,
        primary: HeightSource,
        secondary: Optional[HeightSource] = None,
        *,
        cache_seconds: float = 10.0,
        block_interval_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._sources = [source for source in (primary, secondary) if source is not None]
        self._cache_seconds = cache_seconds
        self._block_interval = block_interval_seconds
        self._clock = clock
        self._client = client
        self._last_height: Optional[int] = None
        self._last_seen: float = 0.0

    @property
    def last_known_height(self) -> Optional[int]:
        return self._last_height

    def get_current_height(self) -> int:
        now = self._clock()
        if self._last_height is not None and now - self._last_seen < self._cache_seconds:
            return self._last_height

        for source in self._sources:
            try:
                height = source.fetch_height()
            except (httpx.HTTPError, ValueError) as exc:
                log_height_fallback(source=source.name, reason=str(exc))
                continue
            self._last_height = height
            self._last_seen = now
            return height

        if self._last_height is None:
            raise HeightOracleError("Failed to get block height from any source and no prior height is known")
        blocks_elapsed = math.floor((now - self._last_seen) / self._block_interval)
        estimated = self._last_height + blocks_elapsed
        log_height_estimate(estimated=estimated, last_known=self._last_height, blocks_elapsed=blocks_elapsed)
        return estimated

    def close(self) -> None:
        if self._client is not None:
            self._client.close()


def build_height_oracle(
    height: HeightSettings,
    pow_settings: PowSettings,
    *,
    transport: Optional[httpx.BaseTransport] = None,
) -> HeightOracle:
    """Create an oracle over the configured REST API and, when set, the RPC endpoint."""
    client = httpx.Client(timeout=height.timeout_seconds, transport=transport)
    primary = ConsensusApiSource(height.consensus_api_url, client=client)
    secondary = RpcStatusSource(height.consensus_rpc_url, client=client) if height.consensus_rpc_url else None
    return HeightOracle(
        primary,
        secondary,
        cache_seconds=height.cache_seconds,
        block_interval_seconds=pow_settings.block_interval_seconds,
        client=client,
    )
