from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import httpx

from discovery.core.settings import Settings

logger = logging.getLogger(__name__)


class ConnectivityProbe:
    """
    Answers "is the network reachable?" with a short HEAD request, cached for
    a few seconds so a burst of lookups costs one probe.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        cfg: Settings,
        *,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.url = cfg.connectivity_probe_url
        self.timeout = cfg.connectivity_timeout_s
        self.cache_s = cfg.connectivity_cache_s
        self._monotonic = monotonic
        self._last: Optional[bool] = None
        self._checked_at = 0.0

    async def is_online(self) -> bool:
        now = self._monotonic()
        if self._last is not None and (now - self._checked_at) < self.cache_s:
            return self._last

        try:
            r = await self.client.head(self.url, timeout=self.timeout)
            online = r.status_code < 500
        except httpx.HTTPError as e:
            logger.info("[connectivity] probe failed: %s", e)
            online = False

        if online != self._last:
            logger.info("[connectivity] online=%s", online)
        self._last = online
        self._checked_at = now
        return online
