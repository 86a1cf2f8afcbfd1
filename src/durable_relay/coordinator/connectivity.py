"""
Connectivity monitor for the path to the sink.

The online edge is only a hint to wake the dispatcher early: delivery is still
attempted and failures handled normally, and the dispatcher's periodic tick
keeps draining when no transition is ever observed.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

import httpx
from loguru import logger


class Reachability(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


Probe = Callable[[], Awaitable[bool]]
OnlineCallback = Callable[[], Awaitable[None]]


class HttpReachabilityProbe:
    """Reachable when the URL answers with any status below 500."""

    def __init__(self, url: str, *, timeout: float = 5.0, method: str = "HEAD") -> None:
        self.url = url
        self.method = method
        self._timeout = timeout

    async def __call__(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.request(self.method, self.url)
        except httpx.HTTPError as exc:
            logger.debug(f"Reachability probe {self.url} failed: {type(exc).__name__}: {exc}")
            return False
        return resp.status_code < 500


class ConnectivityMonitor:
    """Tracks Online/Offline and fires callbacks on the Offline -> Online edge."""

    def __init__(
        self,
        probe: Optional[Probe] = None,
        *,
        interval_sec: float = 30.0,
        initial: Reachability = Reachability.UNKNOWN,
        name: str = "sink",
    ) -> None:
        self._probe = probe
        self.interval_sec = interval_sec
        self.name = name
        self._status = initial
        self._callbacks: list[OnlineCallback] = []
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    @property
    def status(self) -> Reachability:
        return self._status

    @property
    def is_online(self) -> bool:
        return self._status == Reachability.ONLINE

    def subscribe(self, callback: OnlineCallback) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unsubscribe(self, callback: OnlineCallback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    async def set_status(self, status: Union[Reachability, bool]) -> None:
        """Record a reachability observation (from the probe or a platform hook)."""
        if isinstance(status, bool):
            status = Reachability.ONLINE if status else Reachability.OFFLINE
        previous, self._status = self._status, status
        if previous == status:
            return
        logger.info(f"Connectivity '{self.name}': {previous.value} -> {status.value}")
        if previous == Reachability.OFFLINE and status == Reachability.ONLINE:
            await self._fire_online()

    async def _fire_online(self) -> None:
        for callback in list(self._callbacks):
            try:
                await callback()
            except Exception as exc:
                logger.warning(f"Online callback error (ignored): {type(exc).__name__}: {exc}")

    async def check(self) -> Reachability:
        """Run the probe once and apply the result."""
        if self._probe is None:
            return self._status
        try:
            ok = bool(await self._probe())
        except Exception as exc:
            logger.debug(f"Connectivity probe raised {type(exc).__name__}: {exc}")
            ok = False
        await self.set_status(ok)
        return self._status

    def start(self) -> None:
        if self._task is not None or self._probe is None:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name=f"connectivity-{self.name}")

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _run(self) -> None:
        while not self._stop.is_set():
            await self.check()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_sec)
            except asyncio.TimeoutError:
                pass
