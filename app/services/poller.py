"""Client-side readiness polling after a guest payment.

The browser lands on the success page before (or after) the gateway webhook has
been reconciled. This loop asks the readiness endpoint whether a sign-in
credential exists for the checkout session, a bounded number of times, then
falls back to the "email me a sign-in link" endpoint exactly once. It runs as
an asyncio task so leaving the page (cancel()) stops it without a fallback.
"""
from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import httpx

log = logging.getLogger("uvicorn.error")

READINESS_PATH = "/auth/payment-success"
FALLBACK_PATH = "/auth/magic-link"
SIGN_IN_PATH = "/auth/sign-in"


class PollStatus(str, enum.Enum):
    ready = "ready"
    fallback = "fallback"
    cancelled = "cancelled"


@dataclass
class PollOutcome:
    status: PollStatus
    attempts: int
    redirect_url: str | None = None


class ReconciliationPoller:
    def __init__(
        self,
        client: httpx.AsyncClient,
        correlation_key: str | None,
        email: str | None = None,
        *,
        attempts: int = 15,
        interval: float = 1.0,
        navigate: Callable[[str], Any] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.client = client
        self.correlation_key = (correlation_key or "").strip() or None
        self.email = (email or "").strip() or None
        self.attempts = attempts
        self.interval = interval
        self.navigate = navigate
        self.sleep = sleep
        self.attempt = 0
        self.fallback_triggered = False
        self._task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, correlation_key: str | None, email: str | None, settings, **kwargs):
        """Poller with the configured attempt count and interval."""
        kwargs.setdefault("attempts", settings.poll_attempts)
        kwargs.setdefault("interval", settings.poll_interval_seconds)
        return cls(client, correlation_key, email, **kwargs)

    @property
    def deadline_seconds(self) -> float:
        return self.attempts * self.interval

    async def run(self) -> PollOutcome:
        if self.correlation_key is None:
            return await self._fallback()
        for attempt in range(1, self.attempts + 1):
            self.attempt = attempt
            url = await self._check()
            if url:
                await self._go(url)
                return PollOutcome(PollStatus.ready, attempt, url)
            await self.sleep(self.interval)
        return await self._fallback()

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.ensure_future(self.run())
        return self._task

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> PollOutcome:
        task = self.start()
        try:
            return await task
        except asyncio.CancelledError:
            return PollOutcome(PollStatus.cancelled, self.attempt)

    async def _check(self) -> str | None:
        try:
            r = await self.client.post(READINESS_PATH, json={"session_id": self.correlation_key})
        except httpx.HTTPError as e:
            log.warning("Readiness attempt %d/%d failed: %s", self.attempt, self.attempts, e)
            return None
        if r.status_code == 200:
            try:
                body = r.json()
            except ValueError as e:
                log.warning("Readiness attempt %d/%d: unreadable response body: %s", self.attempt, self.attempts, e)
                return None
            return body.get("sign_in_url") if isinstance(body, dict) else None
        if r.status_code != 404:
            log.warning("Readiness attempt %d/%d: unexpected status %s", self.attempt, self.attempts, r.status_code)
        return None

    async def _fallback(self) -> PollOutcome:
        self.fallback_triggered = True
        if not self.email:
            url = f"{SIGN_IN_PATH}?message=payment-success"
            await self._go(url)
            return PollOutcome(PollStatus.fallback, self.attempt, url)
        encoded = quote(self.email, safe="")
        url = f"{SIGN_IN_PATH}?message=magic-link-sent&email={encoded}"
        try:
            r = await self.client.post(FALLBACK_PATH, json={"email": self.email})
            if r.status_code >= 400:
                url = f"{SIGN_IN_PATH}?message=payment-success&email={encoded}"
        except httpx.HTTPError as e:
            log.warning("Fallback sign-in link request failed: %s", e)
            url = f"{SIGN_IN_PATH}?message=payment-success&email={encoded}"
        await self._go(url)
        return PollOutcome(PollStatus.fallback, self.attempt, url)

    async def _go(self, url: str) -> None:
        if self.navigate is None:
            return
        result = self.navigate(url)
        if inspect.isawaitable(result):
            await result
