"""Request/reply correlation over the unframed device line stream."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from typing import Any

import msgspec
import tenacity

from ..transport.serial import ChannelWriteError, SerialChannel

logger = logging.getLogger("ultrabridge.matcher")


class NoResponse(RuntimeError):
    """Every attempt timed out without a matching line."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"No response after {attempts} attempt(s)")
        self.attempts = attempts


class ReplyPending(RuntimeError):
    """A request is already in flight; only one reply slot exists."""


class ReplyCancelled(RuntimeError):
    """The in-flight request was abandoned by stop or channel loss."""


class PendingReply(msgspec.Struct):
    """Book-keeping for the single reply slot."""

    pattern: re.Pattern[str]
    deadline: float
    future: asyncio.Future[re.Match[str]]
    channel: Any = None
    observer: Any = None


class ReplyMatch(msgspec.Struct, frozen=True):
    match: re.Match[str]
    attempts: int

    @property
    def value(self) -> str:
        if self.match.re.groups:
            return self.match.group(1)
        return self.match.group(0)


class ReplyMatcher:
    """Writes a command and waits for the next inbound line matching a pattern.

    Exactly one line observer is installed per attempt and it is removed on
    match, on timeout and on cancellation, so a stale observer can never
    resolve a later request.
    """

    def __init__(self, channel: SerialChannel | None = None) -> None:
        self._channel = channel
        self._pending: PendingReply | None = None
        self._in_flight = False
        self._cancel_event: asyncio.Event | None = None

    @property
    def busy(self) -> bool:
        return self._in_flight

    @property
    def pending(self) -> PendingReply | None:
        return self._pending

    def attach(self, channel: SerialChannel) -> None:
        self._channel = channel

    def detach(self) -> None:
        self.cancel()
        self._channel = None

    async def request(
        self,
        command: bytes,
        pattern: re.Pattern[str],
        *,
        per_attempt_timeout: float,
        max_attempts: int,
        inter_attempt_delay: float,
    ) -> ReplyMatch:
        """Return the first match, or raise ``NoResponse``.

        Raises ``ReplyPending`` when another request is in flight and
        ``ReplyCancelled`` when ``cancel`` is called meanwhile.
        """
        if self._in_flight:
            raise ReplyPending("Request already in progress")
        channel = self._channel
        if channel is None:
            raise ChannelWriteError("Port closed")

        cancelled = asyncio.Event()
        self._in_flight = True
        self._cancel_event = cancelled
        attempts = max(1, max_attempts)

        async def _sleep(seconds: float) -> None:
            # Returns early once the request is cancelled.
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(cancelled.wait(), seconds)

        retryer = tenacity.AsyncRetrying(
            stop=tenacity.stop_after_attempt(attempts),
            wait=tenacity.wait_fixed(max(0.0, inter_attempt_delay)),
            retry=tenacity.retry_if_exception_type(asyncio.TimeoutError),
            before_sleep=self._on_retry_sleep,
            sleep=_sleep,
            reraise=False,
        )

        try:
            async for attempt in retryer:
                with attempt:
                    if cancelled.is_set():
                        raise ReplyCancelled("Request cancelled")
                    number = attempt.retry_state.attempt_number
                    match = await self._single_attempt(
                        channel, command, pattern, per_attempt_timeout
                    )
                    logger.debug("Reply matched on attempt %d: %r", number, match.group(0))
                    return ReplyMatch(match=match, attempts=number)
        except tenacity.RetryError:
            logger.warning("No reply from device after %d attempt(s).", attempts)
            raise NoResponse(attempts) from None
        finally:
            # A cancelled request has already released the slot.
            if self._cancel_event is cancelled:
                self._retire()
                self._in_flight = False
                self._cancel_event = None
        raise NoResponse(attempts)

    def cancel(self) -> None:
        """Fail the in-flight request, if any, and free the reply slot.

        A request sleeping between attempts wakes up immediately and raises
        ``ReplyCancelled``; a new request may start right away.
        """
        cancelled = self._cancel_event
        if not self._in_flight or cancelled is None:
            return
        cancelled.set()
        pending = self._pending
        if pending is not None and not pending.future.done():
            pending.future.set_exception(ReplyCancelled("Request cancelled"))
        self._retire()
        self._in_flight = False
        self._cancel_event = None

    def _on_retry_sleep(self, retry_state: tenacity.RetryCallState) -> None:
        logger.info(
            "Timeout waiting for device reply (attempt %d); retrying in %.2fs",
            retry_state.attempt_number,
            retry_state.next_action.sleep if retry_state.next_action else 0,
        )

    async def _single_attempt(
        self,
        channel: SerialChannel,
        command: bytes,
        pattern: re.Pattern[str],
        timeout: float,
    ) -> re.Match[str]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[re.Match[str]] = loop.create_future()

        def _observe(line: str) -> None:
            if future.done():
                return
            match = pattern.search(line)
            if match is not None:
                future.set_result(match)

        pending = PendingReply(
            pattern=pattern,
            deadline=loop.time() + timeout,
            future=future,
            channel=channel,
            observer=_observe,
        )
        self._pending = pending
        channel.add_listener(_observe)
        try:
            try:
                channel.write(command)
            except ChannelWriteError as exc:
                # The attempt still waits out its timeout.
                logger.warning("Write failed during reply wait: %s", exc)
            return await asyncio.wait_for(future, timeout)
        finally:
            self._retire(pending)

    def _retire(self, only: PendingReply | None = None) -> None:
        pending = self._pending
        if pending is None or (only is not None and pending is not only):
            return
        self._pending = None
        if pending.channel is not None and pending.observer is not None:
            pending.channel.remove_listener(pending.observer)


__all__ = [
    "NoResponse",
    "PendingReply",
    "ReplyCancelled",
    "ReplyMatch",
    "ReplyMatcher",
    "ReplyPending",
]
