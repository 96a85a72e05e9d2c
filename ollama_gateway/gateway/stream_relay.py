"""Relay of long-running backend operations as newline-delimited JSON.

A relay moves through ``INIT -> STREAMING -> COMPLETE | FAILED``; a client
disconnect moves it to ``CLIENT_CLOSED`` from any non-terminal state. Every
terminal transition goes through ``StreamRelay._terminate`` so the client
stream is finished exactly once, however many of backend end, backend
error and client close fire.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable
from uuid import uuid4

import httpx

from ollama_gateway.gateway.backend_client import BackendClient, BackendError

logger = logging.getLogger("uvicorn.error")


class RelayState(str, Enum):
    INIT = "init"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"
    CLIENT_CLOSED = "client_closed"


TERMINAL_STATES = frozenset(
    {RelayState.COMPLETE, RelayState.FAILED, RelayState.CLIENT_CLOSED}
)


class StreamDecodeError(ValueError):
    """A streamed line is not valid JSON."""


class StreamTerminationError(RuntimeError):
    """The backend stream failed after it was established."""


@dataclass(slots=True)
class RelayOperation:
    payload: dict[str, Any]
    path: str = "/api/pull"
    request_id: str = field(default_factory=lambda: uuid4().hex[:12])


def decode_record(line: str) -> bytes:
    record = line.strip()
    try:
        json.loads(record)
    except ValueError as exc:
        raise StreamDecodeError(str(exc)) from exc
    return record.encode("utf-8") + b"\n"


def error_record(message: str) -> bytes:
    return json.dumps({"status": "error", "error": message}).encode("utf-8") + b"\n"


class StreamRelay:
    def __init__(
        self,
        client: BackendClient,
        operation: RelayOperation,
        *,
        reassemble_partial_lines: bool = False,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> None:
        self._client = client
        self._operation = operation
        self._reassemble = reassemble_partial_lines
        self._is_disconnected = is_disconnected
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._state = RelayState.INIT
        self.terminations = 0
        self.forwarded = 0
        self.dropped = 0

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state in TERMINAL_STATES

    def mark_client_closed(self) -> bool:
        return self._terminate(RelayState.CLIENT_CLOSED)

    def _terminate(self, state: RelayState, error: str | None = None) -> bool:
        if self.closed:
            return False
        self._state = state
        self.terminations += 1
        logger.info(
            "relay_finished request_id=%s state=%s forwarded=%d dropped=%d error=%s",
            self._operation.request_id,
            state.value,
            self.forwarded,
            self.dropped,
            error,
        )
        return True

    async def _client_gone(self) -> bool:
        if self.closed:
            return True
        if self._is_disconnected is not None and await self._is_disconnected():
            self.mark_client_closed()
            return True
        return False

    def _split(self, text: str) -> list[str]:
        if not self._reassemble:
            return text.split("\n")
        complete, _, self._pending = (self._pending + text).rpartition("\n")
        return complete.split("\n") if complete else []

    def _records(self, lines: list[str]) -> list[bytes]:
        records: list[bytes] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                records.append(decode_record(line))
            except StreamDecodeError as exc:
                self.dropped += 1
                logger.warning(
                    "relay_decode_dropped request_id=%s line=%r error=%s",
                    self._operation.request_id,
                    line[:200],
                    exc,
                )
        return records

    def _leftover(self) -> list[str]:
        tail = self._decoder.decode(b"", final=True)
        if self._reassemble:
            tail, self._pending = self._pending + tail, ""
        return [tail]

    async def stream(self) -> AsyncIterator[bytes]:
        if self.closed:
            return
        operation = self._operation
        try:
            logger.info(
                "relay_started request_id=%s path=%s target=%s",
                operation.request_id,
                operation.path,
                self._client.target_store.get(),
            )
            try:
                upstream = await self._client.open_stream(
                    operation.path, operation.payload
                )
            except BackendError as exc:
                if await self._client_gone():
                    return
                if self._terminate(RelayState.FAILED, exc.cause):
                    yield error_record(exc.cause)
                return

            try:
                if self.closed:
                    return
                self._state = RelayState.STREAMING
                async for chunk in upstream.aiter_bytes():
                    if await self._client_gone():
                        return
                    text = self._decoder.decode(chunk)
                    for record in self._records(self._split(text)):
                        if self.closed:
                            return
                        self.forwarded += 1
                        yield record
                for record in self._records(self._leftover()):
                    self.forwarded += 1
                    yield record
            except (httpx.HTTPError, httpx.StreamError) as exc:
                failure = StreamTerminationError(str(exc) or exc.__class__.__name__)
                logger.warning(
                    "relay_stream_error request_id=%s error_type=%s error=%s",
                    operation.request_id,
                    exc.__class__.__name__,
                    failure,
                )
                if await self._client_gone():
                    return
                if self._terminate(RelayState.FAILED, str(failure)):
                    yield error_record(str(failure))
                return
            finally:
                await upstream.aclose()

            self._terminate(RelayState.COMPLETE)
        except (GeneratorExit, asyncio.CancelledError):
            self.mark_client_closed()
            raise
