"""
Audio re-framing and ordered downstream delivery.

The AudioFramer accumulates raw agent audio for one session and emits it to the
downstream client as frames no larger than ``max_frame_size``. It is also the
session's single ordered outlet: non-audio messages are queued behind any frames
already pending, so a later upstream event can never overtake an earlier one.

Emission is single-flight. One drain task works through the pending list,
sleeping ``frame_delay`` between consecutive frames of the same split when
pacing is enabled. Bytes ingested while a split is being emitted stay in the
accumulation buffer until the next flush and are appended behind the in-flight
split, never interleaved into it.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, List, Optional

from agent_relay.bot.exceptions import DownstreamSendFailure
from agent_relay.config.constants import DEFAULT_FRAME_DELAY, LOGGER_NAME, MAX_FRAME_SIZE
from agent_relay.models.message_schemas import AudioFrameMessage, BaseMessage

logger = logging.getLogger(LOGGER_NAME)

SendFunc = Callable[[BaseMessage], Awaitable[None]]


def split_frames(data: bytes, max_frame_size: int = MAX_FRAME_SIZE) -> List[bytes]:
    """Split audio data into consecutive frames of at most ``max_frame_size`` bytes."""
    if max_frame_size <= 0:
        raise ValueError("max_frame_size must be positive")
    return [data[i:i + max_frame_size] for i in range(0, len(data), max_frame_size)]


@dataclass
class _Outbound:
    message: BaseMessage
    delay: float = 0.0
    frame_size: int = 0

    @property
    def is_audio(self) -> bool:
        return self.frame_size > 0


class AudioFramer:
    """
    Bounded-size audio framing with an ordered, optionally paced, outlet.

    Args:
        send: Coroutine that delivers one message downstream; raises
            DownstreamSendFailure when the connection is gone
        max_frame_size: Maximum bytes of audio per emitted frame
        frame_delay: Seconds to wait between frames of one split (0 disables pacing)
        on_send_failure: Called once with the failure when a send fails
        session_id: Used only for log messages
    """

    def __init__(
        self,
        send: SendFunc,
        max_frame_size: int = MAX_FRAME_SIZE,
        frame_delay: float = DEFAULT_FRAME_DELAY,
        on_send_failure: Optional[Callable[[Exception], None]] = None,
        session_id: str = "",
    ):
        if max_frame_size <= 0:
            raise ValueError("max_frame_size must be positive")
        self._send = send
        self.max_frame_size = max_frame_size
        self.frame_delay = frame_delay
        self._on_send_failure = on_send_failure
        self._session_id = session_id

        self._buffer = bytearray()
        self._pending: Deque[_Outbound] = deque()
        self._emitting = False
        self._paced = frame_delay > 0
        self._drain_task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False

        self.frames_sent = 0
        self.bytes_sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def emitting(self) -> bool:
        return self._emitting

    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer)

    @property
    def pending_frames(self) -> int:
        return sum(1 for item in self._pending if item.is_audio)

    def ingest(self, data: bytes) -> None:
        """Append audio bytes to the accumulation buffer in receipt order."""
        if not data:
            return
        if self._closed:
            logger.warning(
                f"Dropping {len(data)} bytes of audio for closed session: {self._session_id}"
            )
            return
        self._buffer.extend(data)

    def flush(self) -> int:
        """
        Split the accumulated bytes into frames and queue them for emission.

        Returns:
            int: number of frames queued
        """
        if self._closed or not self._buffer:
            return 0
        data = bytes(self._buffer)
        self._buffer.clear()
        frames = split_frames(data, self.max_frame_size)
        for index, frame in enumerate(frames):
            self._pending.append(
                _Outbound(
                    message=AudioFrameMessage.from_bytes(frame),
                    delay=self.frame_delay if index > 0 else 0.0,
                    frame_size=len(frame),
                )
            )
        if len(frames) > 1:
            logger.debug(
                f"Split {len(data)} bytes into {len(frames)} frames for session: {self._session_id}"
            )
        self._kick()
        return len(frames)

    def enqueue(self, message: BaseMessage) -> None:
        """Queue a non-audio message behind everything already pending."""
        if self._closed:
            logger.debug(f"Dropping {message.type} for closed session: {self._session_id}")
            return
        self._pending.append(_Outbound(message=message))
        self._kick()

    def interrupt(self) -> int:
        """
        Discard audio that has not been sent yet.

        The frame currently being sent (if any) is unaffected; queued non-audio
        messages keep their order.

        Returns:
            int: number of frames discarded
        """
        dropped = sum(1 for item in self._pending if item.is_audio)
        if dropped:
            self._pending = deque(item for item in self._pending if not item.is_audio)
        self._buffer.clear()
        if dropped:
            logger.info(f"Discarded {dropped} unsent frames for session: {self._session_id}")
        return dropped

    async def wait_idle(self) -> None:
        """Wait until every pending item has been sent or abandoned."""
        await self._idle.wait()

    async def close(self, flush: bool = True) -> None:
        """
        Close the framer.

        Args:
            flush: When True, make one best-effort unpaced flush of everything
                buffered or pending before closing; when False the downstream is
                already gone and pending frames are abandoned.
        """
        if self._closed:
            return
        if flush:
            self._paced = False
            self.flush()
            await self.wait_idle()
        else:
            self.abandon()
        self._closed = True

    def abandon(self) -> int:
        """Drop everything not yet sent and stop the drain task."""
        dropped = sum(1 for item in self._pending if item.is_audio)
        self._pending.clear()
        self._buffer.clear()
        if self._drain_task and not self._drain_task.done():
            self._drain_task.cancel()
        self._emitting = False
        self._idle.set()
        return dropped

    def _kick(self) -> None:
        if self._emitting or not self._pending:
            return
        self._emitting = True
        self._idle.clear()
        self._drain_task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while self._pending:
                item = self._pending.popleft()
                if item.delay and self._paced:
                    await asyncio.sleep(item.delay)
                await self._send(item.message)
                if item.is_audio:
                    self.frames_sent += 1
                    self.bytes_sent += item.frame_size
        except DownstreamSendFailure as e:
            abandoned = len(self._pending)
            self._pending.clear()
            self._buffer.clear()
            logger.warning(
                f"Downstream send failed for session {self._session_id}, "
                f"abandoning {abandoned} queued messages: {e}"
            )
            if self._on_send_failure:
                self._on_send_failure(e)
        except asyncio.CancelledError:
            logger.debug(f"Frame emission cancelled for session: {self._session_id}")
            raise
        finally:
            self._emitting = False
            self._idle.set()
