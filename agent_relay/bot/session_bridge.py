"""
Bridge between downstream client sessions and upstream voice-agent sessions.

Each bridged session runs one pump task. The downstream reader and the upstream
client both post events into the session's inbox, and the pump applies them one
at a time, so lifecycle status, the audio buffer and the pending-frame list are
only ever changed by a single task.

Lifecycle: created → awaiting-upstream → active → closing → closed.

Two things bypass the pump: pings from either side are answered
as soon as they are read, and tool handlers run in their own tasks and post
their results back into the inbox when they finish.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, Optional, Sequence, Set, Union

from agent_relay.bot.audio_framer import AudioFramer
from agent_relay.bot.exceptions import (
    AuthenticationFailure,
    DownstreamSendFailure,
    MalformedMessage,
    RelayError,
    UpstreamConnectTimeout,
)
from agent_relay.bot.tool_dispatcher import ToolDispatcher, ToolInvocation, ToolResult
from agent_relay.bot.translator import (
    check_audio_formats,
    downstream_pong,
    parse_downstream_message,
    parse_upstream_event,
    pong_for,
    tool_result_envelope,
    upstream_to_downstream,
    user_audio_envelope,
)
from agent_relay.bot.upstream_client import (
    UpstreamSessionClient,
    UpstreamSignal,
    UpstreamSignalKind,
    credential_mode_for,
)
from agent_relay.config.constants import AUDIO_BUFFER_POLICY_QUEUE, LOGGER_NAME
from agent_relay.config.settings import RelaySettings
from agent_relay.models.message_schemas import (
    AudioChunkMessage,
    BaseMessage,
    ConnectedMessage,
    ErrorMessage,
    InitMessage,
    PingMessage,
    UpstreamDisconnectedMessage,
)
from agent_relay.models.session import Session, SessionStatus, new_session_id
from agent_relay.models.session_store import DuplicateSession, SessionStore
from agent_relay.models.upstream_schemas import UpstreamEvent, UpstreamEventKind

logger = logging.getLogger(LOGGER_NAME)

MISSING_AGENT_MESSAGE = (
    "Agent ID is required. Provide via x-agent-id header or ELEVENLABS_AGENT_ID environment variable."
)
INVALID_MESSAGE = "Invalid message format"
UPSTREAM_ERROR_MESSAGE = "Upstream connection error"


# Inbox events
@dataclass(frozen=True)
class _ClientMessage:
    message: Union[InitMessage, AudioChunkMessage]


@dataclass(frozen=True)
class _ClientAudio:
    audio: bytes


@dataclass(frozen=True)
class _ClientRejected:
    reason: str


@dataclass(frozen=True)
class _DownstreamGone:
    code: Optional[int] = None
    cause: Optional[BaseException] = None


@dataclass(frozen=True)
class _UpstreamOpened:
    pass


@dataclass(frozen=True)
class _UpstreamOpenFailed:
    error: RelayError


@dataclass(frozen=True)
class _UpstreamEventReceived:
    event: UpstreamEvent


@dataclass(frozen=True)
class _UpstreamGone:
    code: Optional[int] = None
    reason: str = ""
    cause: Optional[BaseException] = None


@dataclass(frozen=True)
class _ToolCompleted:
    result: ToolResult


@dataclass(frozen=True)
class _CloseRequested:
    notice: Optional[BaseMessage] = None


@dataclass
class _SessionRuntime:
    session: Session
    inbox: "asyncio.Queue[Any]" = field(default_factory=asyncio.Queue)
    pump_task: Optional[asyncio.Task] = None
    open_task: Optional[asyncio.Task] = None
    closed: asyncio.Event = field(default_factory=asyncio.Event)


ClientFactory = Callable[..., UpstreamSessionClient]


class SessionBridge:
    """
    Owns every bridged session and its state machine.

    Args:
        settings: Relay configuration
        store: Registry that live sessions are inserted into and removed from
        dispatcher: Runs client tool calls requested by the upstream agent
        client_factory: Builds the UpstreamSessionClient for a session
    """

    def __init__(
        self,
        settings: RelaySettings,
        store: SessionStore,
        dispatcher: ToolDispatcher,
        client_factory: ClientFactory = UpstreamSessionClient,
    ):
        self.settings = settings
        self.store = store
        self.dispatcher = dispatcher
        self._client_factory = client_factory
        self._runtimes: Dict[str, _SessionRuntime] = {}
        self._background_tasks: Set[asyncio.Task] = set()

    @property
    def active_sessions(self) -> int:
        return len(self.store)

    # ------------------------------------------------------------------
    # Entry points used by the downstream connection handler
    # ------------------------------------------------------------------

    def create_session(
        self,
        downstream: Any,
        agent_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        """
        Register a new session for an accepted downstream connection and start its pump.

        Args:
            downstream: The downstream connection (needs ``send_text`` and ``close``)
            agent_id: Agent identifier for this session; falls back to configuration
            session_id: Externally supplied session id; generated when absent or taken
        """
        if not session_id or session_id in self.store:
            if session_id:
                logger.warning(f"Session id already in use, generating a new one: {session_id}")
            session_id = new_session_id()
        session = Session(
            session_id=session_id,
            agent_id=agent_id or self.settings.agent_id,
            downstream=downstream,
        )
        runtime = _SessionRuntime(session=session)
        session.framer = AudioFramer(
            send=partial(self._send_downstream, session),
            max_frame_size=self.settings.max_frame_size,
            frame_delay=self.settings.frame_delay,
            on_send_failure=lambda e: runtime.inbox.put_nowait(_DownstreamGone(cause=e)),
            session_id=session_id,
        )
        self.store.add(session)
        self._runtimes[session_id] = runtime
        runtime.pump_task = asyncio.create_task(self._pump(runtime))
        logger.info(f"Session created: {session_id} (agent: {session.agent_id})")
        return session

    async def handle_downstream_message(self, session_id: str, raw: Union[str, bytes]) -> None:
        """
        Accept one message read from the downstream connection.

        Text is parsed as a JSON protocol message; binary payloads are raw audio.
        Pings are answered immediately; everything else goes through the pump.
        """
        runtime = self._runtimes.get(session_id)
        if runtime is None or not runtime.session.is_live:
            logger.debug(f"Dropping downstream message for inactive session: {session_id}")
            return

        if isinstance(raw, (bytes, bytearray)):
            runtime.inbox.put_nowait(_ClientAudio(bytes(raw)))
            return

        try:
            message = parse_downstream_message(raw)
        except MalformedMessage as e:
            logger.warning(f"Rejected downstream message for session {session_id}: {e}")
            runtime.inbox.put_nowait(_ClientRejected(INVALID_MESSAGE))
            return

        if isinstance(message, PingMessage):
            try:
                await self._send_downstream(runtime.session, downstream_pong())
            except DownstreamSendFailure as e:
                runtime.inbox.put_nowait(_DownstreamGone(cause=e))
            return
        runtime.inbox.put_nowait(_ClientMessage(message))

    def downstream_closed(self, session_id: str, code: Optional[int] = None) -> None:
        """Report that the downstream connection has closed."""
        runtime = self._runtimes.get(session_id)
        if runtime is not None:
            runtime.inbox.put_nowait(_DownstreamGone(code=code))

    def downstream_errored(self, session_id: str, cause: BaseException) -> None:
        """Report that reading from the downstream connection failed."""
        runtime = self._runtimes.get(session_id)
        if runtime is not None:
            logger.error(f"Downstream error for session {session_id}: {cause}")
            runtime.inbox.put_nowait(_DownstreamGone(cause=cause))

    async def wait_closed(self, session_id: str) -> None:
        """Wait until the session reaches the closed state."""
        runtime = self._runtimes.get(session_id)
        if runtime is not None:
            await runtime.closed.wait()

    async def close_session(self, session_id: str, notice: Optional[BaseMessage] = None) -> None:
        """
        Tear a session down from outside. Closing an unknown or already closed
        session is a no-op.
        """
        runtime = self._runtimes.get(session_id)
        if runtime is None:
            return
        runtime.inbox.put_nowait(_CloseRequested(notice))
        await runtime.closed.wait()

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Close every live session, e.g. on server shutdown."""
        session_ids = list(self._runtimes)
        if not session_ids:
            return
        logger.info(f"Closing {len(session_ids)} sessions for shutdown")
        closing = [
            self.close_session(session_id, ErrorMessage(message="Relay shutting down"))
            for session_id in session_ids
        ]
        try:
            await asyncio.wait_for(asyncio.gather(*closing), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for sessions to close during shutdown")

    # ------------------------------------------------------------------
    # Upstream signals
    # ------------------------------------------------------------------

    async def _on_upstream_signal(self, runtime: _SessionRuntime, signal: UpstreamSignal) -> None:
        session = runtime.session
        if signal.kind == UpstreamSignalKind.OPENED:
            runtime.inbox.put_nowait(_UpstreamOpened())
        elif signal.kind == UpstreamSignalKind.MESSAGE:
            try:
                event = parse_upstream_event(signal.raw)
            except MalformedMessage as e:
                logger.warning(f"Dropping upstream message for session {session.session_id}: {e}")
                return
            if event.kind == UpstreamEventKind.PING:
                # Keep-alive side channel: answered at once, outside event ordering
                if session.is_live and session.upstream is not None:
                    await session.upstream.send(pong_for(event))
                return
            runtime.inbox.put_nowait(_UpstreamEventReceived(event))
        elif signal.kind == UpstreamSignalKind.CLOSED:
            runtime.inbox.put_nowait(_UpstreamGone(code=signal.code, reason=signal.reason))
        elif signal.kind == UpstreamSignalKind.ERRORED:
            runtime.inbox.put_nowait(_UpstreamGone(cause=signal.cause))

    async def _open_upstream(self, runtime: _SessionRuntime, client: UpstreamSessionClient) -> None:
        session = runtime.session
        try:
            await client.open(session.agent_id, credential_mode_for(self.settings))
        except RelayError as e:
            runtime.inbox.put_nowait(_UpstreamOpenFailed(e))

    # ------------------------------------------------------------------
    # Pump
    # ------------------------------------------------------------------

    async def _pump(self, runtime: _SessionRuntime) -> None:
        session = runtime.session
        try:
            while session.status != SessionStatus.CLOSED:
                item = await runtime.inbox.get()
                await self._apply(runtime, item)
        except asyncio.CancelledError:
            logger.info(f"Session pump cancelled: {session.session_id}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error in session {session.session_id}: {e}", exc_info=True)
            try:
                if session.status == SessionStatus.CLOSING:
                    # Teardown itself failed part way
                    await self._abort(runtime)
                else:
                    await self._teardown(runtime, [ErrorMessage(message="Internal relay error")])
            except Exception as teardown_error:
                logger.error(
                    f"Teardown failed for session {session.session_id}: {teardown_error}", exc_info=True
                )
        finally:
            if session.status != SessionStatus.CLOSED:
                self._mark_closed(session)
            self._runtimes.pop(session.session_id, None)
            runtime.closed.set()

    async def _apply(self, runtime: _SessionRuntime, item: Any) -> None:
        session = runtime.session

        if isinstance(item, _DownstreamGone):
            logger.info(f"Downstream closed for session: {session.session_id}")
            await self._teardown(runtime, downstream_gone=True)
        elif isinstance(item, _CloseRequested):
            await self._teardown(runtime, [item.notice] if item.notice else [])
        elif not session.is_live:
            logger.debug(f"Dropping {type(item).__name__} for {session.status.value} session")
        elif isinstance(item, _ClientMessage):
            if isinstance(item.message, InitMessage):
                await self._on_init(runtime, item.message)
            else:
                await self._on_client_audio(session, item.message.audio_bytes())
        elif isinstance(item, _ClientAudio):
            await self._on_client_audio(session, item.audio)
        elif isinstance(item, _ClientRejected):
            session.framer.enqueue(ErrorMessage(message=item.reason))
        elif isinstance(item, _UpstreamOpened):
            await self._on_upstream_opened(session)
        elif isinstance(item, _UpstreamOpenFailed):
            await self._teardown(runtime, [ErrorMessage(message=self._describe_open_failure(item.error))])
        elif isinstance(item, _UpstreamEventReceived):
            await self._on_upstream_event(session, item.event)
        elif isinstance(item, _UpstreamGone):
            await self._on_upstream_gone(runtime, item)
        elif isinstance(item, _ToolCompleted):
            await self._on_tool_completed(session, item.result)

    async def _on_init(self, runtime: _SessionRuntime, message: InitMessage) -> None:
        session = runtime.session
        if session.status != SessionStatus.CREATED:
            logger.warning(f"Ignoring repeated init for session: {session.session_id}")
            return

        if message.sessionId and message.sessionId != session.session_id:
            self._rekey(runtime, message.sessionId)

        if not session.agent_id:
            logger.error(f"No agent id configured, rejecting session: {session.session_id}")
            await self._teardown(runtime, [ErrorMessage(message=MISSING_AGENT_MESSAGE)])
            return

        session.transition(SessionStatus.AWAITING_UPSTREAM)
        client = self._client_factory(
            self.settings,
            partial(self._on_upstream_signal, runtime),
            session_id=session.session_id,
        )
        session.upstream = client
        logger.info(f"Opening upstream for session {session.session_id} (agent: {session.agent_id})")
        runtime.open_task = asyncio.create_task(self._open_upstream(runtime, client))

    def _rekey(self, runtime: _SessionRuntime, new_id: str) -> None:
        session = runtime.session
        old_id = session.session_id
        try:
            self.store.rename(old_id, new_id)
        except DuplicateSession:
            logger.warning(f"Requested session id {new_id} already in use, keeping {old_id}")
            return
        self._runtimes[new_id] = self._runtimes.pop(old_id)
        logger.info(f"Session {old_id} renamed to {new_id}")

    async def _on_upstream_opened(self, session: Session) -> None:
        if session.status != SessionStatus.AWAITING_UPSTREAM:
            return
        session.transition(SessionStatus.ACTIVE)
        session.framer.enqueue(ConnectedMessage(sessionId=session.session_id, agentId=session.agent_id))
        logger.info(f"Session active: {session.session_id}")

        if session.early_audio:
            logger.info(f"Replaying {len(session.early_audio)} queued audio chunks for session: {session.session_id}")
            queued, session.early_audio = session.early_audio, []
            for chunk in queued:
                await session.upstream.send(user_audio_envelope(chunk))

    async def _on_client_audio(self, session: Session, chunk: bytes) -> None:
        if not chunk:
            return
        session.audio_chunks_in += 1

        if session.status == SessionStatus.ACTIVE:
            await session.upstream.send(user_audio_envelope(chunk))
            return

        if (
            session.status == SessionStatus.AWAITING_UPSTREAM
            and self.settings.audio_buffer_policy == AUDIO_BUFFER_POLICY_QUEUE
            and len(session.early_audio) < self.settings.audio_buffer_max_chunks
        ):
            session.early_audio.append(chunk)
            return

        session.audio_chunks_dropped += 1
        logger.debug(
            f"Upstream not ready ({session.status.value}), dropping audio chunk for session: {session.session_id}"
        )

    async def _on_upstream_event(self, session: Session, event: UpstreamEvent) -> None:
        if session.status != SessionStatus.ACTIVE:
            logger.debug(f"Dropping upstream {event.raw_type} for {session.status.value} session")
            return

        if event.kind == UpstreamEventKind.AUDIO_CHUNK:
            session.framer.ingest(event.audio)
            session.framer.flush()
            return

        if event.kind == UpstreamEventKind.TOOL_CALL:
            self._start_tool_call(session, event)
            return

        if event.kind == UpstreamEventKind.SESSION_METADATA:
            logger.info(
                f"Conversation initiated for session {session.session_id}: "
                f"{event.metadata.get('conversation_id', 'unknown')}"
            )
            for warning in check_audio_formats(event.metadata):
                logger.warning(f"Audio format mismatch for session {session.session_id}: {warning}")
        elif event.kind in (UpstreamEventKind.AGENT_CORRECTION, UpstreamEventKind.INTERRUPTION):
            logger.info(f"Upstream {event.raw_type} for session: {session.session_id}")
            if self.settings.discard_audio_on_interruption:
                session.framer.interrupt()
        elif event.kind == UpstreamEventKind.TRANSCRIPT:
            logger.info(f"{event.role.capitalize()} transcript: {event.text}")
        elif event.kind == UpstreamEventKind.TOOL_RESPONSE_ACK:
            logger.debug(f"Tool response acknowledged for session: {session.session_id}")
        elif event.kind == UpstreamEventKind.UNKNOWN:
            logger.info(f"Unknown upstream message type: {event.raw_type}")

        for message in upstream_to_downstream(event, passthrough=self.settings.passthrough_metadata):
            session.framer.enqueue(message)

    async def _on_upstream_gone(self, runtime: _SessionRuntime, item: _UpstreamGone) -> None:
        session = runtime.session
        if item.cause is not None:
            logger.error(f"Upstream error for session {session.session_id}: {item.cause}")
            notices = [ErrorMessage(message=UPSTREAM_ERROR_MESSAGE), UpstreamDisconnectedMessage()]
        else:
            logger.info(
                f"Upstream closed for session {session.session_id}: {item.code} {item.reason}"
            )
            notices = [UpstreamDisconnectedMessage()]
        await self._teardown(runtime, notices)

    @staticmethod
    def _describe_open_failure(error: RelayError) -> str:
        if isinstance(error, AuthenticationFailure):
            return f"Authentication failed: {error}"
        if isinstance(error, UpstreamConnectTimeout):
            return f"Failed to connect to upstream agent: {error}"
        return "Failed to connect to upstream agent"

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    def _start_tool_call(self, session: Session, event: UpstreamEvent) -> None:
        session.tool_calls += 1
        invocation = ToolInvocation(
            call_id=event.tool_call_id,
            tool_name=event.tool_name,
            session_id=session.session_id,
            parameters=dict(event.parameters),
        )
        runtime = self._runtimes.get(session.session_id)
        task = asyncio.create_task(self._run_tool(runtime, invocation))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _run_tool(self, runtime: _SessionRuntime, invocation: ToolInvocation) -> None:
        result = await self.dispatcher.dispatch(invocation)
        if not runtime.session.is_live:
            logger.info(
                f"Discarding result of {invocation.tool_name} (call {invocation.call_id}), "
                f"session {runtime.session.session_id} already closed"
            )
            return
        runtime.inbox.put_nowait(_ToolCompleted(result))

    async def _on_tool_completed(self, session: Session, result: ToolResult) -> None:
        if session.status != SessionStatus.ACTIVE:
            logger.info(f"Discarding tool result {result.call_id} for {session.status.value} session")
            return
        await session.upstream.send(tool_result_envelope(result.call_id, result.result, result.is_error))

    # ------------------------------------------------------------------
    # Delivery and teardown
    # ------------------------------------------------------------------

    async def _send_downstream(self, session: Session, message: BaseMessage) -> None:
        try:
            await session.downstream.send_text(message.to_json())
        except Exception as e:
            raise DownstreamSendFailure(f"Failed to send {message.type}: {e}") from e

    async def _teardown(
        self,
        runtime: _SessionRuntime,
        notices: Sequence[BaseMessage] = (),
        downstream_gone: bool = False,
    ) -> None:
        """
        Close both sides of a session. A session already closing or closed is left alone.

        Args:
            notices: Messages to deliver downstream before closing (error/disconnect)
            downstream_gone: True when the downstream connection is already closed;
                pending frames are then abandoned instead of flushed
        """
        session = runtime.session
        if session.status in (SessionStatus.CLOSING, SessionStatus.CLOSED):
            return

        if not downstream_gone:
            for notice in notices:
                session.framer.enqueue(notice)
        session.transition(SessionStatus.CLOSING)
        logger.info(f"Closing session: {session.session_id}")

        if runtime.open_task and not runtime.open_task.done():
            runtime.open_task.cancel()
            try:
                await runtime.open_task
            except asyncio.CancelledError:
                pass
        if session.upstream is not None:
            await session.upstream.close()

        await session.framer.close(flush=not downstream_gone)

        if not downstream_gone:
            try:
                await session.downstream.close()
            except Exception as e:
                logger.debug(f"Error closing downstream connection: {e}")

        session.transition(SessionStatus.CLOSED)
        self.store.remove(session.session_id)
        logger.info(
            f"Session closed: {session.session_id} "
            f"({session.framer.frames_sent} frames, {session.framer.bytes_sent} bytes sent downstream)"
        )

    async def _abort(self, runtime: _SessionRuntime) -> None:
        """Best-effort close of both sides after a failed teardown; nothing is flushed."""
        session = runtime.session
        if session.framer is not None:
            session.framer.abandon()
        if session.upstream is not None:
            try:
                await session.upstream.close()
            except Exception as e:
                logger.warning(f"Error closing upstream for session {session.session_id}: {e}")
        try:
            await session.downstream.close()
        except Exception as e:
            logger.debug(f"Error closing downstream connection: {e}")

    def _mark_closed(self, session: Session) -> None:
        """Force a session into the closed state and drop it from the store."""
        if session.status != SessionStatus.CLOSING:
            session.transition(SessionStatus.CLOSING)
        session.transition(SessionStatus.CLOSED)
        if session.framer is not None:
            session.framer.abandon()
        self.store.remove(session.session_id)
        logger.warning(f"Session {session.session_id} closed without a clean teardown")
