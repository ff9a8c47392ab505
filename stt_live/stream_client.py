"""
Provider Streaming Client
=========================

Owns the persistent duplex WebSocket between one transcription session and
its provider.

Features:
- Handshake that resolves only once the provider acknowledges readiness
- Binary or JSON-encoded audio sends that report failure instead of raising
- One-time normalization of raw provider messages into TurnEvent / LegacyText
- Auto-reconnect with exponential backoff and a hard attempt ceiling
- Monotonic turn_order across reconnects (provider numbering restarts at 0)

Everything the client observes is emitted on the session's event channel;
the client never calls back into the registry directly.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from .config import TranscriptionConfig
from .errors import ConnectError, ProtocolInconsistency, TransientSendFailure
from .event_channel import ChannelEvents, SessionEventChannel
from .models import TurnEvent
from .providers import ProviderProtocol

logger = logging.getLogger(__name__)


# Connection states for tracking
class ConnectionState:
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class ProviderStreamClient:
    """
    WebSocket client for one session's provider stream.

    Channel events emitted:
        provider-event  TurnEvent | LegacyText (latency_ms attached)
        inconsistency   ProtocolInconsistency for a malformed message
        provider-error  str error reported by the provider
        terminated      provider confirmed the graceful stream end
        disconnected    socket closed after disconnect() or termination
        reconnecting    {"reason", "attempt", "delay_ms"} before each attempt
        reconnected     {"attempts"} after a successful reconnect
        fatal           ConnectError once the reconnect ceiling is exceeded
    """

    def __init__(
        self,
        config: TranscriptionConfig,
        protocol: ProviderProtocol,
        session_id: str,
        channel: SessionEventChannel,
        connect_factory=None,
    ):
        """
        Initialize the streaming client.

        Args:
            config: Session configuration (timeouts, backoff, verbosity)
            protocol: Wire protocol of the configured provider
            session_id: Session this socket belongs to (log prefix)
            channel: Per-session event channel receiving all client events
            connect_factory: Awaitable socket factory, websockets.connect by default
        """
        self.config = config
        self.protocol = protocol
        self.session_id = session_id
        self.channel = channel
        self._connect_factory = connect_factory or websockets.connect

        # Connection state
        self._ws = None
        self.is_connected = False
        self.state = ConnectionState.DISCONNECTED
        self._connect_lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()
        self._receive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closing = False
        self._terminated = False
        self._stream_end_sent = False

        # Reconnection
        self._reconnect_attempts = 0
        self._reconnects = 0

        # turn_order remapping across reconnects
        self._turn_offset = 0
        self._max_turn_order: Optional[int] = None

        # Metrics
        self._chunks_sent = 0
        self._bytes_sent = 0
        self._fillers_sent = 0
        self._chunks_dropped = 0
        self._messages_received = 0
        self._last_send_at: Optional[float] = None
        self._connection_time: Optional[float] = None
        self.last_send_failure: Optional[TransientSendFailure] = None

        logger.debug(f"[{session_id}] ProviderStreamClient initialized | provider={protocol.name}")

    # ========================================================================
    # Connection lifecycle
    # ========================================================================

    async def connect(self):
        """
        Open the provider socket and complete the provider handshake.

        Raises:
            ConnectError: On rejection, transport failure or handshake timeout
        """
        async with self._connect_lock:
            if self.is_connected:
                logger.debug(f"[{self.session_id}] Already connected to {self.protocol.name}")
                return

            self.state = ConnectionState.CONNECTING
            self._closing = False
            self._terminated = False
            self._stream_end_sent = False
            start_time = time.time()

            url = self.protocol.build_url()
            logger.info("=" * 70)
            logger.info(f"🔌 [{self.session_id}] Connecting to {self.protocol.name} streaming API...")
            logger.info(f"   Endpoint: {url.split('?')[0]}")
            logger.info(f"   Sample Rate: {self.config.sample_rate}Hz")
            logger.info("=" * 70)

            try:
                self._ws = await asyncio.wait_for(
                    self._open_and_handshake(url),
                    timeout=self.config.connect_timeout_s,
                )
            except asyncio.TimeoutError:
                await self._abort_socket()
                self.state = ConnectionState.ERROR
                raise ConnectError(
                    f"Handshake with {self.protocol.name} timed out after {self.config.connect_timeout_s}s"
                )
            except ConnectError:
                await self._abort_socket()
                self.state = ConnectionState.ERROR
                raise
            except Exception as e:
                await self._abort_socket()
                self.state = ConnectionState.ERROR
                raise ConnectError(f"Failed to connect to {self.protocol.name}: {e}") from e

            self.is_connected = True
            self.state = ConnectionState.CONNECTED
            self._connection_time = time.time()

            logger.info(
                f"✅ [{self.session_id}] Connected to {self.protocol.name} "
                f"in {time.time() - start_time:.3f}s"
            )

            self._receive_task = asyncio.create_task(self._receive_loop(self._ws))

    async def _open_and_handshake(self, url: str):
        headers = self.protocol.build_headers()
        ws = await self._connect_factory(
            url,
            additional_headers=headers or None,
            ping_interval=20,
            ping_timeout=10,
            close_timeout=5,
            max_size=None,
        )
        self._ws = ws

        for message in self.protocol.handshake_messages():
            await ws.send(message)

        while True:
            try:
                raw = await ws.recv()
            except ConnectionClosed as e:
                raise ConnectError(f"{self.protocol.name} closed the socket during handshake: {e}") from e

            parsed = self.protocol.parse(self.protocol.decode(raw))
            if parsed.error:
                raise ConnectError(f"{self.protocol.name} rejected the session: {parsed.error}")
            if parsed.ready:
                return ws
            logger.debug(f"[{self.session_id}] Ignoring pre-handshake message")

    async def _abort_socket(self):
        ws, self._ws = self._ws, None
        self.is_connected = False
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"[{self.session_id}] Error closing aborted socket: {e}")

    async def disconnect(self):
        """Close the socket and stop all background tasks. Safe to call repeatedly."""
        self._closing = True

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except (asyncio.CancelledError, Exception):
                pass
        self._reconnect_task = None

        async with self._connect_lock:
            if self._ws is None and self._receive_task is None:
                if self.state != ConnectionState.ERROR:
                    self.state = ConnectionState.DISCONNECTED
                return

            logger.info(f"🔌 [{self.session_id}] Disconnecting from {self.protocol.name}...")

            if self._receive_task and not self._receive_task.done():
                self._receive_task.cancel()
                try:
                    await asyncio.wait_for(self._receive_task, timeout=2.0)
                except (asyncio.CancelledError, asyncio.TimeoutError):
                    pass
            self._receive_task = None

            ws, self._ws = self._ws, None
            if ws is not None:
                try:
                    await ws.close(code=1000, reason="session stopped")
                except Exception as e:
                    logger.debug(f"[{self.session_id}] Error closing socket: {e}")

            self.is_connected = False
            if self.state != ConnectionState.ERROR:
                self.state = ConnectionState.DISCONNECTED

            if self._connection_time:
                session_duration = time.time() - self._connection_time
                logger.info(
                    f"✅ [{self.session_id}] Disconnected | Session: {session_duration:.1f}s | "
                    f"Chunks: {self._chunks_sent} | Bytes: {self._bytes_sent}"
                )
            else:
                logger.info(f"✅ [{self.session_id}] Disconnected")

    # ========================================================================
    # Receive path
    # ========================================================================

    async def _receive_loop(self, ws):
        """Deliver provider messages in arrival order until the socket closes."""
        logger.info(f"👂 [{self.session_id}] Starting {self.protocol.name} receive loop...")
        message_count = 0
        close_reason = "socket closed"

        try:
            async for raw in ws:
                message_count += 1
                self._handle_raw_message(raw)
        except asyncio.CancelledError:
            logger.debug(f"[{self.session_id}] Receive loop cancelled (normal shutdown)")
            raise
        except ConnectionClosed as e:
            close_reason = f"socket closed abnormally ({e})"
        except Exception as e:
            close_reason = f"receive error ({e})"
            logger.error(f"❌ [{self.session_id}] Error in receive loop: {e}")

        logger.info(f"🛑 [{self.session_id}] Receive loop ended | Messages received: {message_count}")

        if self._ws is ws:
            self._ws = None
        self.is_connected = False

        if self._closing or self._terminated:
            self.state = ConnectionState.DISCONNECTED
            self.channel.emit(ChannelEvents.DISCONNECTED, {"reason": close_reason})
            return

        logger.warning(f"⚠️ [{self.session_id}] Provider connection lost: {close_reason}")
        self.schedule_reconnect(close_reason)

    def _handle_raw_message(self, raw):
        self._messages_received += 1
        if self.config.log_provider_messages:
            logger.debug(f"[{self.session_id}] <- {raw!r:.200}")

        try:
            parsed = self.protocol.parse(self.protocol.decode(raw))
        except ProtocolInconsistency as e:
            logger.warning(f"⚠️ [{self.session_id}] {e}")
            self.channel.emit(ChannelEvents.INCONSISTENCY, e)
            return

        latency_ms = self._advisory_latency_ms()
        for event in parsed.events:
            if isinstance(event, TurnEvent):
                self._remap_turn_order(event)
            event.latency_ms = latency_ms
            self.channel.emit(ChannelEvents.PROVIDER_EVENT, event)

        if parsed.error:
            logger.error(f"❌ [{self.session_id}] {self.protocol.name} error: {parsed.error}")
            self.channel.emit(ChannelEvents.PROVIDER_ERROR, parsed.error)

        if parsed.go_away:
            logger.warning(f"⚠️ [{self.session_id}] {self.protocol.name} is about to close the connection")

        if parsed.terminated:
            self._terminated = True
            self.channel.emit(ChannelEvents.TERMINATED, None)

    def _advisory_latency_ms(self) -> Optional[float]:
        if self._last_send_at is None:
            return None
        return (time.monotonic() - self._last_send_at) * 1000.0

    def _remap_turn_order(self, event: TurnEvent):
        event.turn_order += self._turn_offset
        if self._max_turn_order is None or event.turn_order > self._max_turn_order:
            self._max_turn_order = event.turn_order

    # ========================================================================
    # Reconnection
    # ========================================================================

    def backoff_delay_ms(self, attempt: int) -> int:
        """Delay before reconnect `attempt` (1-based), capped."""
        delay = self.config.reconnect_backoff_ms * (2 ** max(0, attempt - 1))
        return int(min(delay, self.config.max_reconnect_backoff_ms))

    def schedule_reconnect(self, reason: str):
        """Start the backoff loop unless one is already running."""
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self.state = ConnectionState.RECONNECTING
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(reason))

    async def _reconnect_loop(self, reason: str):
        last_error: Optional[Exception] = None

        while self._reconnect_attempts < self.config.max_reconnect_attempts:
            self._reconnect_attempts += 1
            delay_ms = self.backoff_delay_ms(self._reconnect_attempts)
            logger.info(
                f"🔄 [{self.session_id}] Reconnecting to {self.protocol.name} in {delay_ms}ms "
                f"(attempt {self._reconnect_attempts}/{self.config.max_reconnect_attempts})..."
            )
            self.channel.emit(ChannelEvents.RECONNECTING, {
                "reason": reason,
                "attempt": self._reconnect_attempts,
                "delay_ms": delay_ms,
            })
            await asyncio.sleep(delay_ms / 1000.0)

            if self._closing:
                return

            # Next socket numbers turns from 0 again
            if self._max_turn_order is not None:
                self._turn_offset = self._max_turn_order + 1

            try:
                await self.connect()
            except ConnectError as e:
                last_error = e
                logger.warning(f"⚠️ [{self.session_id}] Reconnect attempt {self._reconnect_attempts} failed: {e}")
                continue

            attempts = self._reconnect_attempts
            self._reconnect_attempts = 0
            self._reconnects += 1
            logger.info(f"✅ [{self.session_id}] Reconnected after {attempts} attempt(s)")
            self.channel.emit(ChannelEvents.RECONNECTED, {"attempts": attempts})
            return

        attempts = self._reconnect_attempts
        self.state = ConnectionState.ERROR
        self.is_connected = False
        error = ConnectError(
            f"Gave up reconnecting to {self.protocol.name} after {attempts} attempt(s): {last_error or reason}",
            attempts=attempts,
        )
        logger.error(f"❌ [{self.session_id}] {error}")
        self.channel.emit(ChannelEvents.FATAL, error)

    # ========================================================================
    # Send path
    # ========================================================================

    async def send_audio(self, payload: bytes, meta: Optional[Dict[str, Any]] = None) -> bool:
        """
        Encode and transmit one audio frame.

        Args:
            payload: Raw PCM16 mono bytes
            meta: Optional frame metadata ({"sequence", "filler"})

        Returns:
            bool: True if the frame was handed to the socket
        """
        meta = meta or {}
        ws = self._ws

        if not self.is_connected or ws is None or self._stream_end_sent:
            self._record_send_failure(f"socket not ready (state={self.state})")
            return False

        try:
            data = self.protocol.encode_audio(payload)
            async with self._send_lock:
                await ws.send(data)
        except Exception as e:
            self._record_send_failure(f"send failed: {e}")
            return False

        self._chunks_sent += 1
        self._bytes_sent += len(payload)
        if meta.get("filler"):
            self._fillers_sent += 1
        self._last_send_at = time.monotonic()
        self.last_send_failure = None

        if self.config.log_audio_chunks:
            logger.debug(
                f"[{self.session_id}] -> {len(payload)} bytes "
                f"(seq={meta.get('sequence')}, filler={bool(meta.get('filler'))})"
            )
        return True

    def _record_send_failure(self, detail: str):
        self._chunks_dropped += 1
        self.last_send_failure = TransientSendFailure(f"[{self.session_id}] {detail}")

    async def send_stream_end(self) -> bool:
        """
        Signal graceful end of audio so the provider finalizes the open turn.

        Returns:
            bool: True if the stream-end message was sent
        """
        message = self.protocol.stream_end_message()
        ws = self._ws
        if message is None or ws is None or not self.is_connected:
            return False
        if self._stream_end_sent:
            return True

        try:
            async with self._send_lock:
                await ws.send(message)
        except Exception as e:
            logger.warning(f"⚠️ [{self.session_id}] Failed to send stream end: {e}")
            return False

        self._stream_end_sent = True
        logger.debug(f"[{self.session_id}] Stream end sent to {self.protocol.name}")
        return True

    def get_stats(self) -> dict:
        """Get client statistics for monitoring."""
        return {
            "provider": self.protocol.name,
            "is_connected": self.is_connected,
            "state": self.state,
            "chunks_sent": self._chunks_sent,
            "bytes_sent": self._bytes_sent,
            "fillers_sent": self._fillers_sent,
            "chunks_dropped": self._chunks_dropped,
            "messages_received": self._messages_received,
            "reconnect_attempts": self._reconnect_attempts,
            "reconnects": self._reconnects,
            "turn_offset": self._turn_offset,
            "connection_time": self._connection_time,
        }
