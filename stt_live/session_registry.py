"""
Transcription Session Registry.

Manages concurrent live transcription sessions, routing captured audio
through PcmFramer -> VoiceActivityGate -> ProviderStreamClient and turning
provider events into canonical session events.

Features:
- Session lifecycle management (start, push, stop, stop all)
- Per-session overrides of the streaming configuration
- Heartbeat and silence policy per active session
- Exactly-once fatal handling after the reconnect ceiling
- Redis Streams publishing of every session event (optional)
- Prometheus metrics for chunks, reconnects and latency

Emitted events (shared.events.EventTypes):
    session-started{session_id}
    session-update{session_id, text, delta?, is_final}
    session-warning{session_id, warning}
    session-heartbeat{session_id}
    session-error{session_id, error}
    session-stopped{session_id, reason}
"""

import asyncio
import logging
import time
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Set

from shared.event_broker import EventBroker
from shared.events import EventTypes, VoiceEvent
from shared.observability import (
    record_chunk_dropped,
    record_chunk_sent,
    record_event,
    record_protocol_inconsistency,
    record_publish_error,
    record_reconnect_attempt,
    record_stt_latency,
    set_active_sessions,
    time_connect,
)

from .audio import PcmFramer, validate_audio_chunk
from .config import TranscriptionConfig
from .errors import (
    ConnectError,
    FlushTimeout,
    ProviderUnavailableError,
    ServiceDisabledError,
    TransientSendFailure,
)
from .event_channel import ChannelEvents, SessionEventChannel
from .live_session import LiveTranscriptionSession
from .models import AudioChunk, Session, SessionState, SourceType, TranscriptUpdate
from .providers import build_protocol
from .stream_client import ProviderStreamClient
from .vad_gate import GateAction, VoiceActivityGate

logger = logging.getLogger(__name__)

SERVICE_NAME = "stt_live"

# Registry listener signature: handler(event: VoiceEvent) -> None
RegistryListener = Callable[[VoiceEvent], None]

# Listener key receiving every event type
ALL_EVENTS = "*"


class SessionRecord:
    """Runtime handles for one session; owned by the registry."""

    def __init__(
        self,
        session: Session,
        config: TranscriptionConfig,
        channel: SessionEventChannel,
        client: ProviderStreamClient,
        aggregator: LiveTranscriptionSession,
        gate: VoiceActivityGate,
        framer: PcmFramer,
    ):
        self.session = session
        self.config = config
        self.channel = channel
        self.client = client
        self.aggregator = aggregator
        self.gate = gate
        self.framer = framer

        self.ready = asyncio.Event()
        self.closed = asyncio.Event()
        self.flushed = asyncio.Event()
        # Serializes framer -> gate -> send so concurrent pushes keep audio order
        self.audio_lock = asyncio.Lock()
        self.connect_task: Optional[asyncio.Task] = None
        self.heartbeat_task: Optional[asyncio.Task] = None

        self.stopping = False
        self.failed = False
        self.finished = False

        self.last_sequence: Optional[int] = None
        self.last_speech_at = time.monotonic()
        self.last_silence_warning_at: Optional[float] = None

        # Metrics
        self.chunks_received = 0
        self.chunks_rejected = 0
        self.frames_sent = 0
        self.send_failures = 0

    @property
    def session_id(self) -> str:
        return self.session.session_id

    def get_stats(self) -> Dict[str, Any]:
        stats = self.session.to_dict()
        stats.update({
            "chunks_received": self.chunks_received,
            "chunks_rejected": self.chunks_rejected,
            "frames_sent": self.frames_sent,
            "send_failures": self.send_failures,
            "pending_bytes": self.framer.pending_bytes,
            "transcript": self.aggregator.transcript,
            "client": self.client.get_stats(),
            "gate": self.gate.get_stats(),
            "turns": self.aggregator.get_stats(),
        })
        return stats


class TranscriptionSessionRegistry:
    """
    Orchestrator for live transcription sessions.

    The registry is the only owner of the session map. Each session gets its
    own event channel, provider client, turn aggregator, voice activity gate
    and framer; failures never cross session boundaries.
    """

    def __init__(
        self,
        config: TranscriptionConfig,
        connect_factory=None,
        gate_factory: Optional[Callable[[TranscriptionConfig], VoiceActivityGate]] = None,
        event_broker: Optional[EventBroker] = None,
        service_name: str = SERVICE_NAME,
    ):
        """
        Args:
            config: Base configuration; sessions may override parts of it
            connect_factory: Socket factory passed to every ProviderStreamClient
            gate_factory: Builds the VoiceActivityGate for a session config
            event_broker: Optional Redis Streams publisher for session events
            service_name: Label used for metrics and event source
        """
        self.config = config
        self.event_broker = event_broker
        self.service_name = service_name
        self._connect_factory = connect_factory
        self._gate_factory = gate_factory or VoiceActivityGate

        # Session storage: session_id -> SessionRecord
        self.sessions: Dict[str, SessionRecord] = {}
        self._listeners: Dict[str, List[RegistryListener]] = defaultdict(list)
        self._background_tasks: Set[asyncio.Task] = set()

        # Metrics
        self.sessions_started = 0
        self.sessions_stopped = 0
        self.sessions_failed = 0
        self.events_emitted = 0
        self.chunks_dropped = 0

        logger.info(
            f"🎙️ TranscriptionSessionRegistry initialized | Provider: {config.provider} | "
            f"Enabled: {config.enabled} | VAD: {config.vad.enabled}"
        )

    # ========================================================================
    # Listeners and event emission
    # ========================================================================

    def on(self, event_type: str, handler: RegistryListener) -> Callable[[], None]:
        """
        Register a listener for one event type, or "*" for every type.

        Returns:
            Callable that removes the listener
        """
        self._listeners[event_type].append(handler)
        return lambda: self.off(event_type, handler)

    def off(self, event_type: str, handler: RegistryListener):
        handlers = self._listeners.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def _emit(self, event_type: str, session_id: str, payload: Optional[Dict[str, Any]] = None) -> VoiceEvent:
        event = VoiceEvent(
            event_type=event_type,
            session_id=session_id,
            payload=payload or {},
            source=self.service_name,
        )
        self.events_emitted += 1
        record_event(self.service_name, event_type)

        for handler in list(self._listeners.get(event_type, ())) + list(self._listeners.get(ALL_EVENTS, ())):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"❌ [{session_id}] Error in '{event_type}' listener: {e}", exc_info=True)

        if self.event_broker is not None:
            task = asyncio.create_task(self._publish_to_redis(event))
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

        return event

    async def _publish_to_redis(self, event: VoiceEvent):
        """Publish one session event; failures never affect the session."""
        try:
            await self.event_broker.publish_session_event(event)
            logger.debug(f"📤 [{event.session_id}] Published {event.event_type} to Redis")
        except Exception as e:
            record_publish_error(self.service_name)
            logger.warning(f"⚠️ [{event.session_id}] Failed to publish {event.event_type}: {e}")

    # ========================================================================
    # Session lifecycle
    # ========================================================================

    def start_session(self, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        """
        Create a session and start connecting it in the background.

        Args:
            metadata: {source_name, source_type, platform, streaming_config?, session_id?}

        Returns:
            dict: {"session_id": str}

        Raises:
            ServiceDisabledError: Transcription disabled or credentials missing
            ProviderUnavailableError: Configured provider not supported
            InvalidOverrideError: A streaming_config value has the wrong type
            ValueError: Duplicate session id or unknown source type
        """
        metadata = metadata or {}

        if not self.config.enabled or not self.config.api_key:
            raise ServiceDisabledError("Live transcription is disabled or missing credentials")

        session_config = self.config.with_overrides(
            metadata.get("streaming_config") or metadata.get("streamingConfig")
        )
        if not session_config.is_supported_provider:
            raise ProviderUnavailableError(f"Unsupported transcription provider: '{session_config.provider}'")

        session_id = metadata.get("session_id") or metadata.get("sessionId") or str(uuid.uuid4())
        if session_id in self.sessions:
            raise ValueError(f"Session {session_id} already exists")

        source_type = metadata.get("source_type") or metadata.get("sourceType") or SourceType.MIC
        if source_type not in SourceType.ALL:
            raise ValueError(f"Unknown source type '{source_type}' (expected one of {SourceType.ALL})")

        session = Session(
            session_id=session_id,
            source_name=metadata.get("source_name") or metadata.get("sourceName") or source_type,
            source_type=source_type,
            provider=session_config.provider,
            platform=metadata.get("platform"),
        )

        protocol = build_protocol(session_config)
        channel = SessionEventChannel(session_id)
        record = SessionRecord(
            session=session,
            config=session_config,
            channel=channel,
            client=ProviderStreamClient(
                session_config, protocol, session_id, channel, connect_factory=self._connect_factory
            ),
            aggregator=LiveTranscriptionSession(session_id, channel),
            gate=self._gate_factory(session_config),
            framer=PcmFramer(
                sample_rate=session_config.sample_rate,
                target_chunk_ms=session_config.target_chunk_ms,
                max_pending_chunk_ms=session_config.max_pending_chunk_ms,
            ),
        )
        self._wire_channel(record)

        self.sessions[session_id] = record
        self.sessions_started += 1
        set_active_sessions(self.service_name, len(self.sessions))

        logger.info("=" * 70)
        logger.info(f"📝 Starting transcription session: {session_id}")
        logger.info(f"   Source: {session.source_name} ({session.source_type}) | Platform: {session.platform}")
        logger.info(f"   Provider: {session.provider} | Chunk: {session_config.target_chunk_ms}ms")
        logger.info("=" * 70)

        record.connect_task = asyncio.create_task(self._connect_session(record))
        return {"session_id": session_id}

    async def _connect_session(self, record: SessionRecord):
        try:
            async with time_connect(self.service_name, record.session.provider):
                await record.client.connect()
        except ConnectError as e:
            logger.warning(f"⚠️ [{record.session_id}] Initial connect failed: {e}")
            record.session.state = SessionState.RECONNECTING
            record.client.schedule_reconnect(str(e))
            return

        self._mark_ready(record)

    def _mark_ready(self, record: SessionRecord):
        if record.finished or record.stopping:
            return
        record.session.state = SessionState.ACTIVE
        if record.ready.is_set():
            return

        record.ready.set()
        record.last_speech_at = time.monotonic()
        record.heartbeat_task = asyncio.create_task(self._heartbeat_loop(record))
        logger.info(f"✅ [{record.session_id}] Session ready | Streaming to {record.session.provider}")
        self._emit(EventTypes.SESSION_STARTED, record.session_id)

    async def wait_until_ready(self, session_id: str, timeout: Optional[float] = None) -> bool:
        """
        Await the session's provider handshake.

        Returns:
            bool: True once ready, False on timeout or if the session ended first
        """
        record = self.sessions.get(session_id)
        if record is None:
            return False

        waiters = [
            asyncio.ensure_future(record.ready.wait()),
            asyncio.ensure_future(record.closed.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        return record.ready.is_set() and not record.finished

    async def stop_session(self, session_id: str, reason: str = "stopped") -> bool:
        """
        Gracefully stop a session: flush audio, wait for the provider to
        finalize (bounded), then tear down.

        Returns:
            bool: False if the session is unknown or already stopping
        """
        record = self.sessions.get(session_id)
        if record is None or record.stopping or record.finished:
            logger.debug(f"Session {session_id} not found - already stopped")
            return False

        record.stopping = True
        logger.info(f"🛑 [{session_id}] Stopping session (reason={reason})...")

        if record.connect_task and not record.connect_task.done():
            record.connect_task.cancel()
            try:
                await record.connect_task
            except (asyncio.CancelledError, Exception):
                pass
        elif record.client.is_connected:
            async with record.audio_lock:
                remainder = record.framer.flush()
                if remainder:
                    await self._send_frame(record, remainder)
            await self._flush(record)

        await self._teardown(record, reason)
        return True

    async def _flush(self, record: SessionRecord):
        client = record.client
        waits_for_ack = client.protocol.acknowledges_stream_end

        sent = await client.send_stream_end()
        if not sent and waits_for_ack:
            return
        if not waits_for_ack and not record.aggregator.has_open_turn:
            return

        timeout = record.config.stop_flush_timeout_s
        try:
            await asyncio.wait_for(record.flushed.wait(), timeout=timeout)
            logger.debug(f"[{record.session_id}] Flush complete")
        except asyncio.TimeoutError:
            error = FlushTimeout(f"Provider did not finalize within {timeout}s")
            logger.warning(f"⚠️ [{record.session_id}] {error}")
            self._emit(EventTypes.SESSION_WARNING, record.session_id, {
                "warning": "flush-timeout",
                "detail": str(error),
            })

    async def _teardown(self, record: SessionRecord, reason: str):
        if record.finished:
            return
        record.finished = True
        session_id = record.session_id

        if record.heartbeat_task and not record.heartbeat_task.done():
            record.heartbeat_task.cancel()
            try:
                await record.heartbeat_task
            except (asyncio.CancelledError, Exception):
                pass

        try:
            await record.client.disconnect()
        except Exception as e:
            logger.error(f"❌ [{session_id}] Error disconnecting provider client: {e}")

        record.channel.close()
        record.closed.set()
        self.sessions.pop(session_id, None)
        set_active_sessions(self.service_name, len(self.sessions))

        record.session.state = SessionState.ERROR if record.failed else SessionState.STOPPED
        if record.failed:
            self.sessions_failed += 1
        else:
            self.sessions_stopped += 1

        session_duration = time.time() - record.session.created_at
        logger.info("=" * 70)
        logger.info(f"🛑 Session stopped: {session_id} (reason={reason})")
        logger.info(f"   Duration: {session_duration:.1f}s | Chunks: {record.chunks_received} | Frames sent: {record.frames_sent}")
        logger.info(f"   Transcript: '{record.aggregator.transcript[:120]}'")
        logger.info("=" * 70)

        self._emit(EventTypes.SESSION_STOPPED, session_id, {"reason": reason})

    async def _fail_session(self, record: SessionRecord, error: Exception):
        logger.error(f"❌ [{record.session_id}] Session failed: {error}")
        self._emit(EventTypes.SESSION_ERROR, record.session_id, {"error": str(error)})
        await self._teardown(record, "error")

    async def stop_all_sessions(self, reason: str = "shutdown"):
        """Stop every session; one failing stop does not block the others."""
        session_ids = list(self.sessions.keys())
        if not session_ids:
            return

        logger.info(f"🛑 Stopping {len(session_ids)} session(s) (reason={reason})...")
        results = await asyncio.gather(
            *(self.stop_session(session_id, reason) for session_id in session_ids),
            return_exceptions=True,
        )
        for session_id, result in zip(session_ids, results):
            if isinstance(result, Exception):
                logger.error(f"❌ [{session_id}] Error while stopping session: {result}")

    async def shutdown(self):
        """Stop all sessions and wait for pending event publishes."""
        await self.stop_all_sessions("shutdown")
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
        self._listeners.clear()

    # ========================================================================
    # Audio path
    # ========================================================================

    async def push_chunk(self, session_id: str, chunk: Any) -> bool:
        """
        Route one captured chunk through the session's pipeline.

        Args:
            session_id: Target session
            chunk: AudioChunk or {sequence, mime_type, data, capture_timestamp}

        Returns:
            bool: False if the session is unknown/not ready or the send failed
        """
        record = self.sessions.get(session_id)
        if record is None or record.stopping or record.finished:
            self._drop(session_id, "closed-session")
            return False

        try:
            chunk = AudioChunk.from_payload(chunk)
        except ValueError as e:
            record.chunks_rejected += 1
            logger.warning(f"⚠️ [{session_id}] Rejected audio chunk: {e}")
            self._drop(session_id, "invalid")
            return False

        validation = validate_audio_chunk(chunk.data)
        if not validation["valid"]:
            record.chunks_rejected += 1
            logger.warning(f"⚠️ [{session_id}] Invalid audio chunk {chunk.sequence}: {validation['errors']}")
            self._drop(session_id, "invalid")
            return False

        if record.last_sequence is not None and chunk.sequence < record.last_sequence:
            logger.warning(
                f"⚠️ [{session_id}] Chunk sequence regressed: {chunk.sequence} after {record.last_sequence}"
            )
        record.last_sequence = chunk.sequence
        record.chunks_received += 1

        if not record.ready.is_set() or not record.client.is_connected:
            logger.debug(f"[{session_id}] Session not ready (state={record.session.state}) - chunk dropped")
            self._drop(session_id, "not-ready")
            return False

        async with record.audio_lock:
            if record.stopping or record.finished:
                self._drop(session_id, "closed-session")
                return False

            delivered = True
            for frame in record.framer.push(chunk.data):
                if not await self._send_frame(record, frame, chunk.sequence):
                    delivered = False
            return delivered

    async def _send_frame(self, record: SessionRecord, frame: bytes, sequence: Optional[int] = None) -> bool:
        decision = record.gate.process(frame)
        if decision.is_speech:
            record.last_speech_at = time.monotonic()
            record.last_silence_warning_at = None

        if decision.action == GateAction.SUPPRESS:
            return True

        filler = decision.action == GateAction.FILLER
        sent = await record.client.send_audio(decision.payload, {"sequence": sequence, "filler": filler})
        if sent:
            record.frames_sent += 1
            record_chunk_sent(self.service_name, record.session.provider, filler=filler)
            return True

        record.send_failures += 1
        failure = record.client.last_send_failure or TransientSendFailure(f"[{record.session_id}] send failed")
        logger.warning(f"⚠️ {failure}")
        self._drop(record.session_id, "send-failed")
        return False

    def _drop(self, session_id: str, reason: str):
        self.chunks_dropped += 1
        record_chunk_dropped(self.service_name, reason)
        if reason == "closed-session":
            logger.debug(f"[{session_id}] Audio for unknown or closed session dropped")

    # ========================================================================
    # Heartbeat and silence policy
    # ========================================================================

    async def _heartbeat_loop(self, record: SessionRecord):
        interval_s = record.config.heartbeat_interval_ms / 1000.0
        while not record.finished and not record.stopping:
            await asyncio.sleep(interval_s)
            if record.finished or record.stopping:
                break
            if record.session.state != SessionState.ACTIVE:
                continue
            self._emit(EventTypes.SESSION_HEARTBEAT, record.session_id)
            self._check_silence(record)

    def _check_silence(self, record: SessionRecord):
        notify_ms = record.config.silence_notify_ms
        if notify_ms <= 0:
            return

        now = time.monotonic()
        silent_ms = (now - record.last_speech_at) * 1000.0
        if silent_ms < notify_ms:
            return

        last_warning = record.last_silence_warning_at
        if last_warning is not None and (now - last_warning) * 1000.0 < record.config.silence_suppress_ms:
            return

        record.last_silence_warning_at = now
        logger.debug(f"[{record.session_id}] No speech for {silent_ms:.0f}ms")
        self._emit(EventTypes.SESSION_WARNING, record.session_id, {
            "warning": "silence",
            "silent_ms": int(silent_ms),
        })

    # ========================================================================
    # Channel wiring
    # ========================================================================

    def _wire_channel(self, record: SessionRecord):
        channel = record.channel
        session_id = record.session_id
        provider = record.session.provider

        def on_provider_event(event):
            if event.latency_ms is not None:
                record_stt_latency(self.service_name, provider, event.latency_ms / 1000.0)
            record.aggregator.apply(event)

        def on_update(update: TranscriptUpdate):
            payload = {"text": update.text, "is_final": update.is_final, "turn_order": update.turn.turn_order}
            if update.delta is not None:
                payload["delta"] = update.delta
            self._emit(EventTypes.SESSION_UPDATE, session_id, payload)
            if record.stopping and update.is_final and not record.client.protocol.acknowledges_stream_end:
                record.flushed.set()

        def on_inconsistency(error):
            record_protocol_inconsistency(self.service_name, provider)

        def on_turn_abandoned(turn):
            self._emit(EventTypes.SESSION_WARNING, session_id, {
                "warning": "turn-abandoned",
                "turn_order": turn.turn_order,
                "text": turn.text,
            })

        def on_provider_error(message):
            self._emit(EventTypes.SESSION_WARNING, session_id, {"warning": "provider-error", "detail": message})

        def on_stream_closed(_payload):
            record.flushed.set()

        def on_reconnecting(info):
            record_reconnect_attempt(self.service_name, provider)
            if not record.stopping:
                record.session.state = SessionState.RECONNECTING
                self._emit(EventTypes.SESSION_WARNING, session_id, {
                    "warning": "reconnecting",
                    "attempt": info["attempt"],
                    "delay_ms": info["delay_ms"],
                })

        def on_reconnected(_info):
            record.gate.reset()
            self._mark_ready(record)

        def on_fatal(error):
            if record.failed or record.finished:
                return
            if record.stopping:
                record.flushed.set()
                return
            record.failed = True
            task = asyncio.create_task(self._fail_session(record, error))
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

        channel.subscribe(ChannelEvents.PROVIDER_EVENT, on_provider_event)
        channel.subscribe(ChannelEvents.UPDATE, on_update)
        channel.subscribe(ChannelEvents.INCONSISTENCY, on_inconsistency)
        channel.subscribe(ChannelEvents.TURN_ABANDONED, on_turn_abandoned)
        channel.subscribe(ChannelEvents.PROVIDER_ERROR, on_provider_error)
        channel.subscribe(ChannelEvents.TERMINATED, on_stream_closed)
        channel.subscribe(ChannelEvents.DISCONNECTED, on_stream_closed)
        channel.subscribe(ChannelEvents.RECONNECTING, on_reconnecting)
        channel.subscribe(ChannelEvents.RECONNECTED, on_reconnected)
        channel.subscribe(ChannelEvents.FATAL, on_fatal)

    # ========================================================================
    # Inspection
    # ========================================================================

    def get_session(self, session_id: str) -> Optional[Session]:
        record = self.sessions.get(session_id)
        return record.session if record else None

    def get_transcript(self, session_id: str) -> Optional[str]:
        record = self.sessions.get(session_id)
        return record.aggregator.transcript if record else None

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [record.session.to_dict() for record in self.sessions.values()]

    def get_performance_metrics(self) -> Dict[str, Any]:
        """Get registry performance metrics."""
        return {
            "provider": self.config.provider,
            "enabled": self.config.enabled,
            "active_sessions": len(self.sessions),
            "sessions_started": self.sessions_started,
            "sessions_stopped": self.sessions_stopped,
            "sessions_failed": self.sessions_failed,
            "events_emitted": self.events_emitted,
            "chunks_dropped": self.chunks_dropped,
            "event_broker": self.event_broker.get_stats() if self.event_broker else None,
            "sessions": {sid: record.get_stats() for sid, record in self.sessions.items()},
        }
