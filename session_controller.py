"""
Duplex voice session: mic -> remote audio agent -> gapless playback.

SessionController owns the connection state machine and wires the capture
engine, playback scheduler, transcript aggregator, tool dispatcher and
interruption handler to one transport. Everything runs on a single asyncio
loop; the audio threads only hand data to it via call_soon_threadsafe.

State machine: DISCONNECTED -> CONNECTING -> CONNECTED -> {DISCONNECTED, ERROR}
Transport failures are fatal and never retried; callers re-invoke connect().
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from audio_devices import AudioDevices
from capture_engine import CaptureEngine, MicGate
from interruption import InterruptionHandler
from playback_scheduler import AnalysisTap, PlaybackBuffer, PlaybackScheduler
from session_config import (
    SessionConfig,
    build_system_instruction,
    load_persona,
)
from session_events import AudioDecodeError, EventKind, TransportError, TransportEvent
from session_log import SessionLog
from tool_dispatcher import ToolCallRequest, ToolDispatcher
from tool_manifest import SideEffects, ToolContext, WorkspaceFile, WorkspaceServices, build_toolset, manifest
from transcript_aggregator import TranscriptAggregator, TranscriptMessage
from transport import WebSocketTransport
from volume_meter import VolumeMeter


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class ConnectContext:
    """Per-connection inputs supplied by the host."""
    memories: list[str] = field(default_factory=list)
    files: list[WorkspaceFile] = field(default_factory=list)
    location: str | None = None


async def open_websocket_transport(config: SessionConfig, setup: dict):
    return await WebSocketTransport.open(config.url, setup, api_key=config.api_key)


class SessionController:
    """One duplex voice session at a time.

    Args:
        config: SessionConfig (defaults if None)
        services: WorkspaceServices for search/file/task tools
        effects: SideEffects hooks for tool side effects
        on_transcript_message: callback(TranscriptMessage) for finalized utterances
        on_grounding: callback(dict) for grounding metadata, passed through verbatim
        on_state_change: callback(ConnectionState)
        on_volume: callback(float) from the volume meter
        devices: audio device factory (AudioDevices by default)
        open_transport: async callable(config, setup) -> transport
        clock: monotonic clock used by the mic gate cooldown
    """

    def __init__(self, config: SessionConfig | None = None,
                 services: WorkspaceServices | None = None,
                 effects: SideEffects | None = None,
                 on_transcript_message: Callable[[TranscriptMessage], None] | None = None,
                 on_grounding: Callable[[dict], None] | None = None,
                 on_state_change: Callable[[ConnectionState], None] | None = None,
                 on_volume: Callable[[float], None] | None = None,
                 devices=None, open_transport=None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or SessionConfig()
        self.services = services or WorkspaceServices()
        self.effects = effects or SideEffects()
        self.on_transcript_message = on_transcript_message or (lambda msg: None)
        self.on_grounding = on_grounding or (lambda metadata: None)
        self.on_state_change = on_state_change or (lambda state: None)
        self.on_volume = on_volume or (lambda level: None)

        self.state = ConnectionState.DISCONNECTED
        self.log = SessionLog(capacity=self.config.log_capacity, path=self.config.log_path)

        audio = self.config.audio
        self.gate = MicGate(cooldown=audio.cooldown, clock=clock)
        self.tap = AnalysisTap(fft_size=audio.fft_size)
        self.transcripts = TranscriptAggregator(sink=self._on_transcript)
        self.capture = CaptureEngine(self.gate, self._send_audio)
        self.volume_meter = VolumeMeter(self.tap, lambda: self.gate.is_speaking, self._publish_volume)

        self._devices = devices or AudioDevices(audio)
        self._open_transport = open_transport or open_websocket_transport

        # Created per connection
        self.scheduler: PlaybackScheduler | None = None
        self.interruptions: InterruptionHandler | None = None
        self.tools: ToolDispatcher | None = None
        self._transport = None
        self._output = None
        self._mic = None
        self._dispatch_task: asyncio.Task | None = None
        self._tool_tasks: set[asyncio.Task] = set()

        # Bumped on every connect/disconnect; work tagged with an older epoch
        # is discarded
        self._epoch = 0

    @property
    def is_speaking(self) -> bool:
        return self.gate.is_speaking

    @property
    def transport(self):
        return self._transport

    def set_other_audio_playing(self, playing: bool):
        """External flag, e.g. a music player is active. Closes the mic gate."""
        self.gate.other_audio_playing = playing

    # ── Lifecycle ─────────────────────────────────────────────────

    async def connect(self, context: ConnectContext | None = None):
        """Acquire devices, open the transport, start streaming.

        No-op while already connecting or connected. Any failure leaves the
        session in ERROR with everything released.
        """
        if self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return

        context = context or ConnectContext()
        self._epoch += 1
        epoch = self._epoch
        self._set_state(ConnectionState.CONNECTING)
        self.log.add("info", "Initializing connection...")
        loop = asyncio.get_running_loop()

        try:
            self._output = self._devices.open_output(loop, self.tap)
            self.scheduler = PlaybackScheduler(
                self._output,
                on_speech_start=self.gate.speech_started,
                on_speech_end=self.gate.speech_ended,
            )
            self._output.on_buffer_ended = self.scheduler.on_buffer_ended
            self.interruptions = InterruptionHandler(self.scheduler, self.transcripts, self.gate)

            self._mic = self._devices.open_microphone(loop, self.capture.on_frame)
            self.log.add("info", "Microphone access granted")

            toolset = build_toolset(self.config.integrations)
            tool_context = ToolContext(
                services=self.services,
                effects=self.effects,
                files=list(context.files),
                on_grounding=self._on_grounding,
            )
            self.tools = ToolDispatcher(toolset, tool_context,
                                        send=self._tool_sender(epoch), on_log=self.log.add)

            setup = self.build_setup(context, toolset)
            self.log.add("info", "Connecting to remote agent...",
                         {"model": self.config.model, "tools": list(toolset)})
            transport = await self._open_transport(self.config, setup)
        except asyncio.CancelledError:
            if epoch == self._epoch:
                self._epoch += 1
                await self._teardown(ConnectionState.DISCONNECTED)
            raise
        except Exception as e:
            if epoch != self._epoch:
                return  # disconnect() already released everything
            print(f"Voice session: Connect failed: {e}", flush=True)
            self.log.add("error", "Failed to connect", str(e))
            self._epoch += 1
            await self._teardown(ConnectionState.ERROR)
            return

        if epoch != self._epoch:
            # disconnect() ran while the handshake was in flight
            print("Voice session: Connect superseded, closing transport", flush=True)
            await transport.close()
            return

        self._transport = transport
        self.scheduler.reset_clock()
        self.transcripts.on_interrupted()
        self.capture.start()
        self._mic.start()
        self._dispatch_task = loop.create_task(self._dispatch_loop(transport, epoch),
                                               name="voice-session-dispatch")
        self.volume_meter.start()
        self._set_state(ConnectionState.CONNECTED)
        self.log.add("info", "Session connected")
        print("Voice session: Connected", flush=True)

    async def disconnect(self):
        """Stop everything and return to DISCONNECTED. Safe from any state."""
        self._epoch += 1
        await self._teardown(ConnectionState.DISCONNECTED)

    async def _teardown(self, final_state: ConnectionState):
        was = self.state

        self.capture.stop()
        mic, self._mic = self._mic, None
        if mic is not None:
            mic.close()

        if self.scheduler is not None:
            self.scheduler.flush()
        output, self._output = self._output, None
        if output is not None:
            output.close()

        current = asyncio.current_task()
        dispatch, self._dispatch_task = self._dispatch_task, None
        if dispatch is not None and dispatch is not current and not dispatch.done():
            dispatch.cancel()
        for task in list(self._tool_tasks):
            if task is not current:
                task.cancel()
        self._tool_tasks.clear()

        self.gate.reset()
        self.transcripts.on_interrupted()

        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                self.log.add("error", "Error closing transport", str(e))

        self._devices.close()
        await self.volume_meter.stop()
        self.tap.reset()

        self._set_state(final_state)
        if was != ConnectionState.DISCONNECTED or final_state != ConnectionState.DISCONNECTED:
            self.log.add("info", "Session disconnected and cleaned up")
            print(f"Voice session: Stopped ({final_state.value})", flush=True)
        self.log.close()

    def _set_state(self, state: ConnectionState):
        if state == self.state:
            return
        self.state = state
        try:
            self.on_state_change(state)
        except Exception as e:
            self.log.add("error", "State callback failed", str(e))

    # ── Outbound ──────────────────────────────────────────────────

    def build_setup(self, context: ConnectContext, toolset) -> dict:
        """The one-time session configuration sent on connect."""
        integrations = self.config.integrations
        instruction = build_system_instruction(
            load_persona(self.config.persona_dir),
            integrations,
            memories=context.memories,
            file_names=[f.name for f in context.files],
            location=context.location,
        )
        audio = self.config.audio
        return {
            "model": self.config.model,
            "systemInstruction": instruction,
            "responseModalities": ["AUDIO"],
            "voice": self.config.voice,
            "inputAudio": {"encoding": "pcm16le", "sampleRate": audio.input_rate},
            "outputAudio": {"encoding": "pcm16le", "sampleRate": audio.output_rate},
            "nativeSearch": not integrations.personalized_search,
            "tools": manifest(toolset),
        }

    def _send_audio(self, message: dict):
        transport = self._transport
        if transport is not None:
            transport.send_nowait(message)

    async def send_text(self, text: str):
        """Inject a typed user turn. Logs an error if there is no live session."""
        transport = self._transport
        if self.state != ConnectionState.CONNECTED or transport is None:
            self.log.add("error", "Cannot send text: no active session")
            return
        try:
            await transport.send({"clientText": {"text": text}})
        except TransportError as e:
            self.log.add("error", "Failed to send text", str(e))
            return
        self.log.add("user", text)

    def _tool_sender(self, epoch: int):
        async def send(message: dict):
            transport = self._transport
            if epoch != self._epoch or transport is None:
                self.log.add("info", "Dropping tool response after teardown")
                return
            await transport.send(message)
        return send

    # ── Inbound ───────────────────────────────────────────────────

    async def _dispatch_loop(self, transport, epoch: int):
        final_state = ConnectionState.DISCONNECTED
        try:
            async for event in transport.events():
                if epoch != self._epoch:
                    return
                self.dispatch(event)
            self.log.add("info", "Session closed")
            print("Voice session: Connection closed", flush=True)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            final_state = ConnectionState.ERROR
            self.log.add("error", "Session error", str(e))
            print(f"Voice session: Error: {e}", flush=True)

        if epoch == self._epoch:
            self._epoch += 1
            await self._teardown(final_state)

    def dispatch(self, event: TransportEvent):
        """Route one inbound event to exactly one consumer.

        Raises:
            TransportError: the remote side reported a protocol error.
        """
        kind = event.kind
        if kind == EventKind.AUDIO:
            self._on_audio_part(event.data)
        elif kind == EventKind.TRANSCRIPTION:
            self._on_transcription(event.data)
        elif kind == EventKind.TURN_COMPLETE:
            self.transcripts.on_turn_complete()
        elif kind == EventKind.INTERRUPTED:
            self.log.add("info", "Model interrupted")
            self.interruptions.on_interrupted()
        elif kind == EventKind.TOOL_CALL:
            self._on_tool_call(event.data)
        elif kind == EventKind.GROUNDING:
            self._on_grounding(event.data)
        elif kind == EventKind.SETUP_COMPLETE:
            pass
        elif kind == EventKind.ERROR:
            raise TransportError(f"remote error: {event.data}")
        else:
            self.log.add("info", "Ignoring unrecognized event", event.data)

    def _on_audio_part(self, payload):
        try:
            buffer = PlaybackBuffer.from_part(payload, self.config.audio.output_rate)
        except AudioDecodeError as e:
            self.log.add("error", "Dropped undecodable audio", str(e))
            return
        if len(buffer.samples) == 0:
            return
        self.scheduler.on_buffer_received(buffer)

    def _on_transcription(self, data):
        if not isinstance(data, dict):
            self.log.add("error", "Malformed transcription event", data)
            return
        text = data.get("text", "")
        if not isinstance(text, str):
            self.log.add("error", "Dropped non-text transcription", repr(text))
            return
        try:
            self.transcripts.on_delta(data.get("role", ""), text)
        except ValueError as e:
            self.log.add("error", "Dropped transcription", str(e))

    def _on_tool_call(self, data):
        calls = data.get("calls", []) if isinstance(data, dict) else []
        requests = [ToolCallRequest.from_wire(c) for c in calls if isinstance(c, dict)]
        self.log.add("tool", "Received tool call", [r.name for r in requests])

        task = asyncio.get_running_loop().create_task(self.tools.on_tool_call_batch(requests))
        self._tool_tasks.add(task)
        task.add_done_callback(self._tool_batch_done)

    def _tool_batch_done(self, task: asyncio.Task):
        self._tool_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.log.add("error", "Tool response not delivered", str(exc))

    def _on_transcript(self, msg: TranscriptMessage):
        self.log.add(msg.role, msg.text)
        try:
            self.on_transcript_message(msg)
        except Exception as e:
            self.log.add("error", "Transcript callback failed", str(e))

    def _on_grounding(self, metadata):
        self.log.add("tool", "Grounding metadata found", metadata)
        try:
            self.on_grounding(metadata)
        except Exception as e:
            self.log.add("error", "Grounding callback failed", str(e))

    def _publish_volume(self, level: float):
        self.on_volume(level)
