"""Per-call bridge between a Twilio media stream and a Dialogflow agent.

One ``SessionBridge`` lives for one phone call. It lazily builds a pipeline on
the first inbound frame::

    inbound frames -> decode -> transcode up -> agent (send)
    agent (receive) -> transcode down -> encode -> AUDIO signal

and taps the decoded frames and the agent responses to drive the session
state machine. When a pipeline ends (single-utterance turn finished, or a
failure) the next inbound frame builds a continuation pipeline on the same
agent session path, unless the session has been stopped.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from bridge.schemas import (
    AgentResponse,
    BridgeFailure,
    BridgeSignal,
    CallStarted,
    EndOfInteraction,
    Interrupted,
    OutboundAudio,
    QueryResult,
)
from bridge.state import SessionState, transition
from integrations.twilio_streaming import (
    END_OF_INTERACTION_MARK,
    MarkFrame,
    MediaFrame,
    OutboundFrameEncoder,
    StartFrame,
    StopFrame,
    media_audio,
    parse_inbound_frame,
)
from telephony.transcoder import transcode_downstream, transcode_upstream

LOGGER = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]


class AgentStream(Protocol):
    @property
    def send_closed(self) -> bool: ...

    async def write(self, chunk: bytes) -> bool: ...

    def half_close(self) -> None: ...

    def close(self) -> None: ...

    def responses(self) -> Any: ...


class AgentStreamFactory(Protocol):
    async def open(self, session_id: str, *, first_turn: bool) -> AgentStream: ...


def _drain(queue: asyncio.Queue) -> None:
    while not queue.empty():
        queue.get_nowait()


@dataclass(eq=False)
class PipelineInstance:
    number: int
    agent: AgentStream
    inbound: asyncio.Queue
    inbound_closed: bool = False
    agent_closed: bool = False
    supervisor: asyncio.Task | None = None
    tasks: set[asyncio.Task] = field(default_factory=set)
    inbound_done: asyncio.Event = field(default_factory=asyncio.Event)

    async def put(self, message: str | bytes) -> bool:
        """Queue one inbound frame; False once the inbound side has closed."""

        if self.inbound_closed:
            return False
        try:
            self.inbound.put_nowait(message)
            return True
        except asyncio.QueueFull:
            pass

        # Wait for room, but give up as soon as teardown closes the queue.
        put = asyncio.ensure_future(self.inbound.put(message))
        closed = asyncio.ensure_future(self.inbound_done.wait())
        try:
            done, _ = await asyncio.wait({put, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            put.cancel()
            closed.cancel()
        return put in done

    def close_inbound(self) -> None:
        if self.inbound_closed:
            return
        self.inbound_closed = True
        self.inbound_done.set()
        _drain(self.inbound)
        self.inbound.put_nowait(None)

    def close_agent(self) -> None:
        if self.agent_closed:
            return
        self.agent_closed = True
        self.agent.close()


class SessionBridge:
    def __init__(
        self,
        agent_factory: AgentStreamFactory,
        *,
        session_id: str | None = None,
        inbound_queue_size: int = 50,
        output_sample_rate: int = 16000,
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self.call_sid: str | None = None
        self.stream_sid: str | None = None
        self.is_first_turn = True

        self._agent_factory = agent_factory
        self._inbound_queue_size = inbound_queue_size
        self._output_sample_rate = output_sample_rate

        self._state = SessionState.IDLE
        self._pipeline: PipelineInstance | None = None
        self._pipeline_lock = asyncio.Lock()
        self._pipeline_numbers = itertools.count(1)
        self._encoder = OutboundFrameEncoder()
        self._final_query_result: QueryResult | None = None
        self._interaction_ended = False
        self._subscribers: dict[BridgeSignal, list[Handler]] = {signal: [] for signal in BridgeSignal}

    # -- public contract -------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_stopped(self) -> bool:
        return self._state in (SessionState.STOPPED, SessionState.CLOSED)

    @property
    def is_ready(self) -> bool:
        return self._pipeline is not None

    @property
    def pipeline(self) -> PipelineInstance | None:
        return self._pipeline

    @property
    def final_query_result(self) -> QueryResult | None:
        return self._final_query_result

    def subscribe(self, signal: BridgeSignal, handler: Handler) -> None:
        self._subscribers[signal].append(handler)

    async def send(self, message: str | bytes) -> None:
        """Accept one inbound telephony frame."""

        if self._state is SessionState.CLOSED:
            LOGGER.warning("Session %s is closed; ignoring inbound frame", self.session_id)
            return

        if self._state is SessionState.STOPPED:
            # Control frames still matter: Twilio echoes our end-of-interaction mark.
            frame = parse_inbound_frame(message)
            if frame is None or isinstance(frame, MediaFrame):
                LOGGER.warning("Session %s is stopped; ignoring inbound frame", self.session_id)
                return
            await self._tap_inbound(frame)
            return

        pipeline = await self._ensure_pipeline()
        if pipeline is None or not await pipeline.put(message):
            LOGGER.warning("Tried to write to ended or missing stream. Ignoring message.")

    def stop(self) -> None:
        """Suppress further caller audio; the next flushed chunk carries the end mark."""

        if self.is_stopped:
            return
        LOGGER.info("Stopping Dialogflow session %s", self.session_id)
        self._set_state(SessionState.STOPPED)

    async def finish(self) -> None:
        """Tear the session down. Safe to call repeatedly and from signal handlers."""

        if self._state is SessionState.CLOSED:
            return
        LOGGER.info("Disconnecting session %s from Dialogflow", self.session_id)
        self._set_state(SessionState.CLOSED)

        pipeline, self._pipeline = self._pipeline, None
        if pipeline is None:
            return
        pipeline.close_inbound()
        pipeline.close_agent()

        supervisor = pipeline.supervisor
        current = asyncio.current_task()
        if supervisor is None or supervisor.done() or current is supervisor:
            # The supervisor is already unwinding on its own.
            return
        supervisor.cancel()
        if current in pipeline.tasks:
            return
        await asyncio.gather(supervisor, return_exceptions=True)

    # -- pipeline construction --------------------------------------------

    async def _ensure_pipeline(self) -> PipelineInstance | None:
        async with self._pipeline_lock:
            if self._pipeline is not None:
                return self._pipeline
            if self.is_stopped:
                return None

            first_turn = self.is_first_turn
            try:
                agent = await self._agent_factory.open(self.session_id, first_turn=first_turn)
            except Exception as exc:
                LOGGER.error("Could not open agent stream for %s: %s", self.session_id, exc)
                await self._publish_failure(exc)
                return None

            if self.is_stopped:
                # finish() or stop() ran while the stream was opening.
                agent.close()
                return None

            self.is_first_turn = False
            pipeline = PipelineInstance(
                number=next(self._pipeline_numbers),
                agent=agent,
                inbound=asyncio.Queue(maxsize=self._inbound_queue_size),
            )
            self._pipeline = pipeline
            self._set_state(SessionState.ACTIVE)
            pipeline.supervisor = asyncio.create_task(
                self._supervise(pipeline),
                name=f"bridge-{self.session_id}-pipeline-{pipeline.number}",
            )
            LOGGER.info(
                "Started pipeline %d for session %s (first turn: %s)",
                pipeline.number,
                self.session_id,
                first_turn,
            )
            return pipeline

    async def _supervise(self, pipeline: PipelineInstance) -> None:
        inbound = asyncio.create_task(self._pump_inbound(pipeline))
        responses = asyncio.create_task(self._pump_responses(pipeline))
        pipeline.tasks.update({inbound, responses})
        try:
            pending: set[asyncio.Task] = {inbound, responses}
            while responses in pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    task.result()
                if inbound in done:
                    # Caller side ended; let the agent finish its answer.
                    pipeline.agent.half_close()
        except Exception as exc:
            LOGGER.error("Pipeline %d for session %s failed: %s", pipeline.number, self.session_id, exc)
            await self._publish_failure(exc)
        finally:
            pipeline.close_agent()
            pipeline.close_inbound()
            if self._pipeline is pipeline:
                self._pipeline = None
            for task in (inbound, responses):
                task.cancel()
            await asyncio.gather(inbound, responses, return_exceptions=True)
            LOGGER.info("Pipeline %d for session %s closed", pipeline.number, self.session_id)

    # -- stages -----------------------------------------------------------

    async def _pump_inbound(self, pipeline: PipelineInstance) -> None:
        while True:
            message = await pipeline.inbound.get()
            if message is None or pipeline.inbound_closed:
                return
            frame = parse_inbound_frame(message)
            if frame is None:
                continue
            await self._tap_inbound(frame)

            payload = media_audio(frame)
            if payload is None or self.is_stopped:
                continue
            chunk = transcode_upstream(payload)
            if chunk is None:
                continue
            if pipeline.agent.send_closed:
                LOGGER.debug("Agent request stream ended; dropping %d bytes of caller audio", len(chunk))
                continue
            await pipeline.agent.write(chunk)

    async def _pump_responses(self, pipeline: PipelineInstance) -> None:
        async for response in pipeline.agent.responses():
            await self._tap_agent(pipeline, response)
            audio = transcode_downstream(response.output_audio, fallback_rate=self._output_sample_rate)
            if audio is not None:
                await self._emit_audio(audio)

    # -- side-channel taps ------------------------------------------------

    async def _tap_inbound(self, frame: StartFrame | MediaFrame | MarkFrame | StopFrame) -> None:
        if isinstance(frame, StartFrame):
            self.call_sid = frame.start.call_sid
            self.stream_sid = frame.start.stream_sid
            self._encoder.stream_sid = frame.start.stream_sid
            LOGGER.info("Captured call %s (stream %s)", self.call_sid, self.stream_sid)
            await self._publish(
                BridgeSignal.CALL_STARTED,
                CallStarted(call_sid=frame.start.call_sid, stream_sid=frame.start.stream_sid),
            )
        elif isinstance(frame, MarkFrame):
            LOGGER.info("Mark received %s", frame.mark.name)
            if frame.mark.name == END_OF_INTERACTION_MARK:
                await self._end_interaction()
        elif isinstance(frame, StopFrame):
            LOGGER.info("Twilio stopped streaming call %s", self.call_sid)

    async def _tap_agent(self, pipeline: PipelineInstance, response: AgentResponse) -> None:
        if response.transcript and self._state is SessionState.ACTIVE:
            LOGGER.info("Interrupted with %r", response.transcript)
            self._set_state(SessionState.INTERRUPTED)
            await self._publish(
                BridgeSignal.INTERRUPTED,
                Interrupted(transcript=response.transcript, clear_frame=self._encoder.clear()),
            )

        if response.end_of_single_utterance:
            pipeline.agent.half_close()

        result = response.query_result
        if result is not None and result.end_interaction and self._final_query_result is None:
            LOGGER.info("Ending interaction with: %s", result.fulfillment_text)
            self._final_query_result = result
            self.stop()
            pipeline.agent.half_close()

    async def _emit_audio(self, audio: bytes) -> None:
        if self._encoder.mark_sent:
            LOGGER.warning("Dropping %d bytes of agent audio after the end-of-interaction mark", len(audio))
            return
        frames = [self._encoder.media(audio)]
        if self.is_stopped:
            mark = self._encoder.end_of_interaction_mark()
            if mark is not None:
                LOGGER.info("Sending end of interaction mark for call %s", self.call_sid)
                frames.append(mark)
        await self._publish(BridgeSignal.AUDIO, OutboundAudio(payload=audio, frames=tuple(frames)))

    async def _end_interaction(self) -> None:
        if self._interaction_ended:
            return
        if self._final_query_result is None:
            LOGGER.warning("End-of-interaction mark without a final query result; ignoring")
            return
        self._interaction_ended = True
        await self._publish(
            BridgeSignal.END_OF_INTERACTION,
            EndOfInteraction(call_sid=self.call_sid, query_result=self._final_query_result),
        )

    # -- signals ----------------------------------------------------------

    def _set_state(self, target: SessionState) -> None:
        self._state = transition(self._state, target)

    async def _publish(self, signal: BridgeSignal, event: Any) -> None:
        for handler in list(self._subscribers[signal]):
            await handler(event)

    async def _publish_failure(self, exc: BaseException) -> None:
        event = BridgeFailure(cause=exc)
        for handler in list(self._subscribers[BridgeSignal.ERROR]):
            try:
                await handler(event)
            except Exception:
                LOGGER.exception("Error handler failed for session %s", self.session_id)
