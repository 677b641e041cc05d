"""Streaming transcription for a live call.

Twilio forks the call audio to ``/ws/media``; a small Pipecat pipeline runs
it through Deepgram and hands every transcription to the call's actor:

  transport.input() -> DeepgramSTTService -> TranscriptForwarder

Nothing is sent back over the socket.  Prompts reach the caller through
call redirects, not the media stream.
"""

import logging
import os
from typing import Callable

from fastapi import WebSocket
from pipecat.frames.frames import (
    EndFrame,
    Frame,
    InterimTranscriptionFrame,
    TranscriptionFrame,
)
from pipecat.pipeline.pipeline import Pipeline
from pipecat.pipeline.runner import PipelineRunner
from pipecat.pipeline.task import PipelineParams, PipelineTask
from pipecat.processors.frame_processor import FrameDirection, FrameProcessor
from pipecat.runner.utils import parse_telephony_websocket
from pipecat.serializers.twilio import TwilioFrameSerializer
from pipecat.services.deepgram.stt import DeepgramSTTService
from pipecat.transports.websocket.fastapi import (
    FastAPIWebsocketParams,
    FastAPIWebsocketTransport,
)

from reflectline.messages import SpeechChunk

logger = logging.getLogger(__name__)


class TranscriptForwarder(FrameProcessor):
    """Posts transcription frames to a call actor as ``SpeechChunk`` messages.

    Final transcriptions become ``SpeechChunk(text, is_final=True)``;
    interim ones are forwarded with ``is_final=False``.  Every frame is also
    pushed downstream unchanged.
    """

    def __init__(self, sink: Callable[[SpeechChunk], None], call_sid: str = "", **kwargs):
        super().__init__(**kwargs)
        self._sink = sink
        self._call_sid = call_sid

    async def process_frame(self, frame: Frame, direction: FrameDirection):
        await super().process_frame(frame, direction)

        if isinstance(frame, TranscriptionFrame) and frame.text.strip():
            logger.info(f"[{self._call_sid}] Caller: {frame.text.strip()}")
            self._sink(SpeechChunk(frame.text.strip(), is_final=True))
        elif isinstance(frame, InterimTranscriptionFrame) and frame.text.strip():
            self._sink(SpeechChunk(frame.text.strip(), is_final=False))

        await self.push_frame(frame, direction)


class MediaStream:
    """Handle the actor holds to stop transcription mid-call."""

    def __init__(self, task: PipelineTask, call_sid: str):
        self._task = task
        self.call_sid = call_sid
        self.closed = False

    async def close(self):
        if self.closed:
            return
        self.closed = True
        logger.info(f"[{self.call_sid}] Closing media stream")
        await self._task.cancel()


async def run_media_stream(websocket: WebSocket, registry) -> None:
    """Run the transcription pipeline for one Twilio media stream."""
    _, call_data = await parse_telephony_websocket(websocket)
    stream_sid = call_data["stream_id"]
    call_sid = call_data["call_id"]

    actor = registry.get(call_sid)
    if actor is None:
        logger.warning(f"[{call_sid}] Media stream for unknown call, closing")
        await websocket.close()
        return

    serializer = TwilioFrameSerializer(
        stream_sid=stream_sid,
        call_sid=call_sid,
        # the actor ends the call itself, after its closing line
        params=TwilioFrameSerializer.InputParams(auto_hang_up=False),
    )
    transport = FastAPIWebsocketTransport(
        websocket=websocket,
        params=FastAPIWebsocketParams(
            audio_in_enabled=True,
            audio_out_enabled=False,
            add_wav_header=False,
            serializer=serializer,
        ),
    )
    stt = DeepgramSTTService(api_key=os.getenv("DEEPGRAM_API_KEY"))
    forwarder = TranscriptForwarder(actor.post, call_sid=call_sid)

    task = PipelineTask(
        Pipeline([transport.input(), stt, forwarder]),
        params=PipelineParams(audio_in_sample_rate=8000),
    )

    @transport.event_handler("on_client_disconnected")
    async def on_disconnected(transport, client):
        logger.info(f"[{call_sid}] Media stream disconnected")
        await task.queue_frames([EndFrame()])

    actor.attach_stream(MediaStream(task, call_sid))
    logger.info(f"[{call_sid}] Media stream started: {stream_sid}")

    runner = PipelineRunner(handle_sigint=False)
    await runner.run(task)
    logger.info(f"[{call_sid}] Media stream ended")
