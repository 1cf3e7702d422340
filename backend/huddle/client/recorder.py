"""Voice message recording flow.

State machine::

    idle ──start()──▶ recording ──stop()───▶ stopped   (upload, then send)
                          └──────cancel()──▶ cancelled (nothing uploaded)

``cancel`` discards the captured audio and releases the capture device
without calling upload or send. ``stop`` always releases the device, then
tries upload followed by send. A failure at either stage sets ``error`` and
leaves ``ComposeState`` untouched, and ``retry`` re-attempts with the audio
that was kept. Every attempt for one recording carries the same client key,
so a send that timed out after the server stored it is not stored twice.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from huddle.ids import new_id

logger = logging.getLogger(__name__)


class RecorderState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPED = "stopped"
    CANCELLED = "cancelled"


class RecorderStateError(RuntimeError):
    """Raised on a transition the state machine does not allow."""


class CaptureDevice(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> bytes: ...

    def release(self) -> None: ...


@dataclass
class ComposeState:
    """What the user is composing; survives failed sends."""
    draft: str = ""
    reply_to: Optional[str] = None
    pending_attachment: Optional[str] = None
    # Idempotency key of the send in flight; kept until it is acknowledged
    client_key: Optional[str] = None


Uploader = Callable[[bytes, str], Awaitable[str]]
VoiceSender = Callable[[str, Optional[str], str], Awaitable[dict]]


class VoiceRecorder:
    """Drives one capture device through record → upload → send.

    Args:
        device_factory: Returns a fresh CaptureDevice for each recording.
        upload: ``upload(audio, filename) -> url``.
        send: ``send(audio_url, reply_to, client_key) -> message``.
        compose: Shared compose state; its reply target is attached to the
            voice message and cleared only after a successful send.
    """

    filename = "voice.webm"

    def __init__(
        self,
        device_factory: Callable[[], CaptureDevice],
        upload: Uploader,
        send: VoiceSender,
        compose: Optional[ComposeState] = None,
    ) -> None:
        self.device_factory = device_factory
        self.upload = upload
        self.send = send
        self.compose = compose or ComposeState()
        self.state = RecorderState.IDLE
        self.error: Optional[str] = None
        self._device: Optional[CaptureDevice] = None
        self._audio: Optional[bytes] = None
        self._uploaded_url: Optional[str] = None
        self._client_key: Optional[str] = None

    async def start(self) -> bool:
        """Open the capture device and begin recording.

        Returns:
            False (with ``error`` set) if the device could not be opened.
        """
        if self.state == RecorderState.RECORDING:
            raise RecorderStateError("Already recording")

        device = self.device_factory()
        try:
            await device.start()
        except Exception as e:
            logger.warning(f"[Recorder] Could not open capture device: {e}")
            device.release()
            self.error = "Could not access microphone"
            self.state = RecorderState.IDLE
            return False

        self._device = device
        self._audio = None
        self._uploaded_url = None
        self._client_key = new_id()
        self.error = None
        self.state = RecorderState.RECORDING
        return True

    async def cancel(self) -> None:
        """Stop recording and throw the audio away."""
        if self.state != RecorderState.RECORDING:
            raise RecorderStateError(f"Cannot cancel from {self.state.value}")
        try:
            await self._device.stop()
        finally:
            self._release()
        self._audio = None
        self.state = RecorderState.CANCELLED

    async def stop(self) -> Optional[dict]:
        """Stop recording, upload the audio, then send it.

        Returns:
            The sent message, or None if upload or send failed.
        """
        if self.state != RecorderState.RECORDING:
            raise RecorderStateError(f"Cannot stop from {self.state.value}")
        try:
            self._audio = await self._device.stop()
        finally:
            self._release()
        self.state = RecorderState.STOPPED
        return await self._deliver()

    async def retry(self) -> Optional[dict]:
        """Re-attempt upload/send of a stopped recording that failed."""
        if self.state != RecorderState.STOPPED or self._audio is None:
            raise RecorderStateError("Nothing to retry")
        return await self._deliver()

    async def _deliver(self) -> Optional[dict]:
        if self._uploaded_url is None:
            try:
                self._uploaded_url = await self.upload(self._audio, self.filename)
            except Exception as e:
                logger.warning(f"[Recorder] Voice upload failed: {e}")
                self.error = "Voice upload failed"
                return None

        try:
            message = await self.send(self._uploaded_url, self.compose.reply_to, self._client_key)
        except Exception as e:
            logger.warning(f"[Recorder] Voice send failed: {e}")
            self.error = "Voice send failed"
            return None

        self.error = None
        self._audio = None
        self._uploaded_url = None
        self._client_key = None
        self.compose.reply_to = None
        return message

    def _release(self) -> None:
        if self._device is not None:
            self._device.release()
            self._device = None
