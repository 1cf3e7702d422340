"""Client library for the realtime group chat.

    - MessageTimeline: history + live stream merge without duplicates
    - TypingIndicator / TypingNotifier: typing display and debounce
    - VoiceRecorder: record → upload → send flow
    - GroupChatClient: WebSocket session tying the above together
"""
from .recorder import ComposeState, RecorderState, RecorderStateError, VoiceRecorder
from .session import GroupChatClient, RequestFailed
from .timeline import MessageTimeline
from .typing_state import TypingIndicator, TypingNotifier

__all__ = [
    "ComposeState",
    "GroupChatClient",
    "MessageTimeline",
    "RecorderState",
    "RecorderStateError",
    "RequestFailed",
    "TypingIndicator",
    "TypingNotifier",
    "VoiceRecorder",
]
