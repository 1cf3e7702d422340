"""Wire schemas for the realtime chat protocol.

Inbound request payloads are validated with these models at the handler
boundary; outbound messages are always the enriched ``MessageView`` shape,
both on the live stream and from the history endpoint.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from huddle.store.schemas import MessageBody


# =============================================================================
# Inbound
# =============================================================================


class GroupRequest(BaseModel):
    """Payload of join/leave/typingStart/typingStop."""
    groupId: str = ""


class SendRequest(BaseModel):
    groupId: str = ""
    text: Optional[str] = None
    imageUrl: Optional[str] = None
    videoUrl: Optional[str] = None
    audioUrl: Optional[str] = None
    fileUrl: Optional[str] = None
    fileName: Optional[str] = None
    replyTo: Optional[str] = None
    clientKey: Optional[str] = None


class ReactRequest(BaseModel):
    groupId: str = ""
    messageId: str = ""
    emoji: str = ""


class MarkReadRequest(BaseModel):
    groupId: str = ""
    messageIds: List[str] = Field(default_factory=list)


# =============================================================================
# Outbound
# =============================================================================


class UserProjection(BaseModel):
    """Small display-ready profile used wherever a user id is enriched."""
    id: str
    fullName: str = ""
    profileImage: Optional[str] = None


class ReactionView(BaseModel):
    emoji: str
    user: UserProjection
    ts: datetime


class ReplyPreview(BaseModel):
    id: str
    author: UserProjection
    body: MessageBody


class MessageView(BaseModel):
    id: str
    groupId: str
    author: UserProjection
    body: MessageBody
    replyTo: Optional[ReplyPreview] = None
    reactions: List[ReactionView] = Field(default_factory=list)
    readBy: List[str] = Field(default_factory=list)
    deliveredTo: List[str] = Field(default_factory=list)
    clientKey: Optional[str] = None
    createdAt: datetime


class HistoryPage(BaseModel):
    items: List[MessageView]
    nextCursor: Optional[str] = None

