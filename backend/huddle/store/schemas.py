"""Pydantic models for stored chat entities.

Message bodies are a tagged variant discriminated on ``kind``. The store
keeps them in four flat columns (kind, text, url, file_name); the helpers
at the bottom convert between the two shapes.
"""
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Set, Tuple, Union

from pydantic import BaseModel, Field


class TextBody(BaseModel):
    kind: Literal["text"] = "text"
    text: str = Field(..., min_length=1)


class ImageBody(BaseModel):
    kind: Literal["image"] = "image"
    url: str = Field(..., min_length=1)
    caption: Optional[str] = None


class VideoBody(BaseModel):
    kind: Literal["video"] = "video"
    url: str = Field(..., min_length=1)
    caption: Optional[str] = None


class AudioBody(BaseModel):
    kind: Literal["audio"] = "audio"
    url: str = Field(..., min_length=1)
    caption: Optional[str] = None


class FileBody(BaseModel):
    kind: Literal["file"] = "file"
    url: str = Field(..., min_length=1)
    name: Optional[str] = None
    caption: Optional[str] = None


MessageBody = Annotated[
    Union[TextBody, ImageBody, VideoBody, AudioBody, FileBody],
    Field(discriminator="kind"),
]


class UserRecord(BaseModel):
    """User row as seen by this service (owned by the accounts collaborator)."""
    id: str
    email: Optional[str] = None
    full_name: str = ""
    profile_image: Optional[str] = None


class GroupRecord(BaseModel):
    """Group with its membership sets (owned by the list-management collaborator)."""
    id: str
    name: str
    member_ids: Set[str] = Field(default_factory=set)
    admin_ids: Set[str] = Field(default_factory=set)
    last_message_id: Optional[str] = None

    def is_member(self, user_id: str) -> bool:
        return user_id in self.member_ids


class StoredReaction(BaseModel):
    emoji: str
    user_id: str
    created_at: datetime


class StoredMessage(BaseModel):
    id: str
    group_id: str
    author_id: str
    body: MessageBody
    reply_to: Optional[str] = None
    client_key: Optional[str] = None
    created_at: datetime
    reactions: List[StoredReaction] = Field(default_factory=list)
    read_by: List[str] = Field(default_factory=list)
    delivered_to: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Column mapping
# ---------------------------------------------------------------------------


def body_to_columns(body) -> Tuple[str, Optional[str], Optional[str], Optional[str]]:
    """Flatten a body variant into (kind, text, url, file_name)."""
    if isinstance(body, TextBody):
        return body.kind, body.text, None, None
    if isinstance(body, FileBody):
        return body.kind, body.caption, body.url, body.name
    return body.kind, body.caption, body.url, None


def body_from_columns(
    kind: str, text: Optional[str], url: Optional[str], file_name: Optional[str]
):
    if kind == "text":
        return TextBody(text=text or "")
    if kind == "image":
        return ImageBody(url=url, caption=text)
    if kind == "video":
        return VideoBody(url=url, caption=text)
    if kind == "audio":
        return AudioBody(url=url, caption=text)
    if kind == "file":
        return FileBody(url=url, name=file_name, caption=text)
    raise ValueError(f"Unknown message body kind: {kind}")
