from beanie import Document, Indexed
from beanie import PydanticObjectId as OID
from pydantic import BaseModel, Field, model_validator
from pymongo import IndexModel, ASCENDING, DESCENDING
from datetime import datetime

from edumarket.constants import AccountKind, MessageType
from edumarket.utils.dates import utcnow


class ParticipantRef(BaseModel):
    """Tagged reference to a Student or teacher Profile account."""
    id: OID
    kind: AccountKind


class Attachment(BaseModel):
    url: str
    filename: str | None = None
    file_type: str | None = None
    file_size: int | None = Field(None, ge=0)


class Message(Document):
    """Stored chat message; only is_seen / is_delete change after insert."""
    conversation_id: Indexed(OID)
    sender: ParticipantRef
    recipient: ParticipantRef
    content: str
    message_type: MessageType = MessageType.TEXT
    attachment: Attachment | None = None
    is_seen: bool = False
    is_delete: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _sender_is_not_recipient(self) -> "Message":
        if self.sender.id == self.recipient.id:
            raise ValueError("sender and recipient must differ")
        return self

    class Settings:
        name = "messages"
        indexes = [
            IndexModel([("conversation_id", ASCENDING), ("created_at", DESCENDING), ("_id", DESCENDING)]),
            IndexModel([("sender.id", ASCENDING), ("recipient.id", ASCENDING)]),
            IndexModel([("recipient.id", ASCENDING), ("is_seen", ASCENDING)]),
        ]
