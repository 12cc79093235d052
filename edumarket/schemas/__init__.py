from datetime import datetime
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Literal

from edumarket.constants import AccountKind, ChatType, ContextType, ConversationStatus, MessageType, Role

# -------------------- Conversation Schemas --------------------


class InitiateConversationIn(BaseModel):
    """Body of POST /conversations/initiate (the student comes from the token)."""

    teacher_id: str
    consultancy_id: Optional[str] = None
    consultancy_title: Optional[str] = None
    collaboration_id: Optional[str] = None
    collaboration_title: Optional[str] = None
    creator_id: Optional[str] = None
    creator_name: Optional[str] = None
    chat_type: Optional[ChatType] = None

    @field_validator("teacher_id")
    @classmethod
    def _teacher_id_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Teacher ID is required")
        return value.strip()


class ConversationStatusIn(BaseModel):
    status: Literal["active", "archived", "closed", "blocked"]


class ParticipantOut(BaseModel):
    user_id: str
    kind: AccountKind
    role: Role


class ContextEntryOut(BaseModel):
    type: ContextType
    context_id: str
    title: Optional[str] = None
    added_at: datetime


class ConsultancyContextOut(BaseModel):
    consultancy_id: Optional[str] = None
    consultancy_title: Optional[str] = None
    is_pre_purchase: bool = True


class CollaborationContextOut(BaseModel):
    collaboration_id: Optional[str] = None
    collaboration_title: Optional[str] = None
    creator_id: Optional[str] = None
    creator_name: Optional[str] = None
    is_pre_purchase: bool = True


class LastMessageOut(BaseModel):
    content: str
    sender: str
    sender_kind: AccountKind
    timestamp: datetime


class UnreadCountOut(BaseModel):
    student: int = 0
    teacher: int = 0


class ConversationOut(BaseModel):
    id: str
    participants: List[ParticipantOut]
    chat_type: ChatType
    contexts: List[ContextEntryOut] = []
    consultancy_context: ConsultancyContextOut
    collaboration_context: CollaborationContextOut
    last_message: Optional[LastMessageOut] = None
    status: ConversationStatus
    unread_count: UnreadCountOut
    is_delete: bool = False
    created_at: datetime
    updated_at: datetime


class ParticipantDetailsOut(BaseModel):
    """Public profile fields; which ones are filled depends on the account kind."""
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    profile_picture: Optional[str] = None
    profile_image: Optional[str] = None
    specialisation: Optional[str] = None


class OtherParticipantOut(BaseModel):
    id: str
    role: Role
    kind: AccountKind
    details: Optional[ParticipantDetailsOut] = None


class InboxItemOut(BaseModel):
    """One row of the per-user inbox."""
    id: str
    chat_type: ChatType
    consultancy_context: ConsultancyContextOut
    collaboration_context: CollaborationContextOut
    last_message: Optional[LastMessageOut] = None
    status: ConversationStatus
    unread_count: UnreadCountOut
    created_at: datetime
    updated_at: datetime
    other_participant: OtherParticipantOut


class InitiateConversationOut(BaseModel):
    conversation: ConversationOut
    is_new: bool
    message: str


class ConversationEnvelope(BaseModel):
    conversation: ConversationOut


class ConversationListOut(BaseModel):
    conversations: List[InboxItemOut]
    count: int


class ConversationContextOut(BaseModel):
    chat_type: ChatType
    contexts: List[ContextEntryOut]
    consultancy_context: ConsultancyContextOut
    collaboration_context: CollaborationContextOut
    current_context: Optional[ConsultancyContextOut | CollaborationContextOut] = None


class MarkReadOut(BaseModel):
    success: bool = True
    message: str


class ConsultancyConfirmedOut(BaseModel):
    consultancy_id: str
    modified_count: int


# -------------------- Message Schemas --------------------


class AttachmentIn(BaseModel):
    url: str
    filename: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = Field(None, ge=0)


class SendMessageIn(BaseModel):
    content: str = Field(..., min_length=1)
    message_type: MessageType = MessageType.TEXT
    attachment: Optional[AttachmentIn] = None

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message content is required")
        return value


class ParticipantRefOut(BaseModel):
    id: str
    kind: AccountKind
    # public profile, filled on paged history
    details: Optional[ParticipantDetailsOut] = None


class MessageOut(BaseModel):
    id: str
    conversation_id: str
    sender: ParticipantRefOut
    recipient: ParticipantRefOut
    content: str
    message_type: MessageType
    attachment: Optional[AttachmentIn] = None
    is_seen: bool = False
    created_at: datetime


class SendMessageOut(BaseModel):
    message: MessageOut
    warning: Optional[str] = None


class MessagePageOut(BaseModel):
    messages: List[MessageOut]
    total_count: int
    current_page: int
    total_pages: int


class SeenResultOut(BaseModel):
    matched_count: int
    modified_count: int
