from beanie import Document, Indexed
from beanie import PydanticObjectId as OID
from pydantic import BaseModel, Field, field_validator
from pymongo import IndexModel, ASCENDING, DESCENDING
from datetime import datetime

from edumarket.constants import AccountKind, ChatType, ContextType, ConversationStatus, Role
from edumarket.utils.dates import utcnow


def make_pair_key(first_id: OID | str, second_id: OID | str) -> str:
    """Order-independent key for a pair of user ids."""
    return ":".join(sorted([str(first_id), str(second_id)]))


class Participant(BaseModel):
    """One side of the student/teacher pair."""
    user_id: OID
    kind: AccountKind
    role: Role


class ContextEntry(BaseModel):
    """History entry for a booking or collaboration that prompted contact."""
    type: ContextType
    context_id: OID
    title: str | None = None
    added_at: datetime = Field(default_factory=utcnow)


class ConsultancyContext(BaseModel):
    consultancy_id: OID | None = None
    consultancy_title: str | None = None
    # Stays True until the booking is confirmed; afterwards re-initiations keep the snapshot
    is_pre_purchase: bool = True


class CollaborationContext(BaseModel):
    collaboration_id: OID | None = None
    collaboration_title: str | None = None
    creator_id: OID | None = None
    creator_name: str | None = None
    is_pre_purchase: bool = True


class LastMessage(BaseModel):
    """Cached copy of the newest message, display only."""
    content: str
    sender: OID
    sender_kind: AccountKind
    timestamp: datetime


class UnreadCount(BaseModel):
    student: int = Field(0, ge=0)
    teacher: int = Field(0, ge=0)


class Conversation(Document):
    """Conversation between exactly one student and one teacher.

    - participants are fixed at creation time.
    - `pair_key` is unique while the conversation is live; soft delete
      suffixes it with the conversation id so the pair can start over.
    - `last_message` and `unread_count` are only touched through atomic
      partial updates (see services.conversation_service).
    """
    participants: list[Participant]
    pair_key: Indexed(str, unique=True)

    chat_type: ChatType = ChatType.GENERAL
    contexts: list[ContextEntry] = Field(default_factory=list)
    consultancy_context: ConsultancyContext = Field(default_factory=ConsultancyContext)
    collaboration_context: CollaborationContext = Field(default_factory=CollaborationContext)

    last_message: LastMessage | None = None
    status: ConversationStatus = ConversationStatus.ACTIVE
    unread_count: UnreadCount = Field(default_factory=UnreadCount)
    is_delete: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("participants")
    @classmethod
    def _two_distinct_participants(cls, value: list[Participant]) -> list[Participant]:
        if len(value) != 2:
            raise ValueError("a conversation has exactly two participants")
        if value[0].user_id == value[1].user_id:
            raise ValueError("participants must be two different users")
        if {p.role for p in value} != {Role.STUDENT, Role.TEACHER}:
            raise ValueError("a conversation pairs one student with one teacher")
        return value

    def participant_for(self, user_id: OID | str) -> Participant | None:
        uid = str(user_id)
        return next((p for p in self.participants if str(p.user_id) == uid), None)

    def other_participant(self, user_id: OID | str) -> Participant | None:
        uid = str(user_id)
        return next((p for p in self.participants if str(p.user_id) != uid), None)

    def participant_with_role(self, role: Role) -> Participant:
        return next(p for p in self.participants if p.role == role)

    class Settings:
        name = "conversations"
        indexes = [
            IndexModel([("participants.user_id", ASCENDING)]),
            IndexModel([("consultancy_context.consultancy_id", ASCENDING)]),
            IndexModel([("status", ASCENDING), ("is_delete", ASCENDING)]),
            IndexModel([("updated_at", DESCENDING)]),
        ]
