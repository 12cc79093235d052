from enum import Enum


class Role(str, Enum):
    """Participant roles inside a conversation."""
    STUDENT = "student"
    TEACHER = "teacher"

    @property
    def other(self) -> "Role":
        return Role.TEACHER if self is Role.STUDENT else Role.STUDENT

    @property
    def account_kind(self) -> "AccountKind":
        return AccountKind.STUDENT if self is Role.STUDENT else AccountKind.PROFILE


class AccountKind(str, Enum):
    """Which account collection a user id resolves against."""
    STUDENT = "Student"
    PROFILE = "Profile"  # teacher profile


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    BLOCKED = "blocked"


class ContextType(str, Enum):
    CONSULTANCY = "consultancy"
    COLLABORATION = "collaboration"


class ChatType(str, Enum):
    GENERAL = "general"
    CONSULTANCY = "consultancy"
    COLLABORATION = "collaboration"


# Status values accepted over HTTP; "closed" is stored as BLOCKED
STATUS_INPUTS = {
    "active": ConversationStatus.ACTIVE,
    "archived": ConversationStatus.ARCHIVED,
    "closed": ConversationStatus.BLOCKED,
    "blocked": ConversationStatus.BLOCKED,
}


def conversation_room(conversation_id) -> str:
    return f"conversation_{conversation_id}"


def user_room(user_id) -> str:
    return f"user_{user_id}"
