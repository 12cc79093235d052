# Re-export Beanie documents
from .conversation import (
    Conversation,
    Participant,
    ContextEntry,
    ConsultancyContext,
    CollaborationContext,
    LastMessage,
    UnreadCount,
    make_pair_key,
)
from .message import Message, ParticipantRef, Attachment
from .profile import Student, TeacherProfile

DOCUMENT_MODELS = [Conversation, Message, Student, TeacherProfile]
