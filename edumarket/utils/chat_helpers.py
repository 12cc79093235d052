from beanie import PydanticObjectId as OID

from edumarket.errors import NotFoundOrForbidden, ValidationError
from edumarket.models import Conversation, Message
from edumarket.schemas import (
    CollaborationContextOut,
    ConsultancyContextOut,
    ContextEntryOut,
    ConversationOut,
    LastMessageOut,
    MessageOut,
    ParticipantOut,
    ParticipantRefOut,
    UnreadCountOut,
    AttachmentIn,
)


def parse_oid(value, field: str = "id") -> OID:
    """Convert a client supplied id into an ObjectId or raise ValidationError."""
    if isinstance(value, OID):
        return value
    try:
        return OID(str(value))
    except Exception:
        raise ValidationError(f"Invalid {field}")


def parse_conversation_id(value) -> OID:
    """Like parse_oid, but malformed ids look the same as unknown ones."""
    try:
        return OID(str(value))
    except Exception:
        raise NotFoundOrForbidden()


def consultancy_context_out(conversation: Conversation) -> ConsultancyContextOut:
    ctx = conversation.consultancy_context
    return ConsultancyContextOut(
        consultancy_id=str(ctx.consultancy_id) if ctx.consultancy_id else None,
        consultancy_title=ctx.consultancy_title,
        is_pre_purchase=ctx.is_pre_purchase,
    )


def collaboration_context_out(conversation: Conversation) -> CollaborationContextOut:
    ctx = conversation.collaboration_context
    return CollaborationContextOut(
        collaboration_id=str(ctx.collaboration_id) if ctx.collaboration_id else None,
        collaboration_title=ctx.collaboration_title,
        creator_id=str(ctx.creator_id) if ctx.creator_id else None,
        creator_name=ctx.creator_name,
        is_pre_purchase=ctx.is_pre_purchase,
    )


def contexts_out(conversation: Conversation) -> list[ContextEntryOut]:
    return [
        ContextEntryOut(type=c.type, context_id=str(c.context_id), title=c.title, added_at=c.added_at)
        for c in conversation.contexts
    ]


def last_message_out(conversation: Conversation) -> LastMessageOut | None:
    last = conversation.last_message
    if last is None:
        return None
    return LastMessageOut(
        content=last.content,
        sender=str(last.sender),
        sender_kind=last.sender_kind,
        timestamp=last.timestamp,
    )


def conversation_out(conversation: Conversation) -> ConversationOut:
    return ConversationOut(
        id=str(conversation.id),
        participants=[
            ParticipantOut(user_id=str(p.user_id), kind=p.kind, role=p.role)
            for p in conversation.participants
        ],
        chat_type=conversation.chat_type,
        contexts=contexts_out(conversation),
        consultancy_context=consultancy_context_out(conversation),
        collaboration_context=collaboration_context_out(conversation),
        last_message=last_message_out(conversation),
        status=conversation.status,
        unread_count=UnreadCountOut(
            student=conversation.unread_count.student,
            teacher=conversation.unread_count.teacher,
        ),
        is_delete=conversation.is_delete,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


def participant_ref_out(ref, details: dict | None = None) -> ParticipantRefOut:
    return ParticipantRefOut(
        id=str(ref.id),
        kind=ref.kind,
        details=(details or {}).get((ref.kind, str(ref.id))),
    )


def message_out(message: Message, details: dict | None = None) -> MessageOut:
    """`details` maps (kind, id) to public profile details, see directory_service.details_by_ref."""
    return MessageOut(
        id=str(message.id),
        conversation_id=str(message.conversation_id),
        sender=participant_ref_out(message.sender, details),
        recipient=participant_ref_out(message.recipient, details),
        content=message.content,
        message_type=message.message_type,
        attachment=AttachmentIn(**message.attachment.model_dump()) if message.attachment else None,
        is_seen=message.is_seen,
        created_at=message.created_at,
    )
