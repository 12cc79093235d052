import math
from dataclasses import dataclass
from typing import Iterable, Optional

from beanie.operators import Set
from pydantic import ValidationError as PydanticValidationError

from edumarket.config import get_settings
from edumarket.constants import MessageType
from edumarket.errors import NotFoundError, NotFoundOrForbidden, TransientStorageError, ValidationError
from edumarket.models import Attachment, Message, ParticipantRef
from edumarket.services import conversation_service
from edumarket.utils.chat_helpers import parse_oid
from edumarket.utils.logger import get_logger

logger = get_logger("message_service")
settings = get_settings()

CACHE_LAG_WARNING = "Message saved, but the conversation summary could not be updated yet"


@dataclass
class AppendResult:
    message: Message
    warning: Optional[str] = None

    @property
    def conversation_updated(self) -> bool:
        return self.warning is None


@dataclass
class MessagePage:
    messages: list[Message]
    total_count: int
    current_page: int
    total_pages: int


@dataclass
class SeenResult:
    matched_count: int
    modified_count: int


def _normalize_paging(page: int | None, page_size: int | None) -> tuple[int, int]:
    """Clamp paging params; page is 1-based."""
    safe_page = max(1, int(page or 1))
    size = page_size or settings.MESSAGES_PAGE_SIZE
    safe_size = max(1, min(int(size), settings.MESSAGES_MAX_PAGE_SIZE))
    return safe_page, safe_size


def _coerce_type(message_type) -> MessageType:
    try:
        return MessageType(message_type or MessageType.TEXT)
    except ValueError:
        raise ValidationError("Invalid message type. Must be one of: text, image, file, system")


def _coerce_attachment(attachment) -> Attachment | None:
    if attachment is None:
        return None
    if isinstance(attachment, Attachment):
        return attachment
    if hasattr(attachment, "model_dump"):
        attachment = attachment.model_dump()
    try:
        return Attachment(**attachment)
    except (PydanticValidationError, TypeError):
        raise ValidationError("Invalid attachment")


async def append(
    *,
    conversation_id,
    sender_id,
    recipient_id,
    content: str,
    message_type: MessageType | str | None = MessageType.TEXT,
    attachment=None,
) -> AppendResult:
    """Persist a message, then refresh the conversation's cached summary.

    The message write is the durable part. If the follow-up conversation
    update fails the message stays and the result carries a warning.
    """
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Message content is required")
    msg_type = _coerce_type(message_type)
    msg_attachment = _coerce_attachment(attachment)

    sender_oid = parse_oid(sender_id, "sender_id")
    recipient_oid = parse_oid(recipient_id, "recipient_id")
    if sender_oid == recipient_oid:
        raise ValidationError("Sender and recipient must be different users")

    conversation = await conversation_service.get_by_id(conversation_id, sender_oid)
    sender = conversation.participant_for(sender_oid)
    recipient = conversation.participant_for(recipient_oid)
    if recipient is None:
        raise ValidationError("Recipient is not a participant of this conversation")

    message = Message(
        conversation_id=conversation.id,
        sender=ParticipantRef(id=sender.user_id, kind=sender.kind),
        recipient=ParticipantRef(id=recipient.user_id, kind=recipient.kind),
        content=content,
        message_type=msg_type,
        attachment=msg_attachment,
    )
    await message.insert()

    warning = None
    try:
        await conversation_service.record_message(
            conversation.id,
            content=message.content,
            sender_id=sender.user_id,
            sender_kind=sender.kind,
            timestamp=message.created_at,
            recipient_role=recipient.role,
        )
    except TransientStorageError as e:
        logger.error(f"Message {message.id} stored but conversation {conversation.id} not updated: {e}")
        warning = CACHE_LAG_WARNING

    logger.debug(f"Message {message.id} appended to conversation {conversation.id} by {sender_oid}")
    return AppendResult(message=message, warning=warning)


async def page(conversation_id, requester_id, page: int | None = 1, page_size: int | None = None) -> MessagePage:
    """One page of a conversation, newest page first, messages in reading order."""
    conversation = await conversation_service.get_by_id(conversation_id, requester_id)
    current_page, size = _normalize_paging(page, page_size)

    query = {"conversation_id": conversation.id, "is_delete": False}
    total_count = await Message.find(query).count()
    messages = await (
        Message.find(query)
        .sort("-created_at", "-_id")
        .skip((current_page - 1) * size)
        .limit(size)
        .to_list()
    )
    messages.reverse()

    return MessagePage(
        messages=messages,
        total_count=total_count,
        current_page=current_page,
        total_pages=math.ceil(total_count / size) if total_count else 0,
    )


async def mark_seen(conversation_id, reader_id, message_ids: Iterable | None = None) -> SeenResult:
    """Flag every unseen message addressed to the reader as seen."""
    conversation = await conversation_service.get_by_id(conversation_id, reader_id)
    reader = conversation.participant_for(reader_id)

    query: dict = {
        "conversation_id": conversation.id,
        "recipient.id": reader.user_id,
        "is_seen": False,
        "is_delete": False,
    }
    if message_ids:
        query["_id"] = {"$in": [parse_oid(mid, "message_id") for mid in message_ids]}

    result = await Message.find(query).update(Set({"is_seen": True}))
    return SeenResult(
        matched_count=getattr(result, "matched_count", 0),
        modified_count=getattr(result, "modified_count", 0),
    )


async def soft_delete_one(message_id, requester_id=None, conversation_id=None) -> Message:
    """Hide one message. The conversation's cached last_message is left as is.

    With `requester_id` only the sender may retract the message; without it
    (moderation tooling) any message can be hidden.
    """
    mid = parse_oid(message_id, "message_id")
    message = await Message.find_one({"_id": mid, "is_delete": False})
    if message is None:
        raise NotFoundError("Message not found")
    if conversation_id is not None and str(message.conversation_id) != str(conversation_id):
        raise NotFoundError("Message not found")
    if requester_id is not None and str(message.sender.id) != str(requester_id):
        raise NotFoundOrForbidden("Message not found or access denied")

    await message.update(Set({"is_delete": True}))
    logger.info(f"Message {mid} soft-deleted")
    return message

