import asyncio
from dataclasses import dataclass
from weakref import WeakValueDictionary

from beanie import PydanticObjectId as OID
from beanie import UpdateResponse
from beanie.operators import Inc, Push, Set
from pymongo.errors import DuplicateKeyError

from edumarket.constants import (
    AccountKind,
    ChatType,
    ContextType,
    ConversationStatus,
    Role,
    STATUS_INPUTS,
)
from edumarket.errors import AuthorizationError, ConflictError, NotFoundOrForbidden, TransientStorageError, ValidationError
from edumarket.models import (
    CollaborationContext,
    ConsultancyContext,
    ContextEntry,
    Conversation,
    Participant,
    make_pair_key,
)
from edumarket.security import AuthUser
from edumarket.utils.chat_helpers import parse_conversation_id, parse_oid
from edumarket.utils.dates import utcnow
from edumarket.utils.logger import get_logger

logger = get_logger("conversation_service")

# Serializes check-then-create per student/teacher pair inside this process;
# the unique pair_key index covers other processes.
_pair_locks: "WeakValueDictionary[str, asyncio.Lock]" = WeakValueDictionary()


def _pair_lock(pair_key: str) -> asyncio.Lock:
    lock = _pair_locks.get(pair_key)
    if lock is None:
        lock = asyncio.Lock()
        _pair_locks[pair_key] = lock
    return lock


@dataclass
class InitiationContext:
    """Booking or collaboration details supplied when a student starts a chat."""
    chat_type: ChatType = ChatType.GENERAL
    consultancy_id: OID | None = None
    consultancy_title: str | None = None
    collaboration_id: OID | None = None
    collaboration_title: str | None = None
    creator_id: OID | None = None
    creator_name: str | None = None

    @classmethod
    def build(
        cls,
        *,
        chat_type: ChatType | str | None = None,
        consultancy_id: str | None = None,
        consultancy_title: str | None = None,
        collaboration_id: str | None = None,
        collaboration_title: str | None = None,
        creator_id: str | None = None,
        creator_name: str | None = None,
    ) -> "InitiationContext":
        if chat_type == ChatType.GENERAL and (consultancy_id or collaboration_id):
            raise ValidationError("General chats cannot carry a consultancy or collaboration id")
        if chat_type is None:
            if consultancy_id:
                chat_type = ChatType.CONSULTANCY
            elif collaboration_id:
                chat_type = ChatType.COLLABORATION
            else:
                chat_type = ChatType.GENERAL
        try:
            chat_type = ChatType(chat_type)
        except ValueError:
            raise ValidationError("Invalid chat type")

        if chat_type == ChatType.CONSULTANCY and not consultancy_id:
            raise ValidationError("consultancy_id is required for consultancy chats")
        if chat_type == ChatType.COLLABORATION and not collaboration_id:
            raise ValidationError("collaboration_id is required for collaboration chats")

        return cls(
            chat_type=chat_type,
            consultancy_id=parse_oid(consultancy_id, "consultancy_id") if consultancy_id else None,
            consultancy_title=consultancy_title,
            collaboration_id=parse_oid(collaboration_id, "collaboration_id") if collaboration_id else None,
            collaboration_title=collaboration_title,
            creator_id=parse_oid(creator_id, "creator_id") if creator_id else None,
            creator_name=creator_name,
        )

    def history_entry(self) -> ContextEntry | None:
        if self.chat_type == ChatType.CONSULTANCY:
            return ContextEntry(type=ContextType.CONSULTANCY, context_id=self.consultancy_id, title=self.consultancy_title)
        if self.chat_type == ChatType.COLLABORATION:
            return ContextEntry(type=ContextType.COLLABORATION, context_id=self.collaboration_id, title=self.collaboration_title)
        return None

    def consultancy_snapshot(self) -> ConsultancyContext:
        return ConsultancyContext(
            consultancy_id=self.consultancy_id,
            consultancy_title=self.consultancy_title,
            is_pre_purchase=True,
        )

    def collaboration_snapshot(self) -> CollaborationContext:
        return CollaborationContext(
            collaboration_id=self.collaboration_id,
            collaboration_title=self.collaboration_title,
            creator_id=self.creator_id,
            creator_name=self.creator_name,
            is_pre_purchase=True,
        )


@dataclass
class InitiateResult:
    conversation: Conversation
    is_new: bool
    message: str


def _has_context(conversation: Conversation, entry: ContextEntry) -> bool:
    return any(
        c.type == entry.type and c.context_id == entry.context_id
        for c in conversation.contexts
    )


def _participant_filter(conversation_id: OID, user_id: OID) -> dict:
    return {"_id": conversation_id, "participants.user_id": user_id, "is_delete": False}


async def _refresh_context(conversation: Conversation, context: InitiationContext) -> Conversation:
    """Point an existing conversation at the newly supplied context.

    The current snapshot is overwritten only while it is still pre-purchase;
    the history entry is appended once per (type, context_id).
    """
    entry = context.history_entry()
    if entry is None:
        return conversation

    updates: dict = {"chat_type": context.chat_type.value, "updated_at": utcnow()}
    if context.chat_type == ChatType.CONSULTANCY:
        if conversation.consultancy_context.is_pre_purchase:
            updates["consultancy_context"] = context.consultancy_snapshot().model_dump()
        else:
            logger.info(
                f"Consultancy context of conversation {conversation.id} is confirmed; keeping snapshot"
            )
    elif conversation.collaboration_context.is_pre_purchase:
        updates["collaboration_context"] = context.collaboration_snapshot().model_dump()

    expressions = [Set(updates)]
    if not _has_context(conversation, entry):
        expressions.append(Push({"contexts": entry.model_dump()}))

    await conversation.update(*expressions)
    return conversation


async def initiate_or_get(
    *,
    requester: AuthUser,
    student_id: str | OID,
    teacher_id: str | OID,
    context: InitiationContext | None = None,
) -> InitiateResult:
    """Return the live conversation for (student, teacher), creating it on first contact."""
    if requester.role != Role.STUDENT or str(requester.id) != str(student_id):
        raise AuthorizationError("Unauthorized: You can only initiate chats for yourself")

    student_oid = parse_oid(student_id, "student_id")
    teacher_oid = parse_oid(teacher_id, "teacher_id")
    if student_oid == teacher_oid:
        raise ValidationError("Cannot start a conversation with yourself")

    context = context or InitiationContext()
    pair_key = make_pair_key(student_oid, teacher_oid)

    async with _pair_lock(pair_key):
        existing = await Conversation.find_one({"pair_key": pair_key, "is_delete": False})
        if existing:
            _ensure_student_side(existing, student_oid)
            await _refresh_context(existing, context)
            return InitiateResult(
                conversation=existing,
                is_new=False,
                message="Existing conversation found and updated with new context",
            )

        conversation = Conversation(
            participants=[
                Participant(user_id=student_oid, kind=AccountKind.STUDENT, role=Role.STUDENT),
                Participant(user_id=teacher_oid, kind=AccountKind.PROFILE, role=Role.TEACHER),
            ],
            pair_key=pair_key,
            chat_type=context.chat_type,
        )
        entry = context.history_entry()
        if entry is not None:
            conversation.contexts.append(entry)
        if context.chat_type == ChatType.CONSULTANCY:
            conversation.consultancy_context = context.consultancy_snapshot()
        elif context.chat_type == ChatType.COLLABORATION:
            conversation.collaboration_context = context.collaboration_snapshot()

        try:
            await conversation.insert()
        except DuplicateKeyError:
            # Another process created the pair first; hand back its record.
            logger.warning(f"Concurrent initiation for pair {pair_key}; returning existing conversation")
            winner = await Conversation.find_one({"pair_key": pair_key, "is_delete": False})
            if winner is None:
                raise ConflictError("Conversation is being created, retry shortly")
            await _refresh_context(winner, context)
            return InitiateResult(
                conversation=winner,
                is_new=False,
                message="Existing conversation found and updated with new context",
            )

    logger.info(
        f"New conversation {conversation.id} between student {student_oid} "
        f"and teacher {teacher_oid} ({context.chat_type.value})"
    )
    return InitiateResult(conversation=conversation, is_new=True, message="New conversation created")


def _ensure_student_side(conversation: Conversation, student_id: OID) -> None:
    participant = conversation.participant_for(student_id)
    if participant is None or participant.role != Role.STUDENT:
        raise AuthorizationError("Unauthorized: You can only initiate chats for yourself")


async def get_by_id(conversation_id, requester_id) -> Conversation:
    """Fetch a live conversation the requester takes part in, else NotFoundOrForbidden."""
    cid = parse_conversation_id(conversation_id)
    try:
        uid = OID(str(requester_id))
    except Exception:
        raise NotFoundOrForbidden()
    conversation = await Conversation.find_one(_participant_filter(cid, uid))
    if not conversation:
        raise NotFoundOrForbidden()
    return conversation


async def update_status(conversation_id, requester_id, new_status: str | ConversationStatus) -> Conversation:
    if isinstance(new_status, ConversationStatus):
        status = new_status
    else:
        status = STATUS_INPUTS.get(str(new_status))
        if status is None:
            raise ValidationError("Invalid status. Must be one of: active, archived, closed")

    conversation = await get_by_id(conversation_id, requester_id)
    member = conversation.participant_for(requester_id)
    updated = await Conversation.find_one(_participant_filter(conversation.id, member.user_id)).update(
        Set({"status": status.value, "updated_at": utcnow()}),
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if updated is None:
        raise NotFoundOrForbidden()
    logger.info(f"Conversation {conversation.id} status -> {status.value} by {requester_id}")
    return updated


async def archive(conversation_id, requester_id) -> Conversation:
    return await update_status(conversation_id, requester_id, ConversationStatus.ARCHIVED)


async def mark_read(conversation_id, requester_id) -> dict:
    """Reset the requester's unread counter."""
    conversation = await get_by_id(conversation_id, requester_id)
    role = conversation.participant_for(requester_id).role
    if getattr(conversation.unread_count, role.value) != 0:
        await Conversation.find_one({"_id": conversation.id}).update(
            Set({f"unread_count.{role.value}": 0})
        )
    return {"success": True, "message": "Conversation marked as read"}


async def soft_delete(conversation_id, requester_id) -> Conversation:
    """Hide the conversation for both participants; messages are left untouched."""
    conversation = await get_by_id(conversation_id, requester_id)
    # Free the pair key so the same pair can start a fresh conversation later.
    retired_key = f"{conversation.pair_key}#{conversation.id}"
    await conversation.update(Set({"is_delete": True, "pair_key": retired_key, "updated_at": utcnow()}))
    logger.info(f"Conversation {conversation.id} soft-deleted by {requester_id}")
    return conversation


async def record_message(
    conversation_id: OID,
    *,
    content: str,
    sender_id: OID,
    sender_kind: AccountKind,
    timestamp,
    recipient_role: Role,
) -> None:
    """Refresh the last-message cache and bump the recipient's unread counter.

    Both changes go out as one update document so concurrent appends never
    lose an increment.
    """
    try:
        result = await Conversation.find_one({"_id": conversation_id}).update(
            Set({
                "last_message": {
                    "content": content,
                    "sender": sender_id,
                    "sender_kind": sender_kind.value,
                    "timestamp": timestamp,
                },
                "updated_at": utcnow(),
            }),
            Inc({f"unread_count.{recipient_role.value}": 1}),
        )
    except Exception as e:
        raise TransientStorageError(f"Conversation cache update failed: {e}")
    if result is None or getattr(result, "matched_count", 1) == 0:
        raise TransientStorageError("Conversation cache update matched no document")


async def confirm_consultancy_purchase(consultancy_id) -> int:
    """Freeze the current consultancy snapshot once the booking is paid."""
    oid = parse_oid(consultancy_id, "consultancy_id")
    result = await Conversation.find(
        {"consultancy_context.consultancy_id": oid, "is_delete": False}
    ).update(Set({"consultancy_context.is_pre_purchase": False, "updated_at": utcnow()}))
    modified = getattr(result, "modified_count", 0)
    logger.info(f"Consultancy {oid} confirmed; {modified} conversation(s) frozen")
    return modified
