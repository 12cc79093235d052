from fastapi import APIRouter, Depends, Query, Request

from edumarket.config import get_settings
from edumarket.constants import ChatType, Role
from edumarket.rate_limit import limiter
from edumarket.schemas import (
    ConversationContextOut,
    ConversationEnvelope,
    ConversationListOut,
    ConversationStatusIn,
    InitiateConversationIn,
    InitiateConversationOut,
    MarkReadOut,
    MessageOut,
    MessagePageOut,
    SeenResultOut,
    SendMessageIn,
    SendMessageOut,
)
from edumarket.security import AuthUser, get_current_user, require_roles
from edumarket.services import conversation_service, directory_service, message_service
from edumarket.services.socket_service import RealtimeGateway
from edumarket.utils.chat_helpers import (
    collaboration_context_out,
    consultancy_context_out,
    contexts_out,
    conversation_out,
    message_out,
)
from edumarket.utils.logger import get_logger

logger = get_logger("conversations_router")
settings = get_settings()

router = APIRouter(prefix="/conversations", tags=["conversations"])


def get_gateway(request: Request) -> RealtimeGateway:
    return request.app.state.gateway


@router.post("/initiate", response_model=InitiateConversationOut)
@limiter.limit(settings.RATE_LIMIT_INITIATE)
async def initiate_conversation(
    request: Request,
    body: InitiateConversationIn,
    current: AuthUser = Depends(require_roles([Role.STUDENT])),
):
    """Start (or reopen) the chat between the calling student and a teacher."""
    context = conversation_service.InitiationContext.build(
        chat_type=body.chat_type,
        consultancy_id=body.consultancy_id,
        consultancy_title=body.consultancy_title,
        collaboration_id=body.collaboration_id,
        collaboration_title=body.collaboration_title,
        creator_id=body.creator_id,
        creator_name=body.creator_name,
    )
    result = await conversation_service.initiate_or_get(
        requester=current,
        student_id=current.id,
        teacher_id=body.teacher_id,
        context=context,
    )
    return InitiateConversationOut(
        conversation=conversation_out(result.conversation),
        is_new=result.is_new,
        message=result.message,
    )


@router.get("", response_model=ConversationListOut)
async def list_conversations(current: AuthUser = Depends(get_current_user)):
    """Inbox of the current user, most recent activity first."""
    conversations = await directory_service.list_for_user(current.id)
    return ConversationListOut(conversations=conversations, count=len(conversations))


@router.get("/{conversation_id}", response_model=ConversationEnvelope)
async def get_conversation(conversation_id: str, current: AuthUser = Depends(get_current_user)):
    conversation = await conversation_service.get_by_id(conversation_id, current.id)
    return ConversationEnvelope(conversation=conversation_out(conversation))


@router.get("/{conversation_id}/context", response_model=ConversationContextOut)
async def get_conversation_context(conversation_id: str, current: AuthUser = Depends(get_current_user)):
    conversation = await conversation_service.get_by_id(conversation_id, current.id)
    current_context = None
    if conversation.chat_type == ChatType.CONSULTANCY:
        current_context = consultancy_context_out(conversation)
    elif conversation.chat_type == ChatType.COLLABORATION:
        current_context = collaboration_context_out(conversation)
    return ConversationContextOut(
        chat_type=conversation.chat_type,
        contexts=contexts_out(conversation),
        consultancy_context=consultancy_context_out(conversation),
        collaboration_context=collaboration_context_out(conversation),
        current_context=current_context,
    )


@router.get("/{conversation_id}/messages", response_model=MessagePageOut)
async def get_conversation_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.MESSAGES_PAGE_SIZE, ge=1, le=settings.MESSAGES_MAX_PAGE_SIZE),
    current: AuthUser = Depends(get_current_user),
):
    """Messages of one page in reading order; page 1 holds the newest ones."""
    result = await message_service.page(conversation_id, current.id, page=page, page_size=limit)
    refs = {(ref.kind, ref.id) for m in result.messages for ref in (m.sender, m.recipient)}
    details = await directory_service.details_by_ref(refs)
    return MessagePageOut(
        messages=[message_out(m, details) for m in result.messages],
        total_count=result.total_count,
        current_page=result.current_page,
        total_pages=result.total_pages,
    )


@router.post("/{conversation_id}/messages", response_model=SendMessageOut)
@limiter.limit(settings.RATE_LIMIT_SEND)
async def send_message(
    request: Request,
    conversation_id: str,
    body: SendMessageIn,
    current: AuthUser = Depends(get_current_user),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    conversation = await conversation_service.get_by_id(conversation_id, current.id)
    recipient = conversation.other_participant(current.id)
    result = await message_service.append(
        conversation_id=conversation.id,
        sender_id=current.id,
        recipient_id=recipient.user_id,
        content=body.content,
        message_type=body.message_type,
        attachment=body.attachment,
    )
    message = message_out(result.message)
    try:
        await gateway.publish_message(message.model_dump(mode="json"), recipient_id=str(recipient.user_id))
    except Exception as e:
        logger.warning(f"Failed to emit message {message.id} to conversation {conversation.id}: {e}")
    return SendMessageOut(message=message, warning=result.warning)


@router.put("/{conversation_id}/messages/seen", response_model=SeenResultOut)
async def mark_messages_seen(conversation_id: str, current: AuthUser = Depends(get_current_user)):
    result = await message_service.mark_seen(conversation_id, current.id)
    return SeenResultOut(matched_count=result.matched_count, modified_count=result.modified_count)


@router.delete("/{conversation_id}/messages/{message_id}", response_model=MessageOut)
async def delete_message(conversation_id: str, message_id: str, current: AuthUser = Depends(get_current_user)):
    """Retract one of your own messages."""
    conversation = await conversation_service.get_by_id(conversation_id, current.id)
    message = await message_service.soft_delete_one(
        message_id, requester_id=current.id, conversation_id=conversation.id
    )
    return message_out(message)


@router.put("/{conversation_id}/status", response_model=ConversationEnvelope)
async def update_conversation_status(
    conversation_id: str,
    body: ConversationStatusIn,
    current: AuthUser = Depends(get_current_user),
):
    conversation = await conversation_service.update_status(conversation_id, current.id, body.status)
    return ConversationEnvelope(conversation=conversation_out(conversation))


@router.put("/{conversation_id}/read", response_model=MarkReadOut)
async def mark_conversation_read(conversation_id: str, current: AuthUser = Depends(get_current_user)):
    result = await conversation_service.mark_read(conversation_id, current.id)
    return MarkReadOut(**result)


@router.put("/{conversation_id}/archive", response_model=ConversationEnvelope)
async def archive_conversation(conversation_id: str, current: AuthUser = Depends(get_current_user)):
    conversation = await conversation_service.archive(conversation_id, current.id)
    return ConversationEnvelope(conversation=conversation_out(conversation))


@router.delete("/{conversation_id}", response_model=ConversationEnvelope)
async def delete_conversation(conversation_id: str, current: AuthUser = Depends(get_current_user)):
    conversation = await conversation_service.soft_delete(conversation_id, current.id)
    return ConversationEnvelope(conversation=conversation_out(conversation))
