import asyncio

import pytest
from beanie import PydanticObjectId as OID

from edumarket.constants import AccountKind, MessageType
from edumarket.errors import NotFoundOrForbidden, TransientStorageError, ValidationError
from edumarket.models import Conversation, Message, ParticipantRef
from edumarket.services import conversation_service, message_service
from edumarket.utils.dates import to_utc, utcnow


@pytest.fixture
def conversation_factory(student, teacher):
    async def make():
        result = await conversation_service.initiate_or_get(
            requester=student, student_id=student.id, teacher_id=teacher.id
        )
        return result.conversation
    return make


async def send(conversation, sender, recipient, content):
    return await message_service.append(
        conversation_id=conversation.id,
        sender_id=sender.id,
        recipient_id=recipient.id,
        content=content,
    )


@pytest.mark.asyncio
async def test_append_updates_summary_and_recipient_counter(conversation_factory, student, teacher):
    conversation = await conversation_factory()

    result = await send(conversation, student, teacher, "Hello, can we talk about the exam?")

    assert result.warning is None
    assert result.conversation_updated
    assert result.message.sender.kind == AccountKind.STUDENT
    assert result.message.recipient.kind == AccountKind.PROFILE
    assert result.message.message_type == MessageType.TEXT
    assert result.message.is_seen is False

    stored = await Conversation.get(conversation.id)
    assert stored.last_message.content == "Hello, can we talk about the exam?"
    assert stored.last_message.sender == student.id
    assert stored.unread_count.teacher == 1
    assert stored.unread_count.student == 0
    assert to_utc(stored.last_message.timestamp) >= to_utc(stored.created_at)


@pytest.mark.asyncio
async def test_append_rejects_bad_input(conversation_factory, student, teacher):
    conversation = await conversation_factory()

    with pytest.raises(ValidationError):
        await send(conversation, student, teacher, "   ")
    with pytest.raises(ValidationError):
        await message_service.append(
            conversation_id=conversation.id, sender_id=student.id, recipient_id=student.id, content="me"
        )
    with pytest.raises(ValidationError):
        await message_service.append(
            conversation_id=conversation.id, sender_id=student.id, recipient_id=OID(), content="hi"
        )
    with pytest.raises(ValidationError):
        await message_service.append(
            conversation_id=conversation.id, sender_id=student.id, recipient_id=teacher.id,
            content="hi", message_type="video",
        )
    with pytest.raises(NotFoundOrForbidden):
        await message_service.append(
            conversation_id=conversation.id, sender_id=OID(), recipient_id=teacher.id, content="hi"
        )
    assert await Message.find_all().count() == 0


@pytest.mark.asyncio
async def test_concurrent_appends_count_every_message(conversation_factory, student, teacher):
    conversation = await conversation_factory()

    await asyncio.gather(
        send(conversation, student, teacher, "first"),
        send(conversation, student, teacher, "second"),
    )

    stored = await Conversation.get(conversation.id)
    assert stored.unread_count.teacher == 2
    assert stored.last_message.content in {"first", "second"}


@pytest.mark.asyncio
async def test_cache_failure_keeps_message_and_warns(conversation_factory, student, teacher, monkeypatch):
    conversation = await conversation_factory()

    async def broken_record_message(*args, **kwargs):
        raise TransientStorageError("write concern timeout")

    monkeypatch.setattr(conversation_service, "record_message", broken_record_message)

    result = await send(conversation, student, teacher, "still here")

    assert result.warning == message_service.CACHE_LAG_WARNING
    assert not result.conversation_updated
    assert await Message.find({"conversation_id": conversation.id}).count() == 1
    stored = await Conversation.get(conversation.id)
    assert stored.last_message is None
    assert stored.unread_count.teacher == 0


@pytest.mark.asyncio
async def test_pages_cover_every_message_once(conversation_factory, student, teacher):
    conversation = await conversation_factory()
    for i in range(7):
        sender, recipient = (student, teacher) if i % 2 == 0 else (teacher, student)
        await send(conversation, sender, recipient, f"message {i}")
        # distinct timestamps after millisecond truncation
        await asyncio.sleep(0.002)

    first = await message_service.page(conversation.id, student.id, page=1, page_size=3)
    second = await message_service.page(conversation.id, student.id, page=2, page_size=3)
    third = await message_service.page(conversation.id, student.id, page=3, page_size=3)
    beyond = await message_service.page(conversation.id, student.id, page=4, page_size=3)

    assert first.total_count == 7
    assert first.total_pages == 3
    assert [m.content for m in first.messages] == ["message 4", "message 5", "message 6"]
    assert [m.content for m in second.messages] == ["message 1", "message 2", "message 3"]
    assert [m.content for m in third.messages] == ["message 0"]
    assert beyond.messages == []

    chronological = [m.content for p in (third, second, first) for m in p.messages]
    assert chronological == [f"message {i}" for i in range(7)]


@pytest.mark.asyncio
async def test_empty_conversation_has_no_pages(conversation_factory, student):
    conversation = await conversation_factory()

    result = await message_service.page(conversation.id, student.id)

    assert result.messages == []
    assert result.total_count == 0
    assert result.total_pages == 0
    assert result.current_page == 1


@pytest.mark.asyncio
async def test_mark_seen_only_touches_messages_for_reader(conversation_factory, student, teacher):
    conversation = await conversation_factory()
    await send(conversation, student, teacher, "to teacher 1")
    await send(conversation, student, teacher, "to teacher 2")
    await send(conversation, teacher, student, "to student")

    result = await message_service.mark_seen(conversation.id, teacher.id)

    assert result.modified_count == 2
    unseen = await Message.find({"conversation_id": conversation.id, "is_seen": False}).to_list()
    assert [m.content for m in unseen] == ["to student"]

    again = await message_service.mark_seen(conversation.id, teacher.id)
    assert again.modified_count == 0


@pytest.mark.asyncio
async def test_soft_deleted_message_leaves_summary_stale(conversation_factory, student, teacher):
    conversation = await conversation_factory()
    sent = await send(conversation, student, teacher, "oops")

    with pytest.raises(NotFoundOrForbidden):
        await message_service.soft_delete_one(sent.message.id, requester_id=teacher.id)

    deleted = await message_service.soft_delete_one(sent.message.id, requester_id=student.id)
    assert deleted.is_delete is True

    listing = await message_service.page(conversation.id, student.id)
    assert listing.total_count == 0
    stored = await Conversation.get(conversation.id)
    assert stored.last_message.content == "oops"


@pytest.mark.asyncio
async def test_equal_timestamps_page_in_insertion_order(conversation_factory, student, teacher):
    conversation = await conversation_factory()
    same_instant = utcnow()
    for i in range(5):
        await Message(
            conversation_id=conversation.id,
            sender=ParticipantRef(id=student.id, kind=AccountKind.STUDENT),
            recipient=ParticipantRef(id=teacher.id, kind=AccountKind.PROFILE),
            content=f"burst {i}",
            created_at=same_instant,
        ).insert()

    newest = await message_service.page(conversation.id, teacher.id, page=1, page_size=2)
    middle = await message_service.page(conversation.id, teacher.id, page=2, page_size=2)
    oldest = await message_service.page(conversation.id, teacher.id, page=3, page_size=2)

    assert [m.content for m in newest.messages] == ["burst 3", "burst 4"]
    assert [m.content for m in middle.messages] == ["burst 1", "burst 2"]
    assert [m.content for m in oldest.messages] == ["burst 0"]
