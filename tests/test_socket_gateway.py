import asyncio

import pytest
from beanie import PydanticObjectId as OID
from socketio.exceptions import ConnectionRefusedError

from edumarket.constants import Role, conversation_room, user_room
from edumarket.models import Conversation, Message
from edumarket.security import AuthUser
from edumarket.services import conversation_service

from conftest import token_for


async def open_chat(student, teacher):
    result = await conversation_service.initiate_or_get(
        requester=student, student_id=student.id, teacher_id=teacher.id
    )
    return str(result.conversation.id)


async def dispatch(server, event, sid, data=None):
    return await server.handlers[event](sid, data)


@pytest.mark.asyncio
async def test_connect_requires_a_valid_token(gateway, stub_server):
    with pytest.raises(ConnectionRefusedError):
        await gateway.connect("sid-x", {}, None)
    with pytest.raises(ConnectionRefusedError):
        await gateway.connect("sid-x", {}, {"token": "garbage"})

    assert "sid-x" not in gateway.sessions
    assert await gateway.presence.online_user_ids() == []


@pytest.mark.asyncio
async def test_connect_registers_presence(gateway, stub_server, student, teacher):
    await gateway.connect("sid-s", {}, {"token": token_for(student)})
    await gateway.connect("sid-t", {"HTTP_AUTHORIZATION": f"Bearer {token_for(teacher)}"}, None)

    assert await gateway.presence.lookup(str(student.id)) == "sid-s"
    assert "sid-t" in stub_server.rooms[user_room(teacher.id)]
    last = stub_server.events("online_users")[-1]
    assert sorted(last["data"]["user_ids"]) == sorted([str(student.id), str(teacher.id)])


@pytest.mark.asyncio
async def test_events_before_authentication_fail(gateway, stub_server):
    await dispatch(stub_server, "join_conversation", "sid-anon", {"conversation_id": str(OID())})

    [error] = stub_server.events("error")
    assert error["room"] == "sid-anon"
    assert error["data"]["code"] == "E401"
    assert error["data"]["event"] == "join_conversation"


@pytest.mark.asyncio
async def test_join_and_leave_notify_the_room(gateway, stub_server, student, teacher):
    cid = await open_chat(student, teacher)
    await gateway.connect("sid-s", {}, {"token": token_for(student)})

    await dispatch(stub_server, "join_conversation", "sid-s", {"conversation_id": cid})
    await dispatch(stub_server, "join_conversation", "sid-s", cid)

    assert "sid-s" in stub_server.rooms[conversation_room(cid)]
    joined = stub_server.events("room_membership")
    assert len(joined) == 1
    assert joined[0]["data"]["action"] == "joined"
    assert joined[0]["skip_sid"] == "sid-s"
    assert len(stub_server.events("joined_conversation")) == 2

    await dispatch(stub_server, "leave_conversation", "sid-s", {"conversation_id": cid})

    assert "sid-s" not in stub_server.rooms[conversation_room(cid)]
    assert stub_server.events("room_membership")[-1]["data"]["action"] == "left"
    assert stub_server.events("left_conversation")[-1]["room"] == "sid-s"


@pytest.mark.asyncio
async def test_join_foreign_conversation_is_rejected(gateway, stub_server, student, teacher):
    cid = await open_chat(student, teacher)
    intruder = OID()
    await gateway.connect("sid-i", {}, {"token": token_for(AuthUser(id=intruder, role=Role.STUDENT))})

    await dispatch(stub_server, "join_conversation", "sid-i", {"conversation_id": cid})

    [error] = stub_server.events("error")
    assert error["data"]["code"] == "E404"
    assert error["data"]["message"] == "Conversation not found or access denied"
    assert "sid-i" not in stub_server.rooms[conversation_room(cid)]


@pytest.mark.asyncio
async def test_send_message_fans_out(gateway, stub_server, student, teacher):
    cid = await open_chat(student, teacher)
    await gateway.connect("sid-s", {}, {"token": token_for(student)})
    await gateway.connect("sid-t", {}, {"token": token_for(teacher)})
    await dispatch(stub_server, "join_conversation", "sid-s", cid)

    await dispatch(stub_server, "send_message", "sid-s", {
        "conversation_id": cid,
        "content": "Is Tuesday fine?",
        "sender_id": str(student.id),
    })

    [received] = stub_server.events("message_received")
    assert received["room"] == conversation_room(cid)
    assert received["data"]["message"]["content"] == "Is Tuesday fine?"

    [notification] = stub_server.events("message_notification")
    assert notification["room"] == "sid-t"
    assert notification["data"]["conversation_id"] == cid
    assert notification["data"]["sender_id"] == str(student.id)

    [ack] = stub_server.events("message_sent")
    assert ack["room"] == "sid-s"
    assert ack["data"]["warning"] is None

    conversation = await Conversation.get(OID(cid))
    assert conversation.unread_count.teacher == 1


@pytest.mark.asyncio
async def test_send_message_validates_payload(gateway, stub_server, student, teacher):
    cid = await open_chat(student, teacher)
    await gateway.connect("sid-s", {}, {"token": token_for(student)})

    await dispatch(stub_server, "send_message", "sid-s", {"conversation_id": cid, "sender_id": str(student.id)})
    await dispatch(stub_server, "send_message", "sid-s", {
        "conversation_id": cid, "content": "spoofed", "sender_id": str(teacher.id),
    })

    codes = [e["data"]["code"] for e in stub_server.events("error")]
    assert codes == ["E400", "E404"]
    assert await Message.find_all().count() == 0


@pytest.mark.asyncio
async def test_typing_skips_sender_and_needs_membership(gateway, stub_server, student, teacher):
    cid = await open_chat(student, teacher)
    await gateway.connect("sid-s", {}, {"token": token_for(student)})

    await dispatch(stub_server, "typing", "sid-s", {"conversation_id": cid})
    assert stub_server.events("error")[-1]["data"]["code"] == "E404"

    await dispatch(stub_server, "join_conversation", "sid-s", cid)
    await dispatch(stub_server, "typing", "sid-s", {"conversation_id": cid, "is_typing": False})

    [typing] = stub_server.events("user_typing")
    assert typing["skip_sid"] == "sid-s"
    assert typing["data"]["is_typing"] is False
    assert typing["data"]["user_id"] == str(student.id)


@pytest.mark.asyncio
async def test_mark_as_read_resets_counter(gateway, stub_server, student, teacher):
    cid = await open_chat(student, teacher)
    await gateway.connect("sid-s", {}, {"token": token_for(student)})
    await gateway.connect("sid-t", {}, {"token": token_for(teacher)})
    await dispatch(stub_server, "send_message", "sid-s", {
        "conversation_id": cid, "content": "hi", "sender_id": str(student.id),
    })

    await dispatch(stub_server, "mark_as_read", "sid-t", {"conversation_id": cid})

    [seen] = stub_server.events("messages_seen")
    assert seen["room"] == conversation_room(cid)
    assert seen["data"]["count"] == 1
    conversation = await Conversation.get(OID(cid))
    assert conversation.unread_count.teacher == 0


@pytest.mark.asyncio
async def test_disconnect_drops_presence_but_history_stays(gateway, stub_server, student, teacher):
    cid = await open_chat(student, teacher)
    await gateway.connect("sid-s", {}, {"token": token_for(student)})
    await gateway.connect("sid-t", {}, {"token": token_for(teacher)})
    await dispatch(stub_server, "join_conversation", "sid-t", cid)

    await gateway.disconnect("sid-t")

    assert stub_server.events("online_users")[-1]["data"]["user_ids"] == [str(student.id)]
    left = stub_server.events("room_membership")[-1]
    assert left["data"] == {"conversation_id": cid, "user_id": str(teacher.id), "action": "left"}

    await dispatch(stub_server, "send_message", "sid-s", {
        "conversation_id": cid, "content": "are you there?", "sender_id": str(student.id),
    })

    assert stub_server.events("message_notification") == []
    assert stub_server.events("message_sent")[-1]["data"]["message"]["content"] == "are you there?"
    assert await Message.find({"conversation_id": OID(cid)}).count() == 1


@pytest.mark.asyncio
async def test_stale_disconnect_keeps_newer_connection(gateway, stub_server, student):
    await gateway.connect("sid-old", {}, {"token": token_for(student)})
    await gateway.connect("sid-new", {}, {"token": token_for(student)})

    await gateway.disconnect("sid-old")

    assert await gateway.presence.lookup(str(student.id)) == "sid-new"


@pytest.mark.asyncio
async def test_mark_as_read_with_selected_messages(gateway, stub_server, student, teacher):
    cid = await open_chat(student, teacher)
    await gateway.connect("sid-s", {}, {"token": token_for(student)})
    await gateway.connect("sid-t", {}, {"token": token_for(teacher)})
    for text in ("one", "two", "three"):
        await dispatch(stub_server, "send_message", "sid-s", {
            "conversation_id": cid, "content": text, "sender_id": str(student.id),
        })
    sent = [e["data"]["message"]["id"] for e in stub_server.events("message_sent")]

    await dispatch(stub_server, "mark_as_read", "sid-t", {"conversation_id": cid, "message_ids": sent[:2]})

    [seen] = stub_server.events("messages_seen")
    assert seen["data"]["count"] == 2
    assert seen["data"]["message_ids"] == sent[:2]
    unseen = await Message.find({"conversation_id": OID(cid), "is_seen": False}).to_list()
    assert [m.content for m in unseen] == ["three"]


@pytest.mark.asyncio
async def test_disconnect_during_join_leaves_no_state(gateway, stub_server, student, teacher, monkeypatch):
    cid = await open_chat(student, teacher)
    await gateway.connect("sid-s", {}, {"token": token_for(student)})

    entered, release = asyncio.Event(), asyncio.Event()
    real_get_by_id = conversation_service.get_by_id

    async def slow_get_by_id(*args, **kwargs):
        entered.set()
        await release.wait()
        return await real_get_by_id(*args, **kwargs)

    monkeypatch.setattr(conversation_service, "get_by_id", slow_get_by_id)

    join = asyncio.create_task(dispatch(stub_server, "join_conversation", "sid-s", cid))
    await entered.wait()
    closing = asyncio.create_task(gateway.disconnect("sid-s"))
    await asyncio.sleep(0)
    release.set()
    await asyncio.gather(join, closing)

    assert "sid-s" not in gateway.sessions
    assert "sid-s" not in gateway.socket_rooms
    assert "sid-s" not in gateway._locks
    assert "sid-s" not in stub_server.rooms[conversation_room(cid)]
    assert await gateway.presence.lookup(str(student.id)) is None


@pytest.mark.asyncio
async def test_events_after_disconnect_do_not_recreate_state(gateway, stub_server, student, teacher):
    cid = await open_chat(student, teacher)
    await gateway.connect("sid-s", {}, {"token": token_for(student)})
    await gateway.disconnect("sid-s")

    await dispatch(stub_server, "join_conversation", "sid-s", cid)

    assert stub_server.events("error")[-1]["data"]["code"] == "E401"
    assert "sid-s" not in gateway._locks
    assert "sid-s" not in gateway.socket_rooms
    assert "sid-s" not in stub_server.rooms[conversation_room(cid)]


@pytest.mark.asyncio
async def test_call_signaling_reaches_the_other_participant(gateway, stub_server, student, teacher):
    cid = await open_chat(student, teacher)
    await gateway.connect("sid-s", {}, {"token": token_for(student)})
    await gateway.connect("sid-t", {}, {"token": token_for(teacher)})

    await dispatch(stub_server, "call_user", "sid-s", {"conversation_id": cid, "signal": {"type": "offer"}, "name": "Lina"})
    await dispatch(stub_server, "answer_call", "sid-t", {"conversation_id": cid, "signal": {"type": "answer"}})
    await dispatch(stub_server, "ice_candidate", "sid-s", {"conversation_id": cid, "candidate": "candidate:1"})
    await dispatch(stub_server, "end_call", "sid-t", {"conversation_id": cid})

    [incoming] = stub_server.events("incoming_call")
    assert incoming["room"] == user_room(teacher.id)
    assert incoming["data"] == {"conversation_id": cid, "from": str(student.id), "signal": {"type": "offer"}, "name": "Lina"}

    [accepted] = stub_server.events("call_accepted")
    assert accepted["room"] == user_room(student.id)

    [candidate] = stub_server.events("ice_candidate")
    assert candidate["room"] == user_room(teacher.id)
    assert candidate["data"]["candidate"] == "candidate:1"

    [ended] = stub_server.events("call_ended")
    assert ended["room"] == user_room(student.id)
    assert stub_server.events("error") == []


@pytest.mark.asyncio
async def test_call_signaling_requires_membership(gateway, stub_server, student, teacher):
    cid = await open_chat(student, teacher)
    outsider = AuthUser(id=OID(), role=Role.TEACHER)
    await gateway.connect("sid-o", {}, {"token": token_for(outsider)})

    await dispatch(stub_server, "offer", "sid-o", {"conversation_id": cid, "sdp": "v=0"})
    await dispatch(stub_server, "call_user", "sid-o", {"conversation_id": cid})

    codes = [e["data"]["code"] for e in stub_server.events("error")]
    assert codes == ["E404", "E400"]
    assert stub_server.events("offer") == []
    assert stub_server.events("incoming_call") == []
