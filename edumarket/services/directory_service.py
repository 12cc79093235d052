"""Per-user inbox: conversations joined with the other participant's public profile."""
from beanie.operators import In

from edumarket.constants import AccountKind
from edumarket.models import Conversation, Student, TeacherProfile
from edumarket.schemas import InboxItemOut, OtherParticipantOut, ParticipantDetailsOut, UnreadCountOut
from edumarket.utils.chat_helpers import (
    collaboration_context_out,
    consultancy_context_out,
    last_message_out,
    parse_oid,
)
from edumarket.utils.dates import to_utc
from edumarket.utils.logger import get_logger

logger = get_logger("directory_service")


def _full_name(first: str | None, last: str | None) -> str | None:
    return " ".join(part for part in (first, last) if part) or None


def student_details(student: Student) -> ParticipantDetailsOut:
    return ParticipantDetailsOut(
        first_name=student.first_name,
        last_name=student.last_name,
        email=student.email,
        profile_picture=student.profile_picture,
        name=_full_name(student.first_name, student.last_name),
    )


def profile_details(profile: TeacherProfile) -> ParticipantDetailsOut:
    return ParticipantDetailsOut(
        name=profile.name if profile.name is not None else _full_name(profile.first_name, profile.last_name),
        email=profile.email,
        profile_image=profile.profile_image,
        specialisation=profile.specialisation,
        first_name=profile.first_name,
        last_name=profile.last_name,
    )


def account_details(kind: AccountKind, account) -> ParticipantDetailsOut:
    if kind == AccountKind.STUDENT:
        return student_details(account)
    return profile_details(account)


def _recency(conversation: Conversation):
    if conversation.last_message is not None:
        return to_utc(conversation.last_message.timestamp)
    return to_utc(conversation.updated_at)


async def _load_profiles(ids_by_kind: dict[AccountKind, set]) -> dict[AccountKind, dict]:
    """Batch-fetch accounts per kind, keyed by id."""
    loaded: dict[AccountKind, dict] = {AccountKind.STUDENT: {}, AccountKind.PROFILE: {}}
    student_ids = list(ids_by_kind.get(AccountKind.STUDENT, ()))
    if student_ids:
        students = await Student.find(In(Student.id, student_ids)).to_list()
        loaded[AccountKind.STUDENT] = {s.id: s for s in students}
    profile_ids = list(ids_by_kind.get(AccountKind.PROFILE, ()))
    if profile_ids:
        profiles = await TeacherProfile.find(In(TeacherProfile.id, profile_ids)).to_list()
        loaded[AccountKind.PROFILE] = {p.id: p for p in profiles}
    return loaded


async def list_for_user(user_id) -> list[InboxItemOut]:
    """All live conversations of the user, most recently active first."""
    uid = parse_oid(user_id, "user_id")
    conversations = await Conversation.find(
        {"participants.user_id": uid, "is_delete": False}
    ).to_list()
    conversations.sort(key=_recency, reverse=True)

    ids_by_kind: dict[AccountKind, set] = {AccountKind.STUDENT: set(), AccountKind.PROFILE: set()}
    for conversation in conversations:
        other = conversation.other_participant(uid)
        ids_by_kind[other.kind].add(other.user_id)
    profiles = await _load_profiles(ids_by_kind)

    items: list[InboxItemOut] = []
    for conversation in conversations:
        other = conversation.other_participant(uid)
        account = profiles[other.kind].get(other.user_id)
        details = None
        if account is None:
            logger.warning(f"No {other.kind.value} account found for participant {other.user_id}")
        else:
            details = account_details(other.kind, account)

        items.append(InboxItemOut(
            id=str(conversation.id),
            chat_type=conversation.chat_type,
            consultancy_context=consultancy_context_out(conversation),
            collaboration_context=collaboration_context_out(conversation),
            last_message=last_message_out(conversation),
            status=conversation.status,
            unread_count=UnreadCountOut(
                student=conversation.unread_count.student,
                teacher=conversation.unread_count.teacher,
            ),
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            other_participant=OtherParticipantOut(
                id=str(other.user_id),
                role=other.role,
                kind=other.kind,
                details=details,
            ),
        ))
    return items


async def details_by_ref(refs) -> dict[tuple[AccountKind, str], ParticipantDetailsOut]:
    """Public details for `(kind, id)` references, one query per account kind.

    Unknown accounts are left out of the result.
    """
    ids_by_kind: dict[AccountKind, set] = {AccountKind.STUDENT: set(), AccountKind.PROFILE: set()}
    for kind, account_id in refs:
        ids_by_kind[kind].add(account_id)
    profiles = await _load_profiles(ids_by_kind)
    return {
        (kind, str(account_id)): account_details(kind, account)
        for kind, accounts in profiles.items()
        for account_id, account in accounts.items()
    }
