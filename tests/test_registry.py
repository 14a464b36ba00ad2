"""Tests for conversation visibility, creation and participants."""

from datetime import timedelta

import pytest

from app.conversations import schemas
from app.conversations.errors import (
    AlreadyParticipant,
    ConversationNotFoundError,
    InvalidTransition,
    ValidationError,
)
from app.conversations.registry import (
    ATTACHMENT_PREVIEW,
    ConversationRegistry,
    matches_search,
    preview_for,
)
from app.conversations.repository import InMemoryConversationStore

from conftest import (
    ADMIN,
    AFFILIATE,
    GOVERNOR,
    OTHER_ADMIN,
    OTHER_AFFILIATE,
    TickingClock,
    participant_in,
)


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def registry(store) -> ConversationRegistry:
    return ConversationRegistry(store, clock=TickingClock())


def _create(registry, initiator, *others, type="admin_affiliate", title="Payout"):
    return registry.create_conversation(
        initiator, [participant_in(o) for o in others], type, title
    )


def test_create_conversation_records_initiator_and_audit(registry):
    conversation = _create(registry, ADMIN, AFFILIATE)

    assert [p.id for p in conversation.participants] == ["admin-1", "aff-1"]
    assert conversation.status == "active"
    assert conversation.is_escalated is False
    assert conversation.created_by == "admin-1"
    assert conversation.version == 1
    assert [e.action for e in conversation.audit_trail] == ["created"]


def test_create_rejects_single_participant(registry):
    with pytest.raises(ValidationError):
        _create(registry, ADMIN)


def test_create_rejects_duplicate_participants(registry):
    with pytest.raises(ValidationError):
        _create(registry, ADMIN, AFFILIATE, AFFILIATE)
    with pytest.raises(ValidationError):
        _create(registry, ADMIN, ADMIN)


def test_non_group_conversation_needs_two_roles(registry):
    with pytest.raises(ValidationError):
        _create(registry, AFFILIATE, OTHER_AFFILIATE)

    group = _create(registry, AFFILIATE, OTHER_AFFILIATE, type="group", title="Team")
    assert group.type == "group"


def test_create_requires_title(registry):
    with pytest.raises(ValidationError):
        _create(registry, ADMIN, AFFILIATE, title="   ")


def test_visibility_governor_sees_all_others_only_their_own(registry):
    first = _create(registry, ADMIN, AFFILIATE)
    second = _create(registry, OTHER_ADMIN, OTHER_AFFILIATE)

    governor_ids = {c.id for c in registry.list_for_user(GOVERNOR.user_id, "governor")}
    admin_ids = {c.id for c in registry.list_for_user(ADMIN.user_id, "admin")}
    affiliate_ids = {c.id for c in registry.list_for_user(OTHER_AFFILIATE.user_id, "affiliate")}

    assert governor_ids == {first.id, second.id}
    assert admin_ids == {first.id}
    assert affiliate_ids == {second.id}


def test_visibility_recheck_does_not_trust_store(registry, store, monkeypatch):
    _create(registry, ADMIN, AFFILIATE)
    monkeypatch.setattr(store, "list_for_participant", lambda user_id: store.list_all())

    assert registry.list_for_user(OTHER_AFFILIATE.user_id, "affiliate") == []


def test_search_narrows_visible_list(registry):
    _create(registry, ADMIN, AFFILIATE, title="Commission payout")
    _create(registry, ADMIN, OTHER_AFFILIATE, title="Onboarding")

    titles = [c.title for c in registry.list_for_user(ADMIN.user_id, "admin", "PAYOUT")]
    by_name = [c.title for c in registry.list_for_user(ADMIN.user_id, "admin", "bo aff")]

    assert titles == ["Commission payout"]
    assert by_name == ["Onboarding"]


def test_get_for_user_hides_foreign_conversations(registry):
    conversation = _create(registry, ADMIN, AFFILIATE)

    assert registry.get_for_user(conversation.id, GOVERNOR).id == conversation.id
    with pytest.raises(ConversationNotFoundError):
        registry.get_for_user(conversation.id, OTHER_AFFILIATE)
    with pytest.raises(ConversationNotFoundError):
        registry.get("missing")


def test_append_participant_once(registry):
    conversation = _create(registry, ADMIN, AFFILIATE)

    updated = registry.append_participant(
        conversation.id, participant_in(OTHER_ADMIN), performed_by=ADMIN
    )

    assert updated.has_participant(OTHER_ADMIN.user_id)
    assert updated.audit_trail[-1].action == "participant_added"
    assert updated.version == conversation.version + 1
    with pytest.raises(AlreadyParticipant):
        registry.append_participant(
            conversation.id, participant_in(OTHER_ADMIN), performed_by=ADMIN
        )


def test_commit_rejects_stale_version(registry):
    conversation = _create(registry, ADMIN, AFFILIATE)
    registry.append_participant(conversation.id, participant_in(OTHER_ADMIN), performed_by=ADMIN)

    stale_update = conversation.model_copy(update={"title": "Renamed"})
    with pytest.raises(InvalidTransition):
        registry.commit(conversation, stale_update)


def test_audit_timestamps_are_monotonic_when_clock_steps_back(store):
    clock = TickingClock(step=-timedelta(seconds=5))
    registry = ConversationRegistry(store, clock=clock)
    conversation = _create(registry, ADMIN, AFFILIATE)
    updated = registry.append_participant(
        conversation.id, participant_in(OTHER_ADMIN), performed_by=ADMIN
    )

    stamps = [e.timestamp for e in updated.audit_trail]
    assert stamps == sorted(stamps)


def test_preview_truncates_and_marks_attachments():
    long = schemas.EnhancedMessage(
        id="m1",
        conversation_id="c1",
        sender_id="admin-1",
        sender_name="Ada",
        sender_role="admin",
        content="x" * 250,
    )
    attachment_only = long.model_copy(update={"content": "", "attachments": ["/uploads/a"]})

    assert len(preview_for(long)) == 100
    assert preview_for(attachment_only) == ATTACHMENT_PREVIEW


def test_matches_search_blank_term_matches_everything(registry):
    conversation = _create(registry, ADMIN, AFFILIATE)

    assert matches_search(conversation, "  ")


def test_available_recipients_follow_role_rules(registry, directory):
    def ids(caller):
        return sorted(r.id for r in registry.available_recipients(caller, directory))

    assert ids(AFFILIATE) == ["admin-1", "admin-2"]
    assert ids(ADMIN) == ["aff-1", "aff-2", "gov-1", "gov-2"]
    assert ids(GOVERNOR) == ["admin-1", "admin-2", "aff-1", "aff-2"]
