"""HTTP tests for the conversation routes."""

from app.conversations.errors import StoreUnavailable
from app.conversations.models import BanStatus

from conftest import ADMIN, AFFILIATE, GOVERNOR, OTHER_AFFILIATE, participant_in

MIB = 1024 * 1024


def _create(api, caller=ADMIN, other=AFFILIATE, type="admin_affiliate", title="Payout"):
    resp = api.client.post(
        "/api/conversations",
        json={
            "type": type,
            "title": title,
            "participants": [participant_in(other).model_dump()],
        },
        headers=api.headers(caller),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_requests_without_token_are_rejected(api):
    assert api.client.get("/api/conversations").status_code == 401
    resp = api.client.get(
        "/api/conversations", headers={"Authorization": "Token abc"}
    )
    assert resp.status_code == 401


def test_create_and_list_respects_visibility(api):
    conversation = _create(api)

    admin = api.client.get("/api/conversations", headers=api.headers(ADMIN)).json()
    outsider = api.client.get(
        "/api/conversations", headers=api.headers(OTHER_AFFILIATE)
    ).json()
    governor = api.client.get("/api/conversations", headers=api.headers(GOVERNOR)).json()

    assert admin["total"] == 1
    assert admin["items"][0]["id"] == conversation["id"]
    assert outsider == {"items": [], "total": 0}
    assert governor["total"] == 1


def test_search_query_parameter(api):
    _create(api, title="Commission payout")

    hits = api.client.get(
        "/api/conversations", params={"q": "commission"}, headers=api.headers(ADMIN)
    ).json()
    misses = api.client.get(
        "/api/conversations", params={"q": "onboarding"}, headers=api.headers(ADMIN)
    ).json()

    assert hits["total"] == 1
    assert misses["total"] == 0


def test_invalid_create_is_unprocessable(api):
    resp = api.client.post(
        "/api/conversations",
        json={"type": "admin_affiliate", "title": "Solo", "participants": []},
        headers=api.headers(ADMIN),
    )
    assert resp.status_code == 422


def test_foreign_conversation_is_not_found(api):
    conversation = _create(api)

    resp = api.client.get(
        f"/api/conversations/{conversation['id']}", headers=api.headers(OTHER_AFFILIATE)
    )

    assert resp.status_code == 404


def test_send_read_and_list_messages(api):
    conversation = _create(api)
    cid = conversation["id"]

    sent = api.client.post(
        f"/api/conversations/{cid}/messages",
        json={"content": "Where is my payout?", "priority": "high"},
        headers=api.headers(AFFILIATE),
    )
    assert sent.status_code == 201
    assert sent.json()["source"] == "enhanced"
    message_id = sent.json()["message_id"]

    unread = api.client.get(f"/api/conversations/{cid}/unread", headers=api.headers(ADMIN))
    assert unread.json() == {"conversation_id": cid, "unread": 1}

    read = api.client.post(
        f"/api/conversations/{cid}/messages/{message_id}/read", headers=api.headers(ADMIN)
    )
    assert read.status_code == 200
    assert [r["user_id"] for r in read.json()["read_by"]] == [ADMIN.user_id]

    timeline = api.client.get(
        f"/api/conversations/{cid}/messages", headers=api.headers(ADMIN)
    ).json()
    assert timeline["stale"] is False
    assert [m["content"] for m in timeline["messages"]] == ["Where is my payout?"]
    assert timeline["messages"][0]["source"] == "enhanced"


def test_read_through_another_conversation_leaves_no_receipt(api):
    cid = _create(api)["id"]
    other_cid = _create(api, title="Onboarding")["id"]
    message_id = api.client.post(
        f"/api/conversations/{cid}/messages",
        json={"content": "Where is my payout?"},
        headers=api.headers(AFFILIATE),
    ).json()["message_id"]

    resp = api.client.post(
        f"/api/conversations/{other_cid}/messages/{message_id}/read",
        headers=api.headers(ADMIN),
    )

    assert resp.status_code == 404
    timeline = api.client.get(
        f"/api/conversations/{cid}/messages", headers=api.headers(ADMIN)
    ).json()
    assert timeline["messages"][0]["read_by"] == []
    unread = api.client.get(f"/api/conversations/{cid}/unread", headers=api.headers(ADMIN))
    assert unread.json()["unread"] == 1


def test_send_validation_and_permission_errors(api):
    cid = _create(api)["id"]

    too_long = api.client.post(
        f"/api/conversations/{cid}/messages",
        json={"content": "x" * 1001},
        headers=api.headers(ADMIN),
    )
    outsider = api.client.post(
        f"/api/conversations/{cid}/messages",
        json={"content": "hi"},
        headers=api.headers(OTHER_AFFILIATE),
    )

    assert too_long.status_code == 422
    assert outsider.status_code == 403


def test_edit_message_route(api):
    cid = _create(api)["id"]
    message_id = api.client.post(
        f"/api/conversations/{cid}/messages",
        json={"content": "typo"},
        headers=api.headers(ADMIN),
    ).json()["message_id"]

    edited = api.client.patch(
        f"/api/messages/{message_id}", json={"content": "fixed"}, headers=api.headers(ADMIN)
    )
    again = api.client.patch(
        f"/api/messages/{message_id}", json={"content": "again"}, headers=api.headers(ADMIN)
    )

    assert edited.status_code == 200
    assert edited.json()["original_content"] == "typo"
    assert again.status_code == 422


def test_escalation_flow_over_http(api):
    cid = _create(api)["id"]

    escalated = api.client.post(
        f"/api/conversations/{cid}/escalate",
        json={"reason": "Payment dispute"},
        headers=api.headers(ADMIN),
    )
    duplicate = api.client.post(
        f"/api/conversations/{cid}/escalate",
        json={"reason": "again"},
        headers=api.headers(ADMIN),
    )
    joined = api.client.post(f"/api/conversations/{cid}/join", headers=api.headers(GOVERNOR))
    rejoin = api.client.post(f"/api/conversations/{cid}/join", headers=api.headers(GOVERNOR))
    resolved = api.client.post(
        f"/api/conversations/{cid}/resolve", headers=api.headers(GOVERNOR)
    )
    archived = api.client.post(
        f"/api/conversations/{cid}/archive", headers=api.headers(GOVERNOR)
    )

    assert escalated.status_code == 200
    assert escalated.json()["status"] == "escalated"
    assert duplicate.status_code == 409
    assert joined.status_code == 200
    assert rejoin.status_code == 409
    assert resolved.json()["status"] == "resolved"
    assert archived.json()["status"] == "archived"

    messages = api.client.get(
        f"/api/conversations/{cid}/messages", headers=api.headers(ADMIN)
    ).json()["messages"]
    assert messages[1]["content"].startswith("GRACE GOVERNOR HAS JOINED THE CONVERSATION")


def test_affiliate_cannot_escalate(api):
    cid = _create(api)["id"]

    resp = api.client.post(
        f"/api/conversations/{cid}/escalate",
        json={"reason": "help"},
        headers=api.headers(AFFILIATE),
    )

    assert resp.status_code == 403


def test_add_participant_requires_staff_role(api):
    cid = _create(api)["id"]
    payload = participant_in(OTHER_AFFILIATE).model_dump()

    denied = api.client.post(
        f"/api/conversations/{cid}/participants", json=payload, headers=api.headers(AFFILIATE)
    )
    added = api.client.post(
        f"/api/conversations/{cid}/participants", json=payload, headers=api.headers(ADMIN)
    )
    duplicate = api.client.post(
        f"/api/conversations/{cid}/participants", json=payload, headers=api.headers(ADMIN)
    )

    assert denied.status_code == 403
    assert added.status_code == 200
    assert duplicate.status_code == 409


def test_shadow_banned_caller_cannot_message(api):
    cid = _create(api)["id"]
    api.bans.ban(AFFILIATE.user_id, BanStatus(is_active=True, ban_type="full_platform"))

    blocked = api.client.post(
        f"/api/conversations/{cid}/messages",
        json={"content": "hello"},
        headers=api.headers(AFFILIATE),
    )
    still_reads = api.client.get(
        f"/api/conversations/{cid}/messages", headers=api.headers(AFFILIATE)
    )

    assert blocked.status_code == 403
    assert still_reads.status_code == 200


def test_partial_ban_does_not_block_messaging(api):
    cid = _create(api)["id"]
    api.bans.ban(AFFILIATE.user_id, BanStatus(is_active=True, ban_type="withdrawal_only"))

    resp = api.client.post(
        f"/api/conversations/{cid}/messages",
        json={"content": "hello"},
        headers=api.headers(AFFILIATE),
    )

    assert resp.status_code == 201


def test_upload_attachments_reports_per_file_errors(api):
    files = [
        ("files", ("invoice.pdf", b"%PDF-1.7", "application/pdf")),
        ("files", ("huge.png", b"\0" * (10 * MIB + 1), "image/png")),
        ("files", ("notes.txt", b"hello", "text/plain")),
    ]

    resp = api.client.post("/api/attachments", files=files, headers=api.headers(ADMIN))

    assert resp.status_code == 200
    body = resp.json()
    assert [a["name"] for a in body["accepted"]] == ["invoice.pdf", "notes.txt"]
    assert all(a["url"].startswith("/uploads/") for a in body["accepted"])
    assert body["errors"] == [
        {
            "filename": "huge.png",
            "code": "file_too_large",
            "detail": body["errors"][0]["detail"],
        }
    ]


def test_recipients_follow_caller_role(api):
    resp = api.client.get("/api/recipients", headers=api.headers(AFFILIATE))

    assert resp.status_code == 200
    assert {r["role"] for r in resp.json()} == {"admin"}


def test_store_outage_maps_to_service_unavailable(api, monkeypatch):
    cid = _create(api)["id"]

    def down(*_args, **_kwargs):
        raise StoreUnavailable("both stores down")

    monkeypatch.setattr(api.service, "send", down)

    resp = api.client.post(
        f"/api/conversations/{cid}/messages",
        json={"content": "hello"},
        headers=api.headers(ADMIN),
    )

    assert resp.status_code == 503
