from coach_ledger.db.models import HiddenMessage


def _start_chat(client, external_id: str, message: str = "Check my breakfast", workflow: str = "food_scan") -> str:
    turn = client.post("/chat/turns", json={"external_id": external_id, "workflow": workflow, "message": message})
    assert turn.status_code == 200
    conversation_id = turn.json()["conversation_id"]
    reply = client.post(
        "/chat/replies",
        json={"conversation_id": conversation_id, "reply": "Good mix of protein and fiber."},
    )
    assert reply.status_code == 200
    return conversation_id


def _messages(client, external_id: str, conversation_id: str) -> list[dict]:
    response = client.get(
        f"/account/conversations/{conversation_id}/messages", params={"external_id": external_id}
    )
    assert response.status_code == 200
    return response.json()["messages"]


def test_summary_without_identity(client) -> None:
    response = client.get("/account/summary")
    assert response.status_code == 200
    assert response.json()["has_data"] is False
    assert response.json()["reason"] == "missing_identity"


def test_conversation_listing(client, unique_id) -> None:
    external_id = unique_id("member")
    conversation_id = _start_chat(client, external_id)

    response = client.get("/account/conversations", params={"external_id": external_id})
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert [item["id"] for item in body["conversations"]] == [conversation_id]
    assert body["conversations"][0]["title"].startswith("Meal scan · ")
    assert body["conversations"][0]["workflow"] == "food_scan"

    messages = _messages(client, external_id, conversation_id)
    assert [row["role"] for row in messages] == ["user", "assistant"]


def test_hide_then_unhide(client, db_session, unique_id) -> None:
    external_id = unique_id("member")
    conversation_id = _start_chat(client, external_id)
    user_message = _messages(client, external_id, conversation_id)[0]

    payload = {"action": "delete", "message_id": user_message["id"], "external_id": external_id}
    first = client.post("/account/messages/actions", json=payload)
    assert first.status_code == 200
    assert first.json() == {"ok": True, "action": "hide", "outcome": "hidden", "reason": None}
    second = client.post("/account/messages/actions", json={**payload, "action": "hide"})
    assert second.json()["outcome"] == "already_hidden"
    assert db_session.query(HiddenMessage).filter(HiddenMessage.message_id == user_message["id"]).count() == 1

    summary = client.get("/account/summary", params={"external_id": external_id}).json()
    assert summary["total_messages"] == 1
    assert user_message["id"] not in [row["id"] for row in _messages(client, external_id, conversation_id)]

    restored = client.post("/account/messages/actions", json={**payload, "action": "unhide"})
    assert restored.json()["outcome"] == "unhidden"
    assert len(_messages(client, external_id, conversation_id)) == 2


def test_pin_marks_message(client, unique_id) -> None:
    external_id = unique_id("member")
    conversation_id = _start_chat(client, external_id)
    reply = _messages(client, external_id, conversation_id)[1]

    pinned = client.post(
        "/account/messages/actions",
        json={"action": "PIN", "message_id": reply["id"], "external_id": external_id},
    )
    assert pinned.json()["outcome"] == "pinned"
    rows = {row["id"]: row for row in _messages(client, external_id, conversation_id)}
    assert rows[reply["id"]]["pinned"] is True

    unpinned = client.post(
        "/account/messages/actions",
        json={"action": "unpin", "message_id": reply["id"], "external_id": external_id},
    )
    assert unpinned.json()["outcome"] == "unpinned"


def test_action_on_foreign_message_is_forbidden(client, unique_id) -> None:
    owner = unique_id("member")
    conversation_id = _start_chat(client, owner)
    target = _messages(client, owner, conversation_id)[0]

    intruder = unique_id("member")
    _start_chat(client, intruder)
    response = client.post(
        "/account/messages/actions",
        json={"action": "hide", "message_id": target["id"], "external_id": intruder},
    )
    assert response.status_code == 403
    assert response.json()["detail"] == "not_owner"


def test_action_input_errors(client, unique_id) -> None:
    external_id = unique_id("member")
    _start_chat(client, external_id)

    unknown = client.post(
        "/account/messages/actions", json={"action": "archive", "message_id": 1, "external_id": external_id}
    )
    assert unknown.status_code == 400
    assert unknown.json()["detail"] == "unsupported_action"

    anonymous = client.post("/account/messages/actions", json={"action": "hide", "message_id": 1})
    assert anonymous.status_code == 400
    assert anonymous.json()["detail"] == "missing_identity"

    missing = client.post(
        "/account/messages/actions", json={"action": "hide", "message_id": 99999999, "external_id": external_id}
    )
    assert missing.status_code == 200
    assert missing.json()["ok"] is False
    assert missing.json()["reason"] == "message_not_found"

    stranger = client.post(
        "/account/messages/actions",
        json={"action": "hide", "message_id": 1, "external_id": unique_id("nobody")},
    )
    assert stranger.json()["reason"] == "user_not_found"


def test_other_users_conversation_messages_are_empty(client, unique_id) -> None:
    owner = unique_id("member")
    conversation_id = _start_chat(client, owner)
    intruder = unique_id("member")
    _start_chat(client, intruder)
    assert _messages(client, intruder, conversation_id) == []
