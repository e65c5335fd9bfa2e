import pytest

pytest.importorskip("httpx")


def _cash_day(api_client, headers):
    session = api_client.post("/api/cash/session/open", json={"openingAmount": 80}, headers=headers).json()["session"]
    api_client.post(
        "/api/cash/movements",
        json={"sessionId": session["id"], "type": "OUT", "amount": 12, "reason": "bread"},
        headers=headers,
    )
    api_client.post("/api/cash/session/close", json={"closingAmount": 68, "systemExpected": 68}, headers=headers)
    return session


def test_cash_writes_leave_audit_trail(api_client, tenant):
    _, cashier, cashier_headers = tenant("cashier")
    _, _, manager_headers = tenant("manager")
    session = _cash_day(api_client, cashier_headers)

    resp = api_client.get("/api/audit", headers=manager_headers)

    assert resp.status_code == 200
    items = resp.json()["items"]
    assert {item["event_type"] for item in items} == {
        "cash_session.opened",
        "cash_movement.created",
        "cash_session.closed",
    }
    assert all(item["actor"] == cashier.id for item in items)

    movement_event = next(i for i in items if i["event_type"] == "cash_movement.created")
    assert movement_event["reason"] == "bread"
    assert movement_event["after_state"]["session_id"] == session["id"]
    assert movement_event["after_state"]["amount"] == 12.0

    closed_event = next(i for i in items if i["event_type"] == "cash_session.closed")
    assert closed_event["before_state"] == {"status": "OPEN"}
    assert closed_event["after_state"]["discrepancy_amount"] == 0.0


def test_audit_pagination_and_filters(api_client, tenant):
    _, _, headers = tenant("manager")
    _cash_day(api_client, headers)

    first = api_client.get("/api/audit", params={"limit": 2}, headers=headers).json()
    assert len(first["items"]) == 2
    assert first["next_cursor"]

    rest = api_client.get("/api/audit", params={"limit": 2, "cursor": first["next_cursor"]}, headers=headers).json()
    assert len(rest["items"]) == 1
    assert rest["next_cursor"] is None
    seen = {i["id"] for i in first["items"]} | {i["id"] for i in rest["items"]}
    assert len(seen) == 3

    opened = api_client.get("/api/audit", params={"event_type": "cash_session.opened"}, headers=headers).json()
    assert [i["event_type"] for i in opened["items"]] == ["cash_session.opened"]


def test_bad_cursor_is_400(api_client, tenant):
    _, _, headers = tenant("owner")

    resp = api_client.get("/api/audit", params={"cursor": "not-a-cursor"}, headers=headers)

    assert resp.status_code == 400
    assert resp.json()["detail"]["kind"] == "InvalidCursor"


def test_session_trail_by_entity(api_client, tenant):
    _, _, headers = tenant("manager")
    session = _cash_day(api_client, headers)

    resp = api_client.get(
        "/api/audit",
        params={"entity_type": "cash_session", "entity_id": session["id"]},
        headers=headers,
    )

    assert [i["event_type"] for i in resp.json()["items"]] == ["cash_session.closed", "cash_session.opened"]


def test_cashier_cannot_read_audit(api_client, tenant):
    _, _, headers = tenant("cashier")

    resp = api_client.get("/api/audit", headers=headers)

    assert resp.status_code == 403
