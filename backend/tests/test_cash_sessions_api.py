import pytest

pytest.importorskip("httpx")

from backend.app.models import CashCount, CashSession, Organization
from backend.app.services import cash_session_service


def _open(api_client, headers, amount=100.0, **extra):
    return api_client.post("/api/cash/session/open", json={"openingAmount": amount, **extra}, headers=headers)


def test_open_then_current_then_close(api_client, sqlite_session, tenant):
    _, user, headers = tenant("cashier")

    assert api_client.get("/api/cash/session/current", headers=headers).json() == {"session": None}

    opened = _open(api_client, headers, notes="morning shift")
    assert opened.status_code == 201
    session = opened.json()["session"]
    assert session["status"] == "OPEN"
    assert session["openingAmount"] == 100.0
    assert session["openedBy"] == user.id

    current = api_client.get("/api/cash/session/current", headers=headers).json()["session"]
    assert current["id"] == session["id"]

    api_client.post(
        "/api/cash/movements",
        json={"sessionId": session["id"], "type": "SALE", "amount": 30},
        headers=headers,
    )

    closed = api_client.post(
        "/api/cash/session/close",
        json={
            "closingAmount": 125.0,
            "systemExpected": 130.0,
            "counts": [{"denomination": 20, "quantity": 5}, {"denomination": 0.25, "quantity": 100}],
        },
        headers=headers,
    )
    assert closed.status_code == 200
    body = closed.json()["session"]
    assert body["status"] == "CLOSED"
    assert body["discrepancyAmount"] == -5.0
    assert body["closedBy"] == user.id
    assert body["closedAt"] is not None
    assert body["notes"] == "morning shift"

    sqlite_session.expire_all()
    totals = sorted(c.total for c in sqlite_session.query(CashCount).filter(CashCount.session_id == session["id"]))
    assert totals == [25.0, 100.0]

    assert api_client.get("/api/cash/session/current", headers=headers).json() == {"session": None}

    late = api_client.post(
        "/api/cash/movements",
        json={"sessionId": session["id"], "type": "IN", "amount": 5},
        headers=headers,
    )
    assert late.status_code == 400
    assert late.json()["detail"]["kind"] == "SessionNotOpen"


def test_second_open_is_rejected(api_client, tenant):
    _, _, headers = tenant("cashier")
    assert _open(api_client, headers).status_code == 201

    again = _open(api_client, headers)

    assert again.status_code == 400
    assert again.json()["detail"]["kind"] == "SessionAlreadyOpen"


def test_close_without_open_session(api_client, tenant):
    _, _, headers = tenant("cashier")

    resp = api_client.post("/api/cash/session/close", json={"closingAmount": 10}, headers=headers)

    assert resp.status_code == 400
    assert resp.json()["detail"]["kind"] == "NoOpenSession"


def test_negative_amounts_are_rejected(api_client, tenant):
    _, _, headers = tenant("cashier")

    resp = _open(api_client, headers, amount=-1)

    assert resp.status_code == 400
    assert resp.json()["detail"]["kind"] == "InvalidSessionPayload"


def test_viewer_cannot_open(api_client, tenant):
    _, _, headers = tenant("viewer")

    resp = _open(api_client, headers)

    assert resp.status_code == 403


def test_list_sessions_paginates_and_filters(api_client, sqlite_session, tenant):
    org, user, headers = tenant("cashier")
    for _ in range(3):
        opened = _open(api_client, headers).json()["session"]
        api_client.post("/api/cash/session/close", json={"closingAmount": 100}, headers=headers)
    still_open = _open(api_client, headers).json()["session"]

    first = api_client.get("/api/cash/sessions", params={"page": 1, "limit": 2}, headers=headers).json()
    assert first["pagination"] == {"page": 1, "limit": 2, "total": 4, "pages": 2}
    assert len(first["sessions"]) == 2
    assert first["sessions"][0]["id"] == still_open["id"]
    assert first["sessions"][0]["movements"] == []
    assert first["sessions"][0]["counts"] == []

    closed_only = api_client.get("/api/cash/sessions", params={"status": "closed"}, headers=headers).json()
    assert closed_only["pagination"]["total"] == 3
    assert {s["status"] for s in closed_only["sessions"]} == {"CLOSED"}
    assert opened["id"] in {s["id"] for s in closed_only["sessions"]}

    nobody = api_client.get("/api/cash/sessions", params={"userId": "someone-else"}, headers=headers).json()
    assert nobody["pagination"]["total"] == 0


def test_list_sessions_embeds_movements_newest_first(api_client, tenant):
    _, _, headers = tenant("cashier")
    session = _open(api_client, headers).json()["session"]
    for amount in (1, 2, 3):
        api_client.post(
            "/api/cash/movements",
            json={"sessionId": session["id"], "type": "IN", "amount": amount},
            headers=headers,
        )

    listed = api_client.get("/api/cash/sessions", headers=headers).json()["sessions"][0]

    assert [m["amount"] for m in listed["movements"]] == [3.0, 2.0, 1.0]


def test_replace_counts(api_client, sqlite_session, tenant):
    _, _, headers = tenant("cashier")
    session = _open(api_client, headers).json()["session"]
    url = f"/api/cash/sessions/{session['id']}/counts"

    api_client.post(url, json={"counts": [{"denomination": 10, "quantity": 3}]}, headers=headers)
    resp = api_client.post(url, json={"counts": [{"denomination": 5, "quantity": 2}]}, headers=headers)

    assert resp.status_code == 200
    counts = resp.json()["session"]["counts"]
    assert [(c["denomination"], c["quantity"], c["total"]) for c in counts] == [(5.0, 2, 10.0)]

    missing = api_client.post("/api/cash/sessions/nope/counts", json={"counts": []}, headers=headers)
    assert missing.status_code == 404


def test_discrepancy_requires_manager(api_client, sqlite_session, tenant):
    org, cashier, cashier_headers = tenant("cashier")
    _, _, manager_headers = tenant("manager")
    session = _open(api_client, cashier_headers).json()["session"]
    body = {"sessionId": session["id"], "type": "SHORTAGE", "amount": 4.5, "explanation": "miscounted coins"}

    denied = api_client.post("/api/cash/discrepancies", json=body, headers=cashier_headers)
    assert denied.status_code == 403

    created = api_client.post("/api/cash/discrepancies", json=body, headers=manager_headers)
    assert created.status_code == 201
    discrepancy = created.json()["discrepancy"]
    assert discrepancy["sessionId"] == session["id"]
    assert discrepancy["type"] == "SHORTAGE"
    assert discrepancy["amount"] == 4.5

    bad_type = api_client.post(
        "/api/cash/discrepancies",
        json={**body, "type": "THEFT"},
        headers=manager_headers,
    )
    assert bad_type.status_code == 400
    assert bad_type.json()["detail"]["kind"] == "InvalidSessionPayload"


def test_sessions_are_tenant_scoped(api_client, sqlite_session, tenant):
    org, user, headers = tenant("cashier")
    _open(api_client, headers)
    other_org = Organization(name="Other Store")
    sqlite_session.add(other_org)
    sqlite_session.flush()
    other = CashSession(organization_id=other_org.id, status="OPEN", opening_amount=1.0, opened_by=user.id)
    sqlite_session.add(other)
    sqlite_session.commit()

    listed = api_client.get("/api/cash/sessions", headers=headers).json()

    assert other.id not in {s["id"] for s in listed["sessions"]}
    assert listed["pagination"]["total"] == 1


def test_concurrent_open_is_rejected_by_index(api_client, sqlite_session, tenant, monkeypatch):
    org, _, headers = tenant("cashier")
    assert _open(api_client, headers).status_code == 201

    # Second request whose "is anything open?" read ran before the first commit.
    monkeypatch.setattr(cash_session_service, "_find_open_session", lambda db, organization_id: None)
    resp = _open(api_client, headers)

    assert resp.status_code == 400
    assert resp.json()["detail"]["kind"] == "SessionAlreadyOpen"
    sqlite_session.expire_all()
    open_rows = (
        sqlite_session.query(CashSession)
        .filter(CashSession.organization_id == org.id, CashSession.status == "OPEN")
        .count()
    )
    assert open_rows == 1


def test_session_envelopes_carry_only_their_fields(api_client, tenant):
    _, _, headers = tenant("cashier")
    base_fields = {
        "id",
        "status",
        "openingAmount",
        "closingAmount",
        "systemExpected",
        "discrepancyAmount",
        "notes",
        "openedAt",
        "openedBy",
        "closedAt",
        "closedBy",
    }

    opened = _open(api_client, headers).json()["session"]
    current = api_client.get("/api/cash/session/current", headers=headers).json()["session"]
    counted = api_client.post(
        f"/api/cash/sessions/{opened['id']}/counts",
        json={"counts": [{"denomination": 1, "quantity": 4}]},
        headers=headers,
    ).json()["session"]
    closed = api_client.post("/api/cash/session/close", json={"closingAmount": 4}, headers=headers).json()["session"]

    assert set(opened) == base_fields
    assert opened["closingAmount"] is None
    assert set(current) == base_fields
    assert set(closed) == base_fields
    assert set(counted) == base_fields | {"counts"}
