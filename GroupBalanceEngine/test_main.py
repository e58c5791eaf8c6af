from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

import expenses
import main
import members
import settlements
from errors import ConcurrentUpdateError, DataIntegrityError, MembershipError, OutstandingBalanceError
from expenses import Expense
from settlements import Settlement


@pytest.fixture
def client():
    return TestClient(main.app)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_balances_view(client, monkeypatch):
    monkeypatch.setattr(main, "get_group_balances", lambda group_id: {
        "USD": {
            "net_balances": {"A": Decimal("60.00"), "B": Decimal("-30.00"), "C": Decimal("-30.00")},
            "simplified_debts": [
                {"from": "B", "to": "A", "amount": Decimal("30.00")},
                {"from": "C", "to": "A", "amount": Decimal("30.00")},
            ],
        }
    })

    response = client.get("/groups/G1/balances")

    assert response.status_code == 200
    body = response.json()
    assert body["USD"]["netBalances"] == {"A": 60.0, "B": -30.0, "C": -30.0}
    assert body["USD"]["simplifiedDebts"][0] == {"from": "B", "to": "A", "amount": 30.0}


def test_balances_view_reports_integrity_errors(client, monkeypatch):
    def broken(group_id):
        raise DataIntegrityError("expense E001 is invalid", group_id, "E001")

    monkeypatch.setattr(main, "get_group_balances", broken)

    response = client.get("/groups/G1/balances")

    assert response.status_code == 503
    assert "E001" in response.json()["detail"]


def test_create_expense(client, monkeypatch):
    captured = {}

    def fake_add_expense(**kwargs):
        captured.update(kwargs)
        return Expense(
            id="E001", group_id=kwargs["group_id"], payer_id=kwargs["payer_id"],
            participant_ids=kwargs["participant_ids"], split_type="equal",
            splits=[{"participant_id": "A", "amount": Decimal("5.00")},
                    {"participant_id": "B", "amount": Decimal("5.00")}],
            amount=Decimal("10.00"), currency="USD"
        )

    monkeypatch.setattr(main, "add_expense", fake_add_expense)

    response = client.post(
        "/groups/G1/expenses",
        json={"payer_id": "A", "amount": 10, "currency": "USD", "participant_ids": ["A", "B"]},
        headers={"X-User-Id": "A"},
    )

    assert response.status_code == 201
    assert response.json()["splits"][1] == {"participant_id": "B", "amount": 5.0, "percentage": None}
    assert captured["created_by"] == "A"
    assert captured["raw_splits"] is None


def test_create_expense_rejects_bad_currency(client):
    response = client.post(
        "/groups/G1/expenses",
        json={"payer_id": "A", "amount": 10, "currency": "usd", "participant_ids": ["A"]},
    )
    assert response.status_code == 422


def test_update_settlement_forbidden(client, monkeypatch):
    def not_creator(**kwargs):
        raise PermissionError("Only the creator can update settlement S001")

    monkeypatch.setattr(main, "update_settlement", not_creator)

    response = client.put("/groups/G1/settlements/S001", json={"amount": 5}, headers={"X-User-Id": "C"})
    assert response.status_code == 403


def test_create_settlement(client, monkeypatch):
    monkeypatch.setattr(main, "add_settlement", lambda **kwargs: Settlement(
        id="S001", group_id="G1", payer_id="B", payee_id="A",
        amount=Decimal("30.00"), currency="USD", created_by="B"
    ))

    response = client.post(
        "/groups/G1/settlements",
        json={"payer_id": "B", "payee_id": "A", "amount": 30, "currency": "USD"},
    )

    assert response.status_code == 201
    assert response.json()["amount"] == 30.0


def test_delete_settlement_checks_admin(client, monkeypatch):
    calls = []
    monkeypatch.setattr(main, "is_admin", lambda group_id, member_id: member_id == "A")
    monkeypatch.setattr(main, "delete_settlement", lambda *args, **kwargs: calls.append((args, kwargs)))

    response = client.delete("/groups/G1/settlements/S001", headers={"X-User-Id": "A"})

    assert response.status_code == 204
    assert calls == [(("G1", "S001", "A"), {"actor_is_admin": True})]


def test_remove_member_with_balance_is_refused(client, monkeypatch):
    removed = []

    def guard(group_id, member_id, actor_id=None):
        raise OutstandingBalanceError(member_id, {"USD": Decimal("-30.00")})

    monkeypatch.setattr(main, "ensure_member_can_leave", guard)
    monkeypatch.setattr(main, "remove_member", lambda group_id, member_id: removed.append(member_id))

    response = client.delete("/groups/G1/members/B")

    assert response.status_code == 400
    assert "outstanding balance" in response.json()["detail"]
    assert removed == []


def test_remove_settled_member(client, monkeypatch):
    removed = []
    guarded = []
    monkeypatch.setattr(main, "ensure_member_can_leave", lambda group_id, member_id, actor_id=None: guarded.append(actor_id))
    monkeypatch.setattr(main, "remove_member", lambda group_id, member_id: removed.append(member_id))

    response = client.delete("/groups/G1/members/C", headers={"X-User-Id": "A"})

    assert response.status_code == 204
    assert removed == ["C"]
    assert guarded == ["A"]


def test_member_balance_breakdown(client, monkeypatch):
    monkeypatch.setattr(main, "get_member_balance", lambda group_id, member_id: {
        "USD": {"owes": {"A": Decimal("30.00")}, "owed_by": {}, "net_balance": Decimal("-30.00")}
    })

    response = client.get("/groups/G1/members/B/balance")

    assert response.status_code == 200
    usd = response.json()["currencies"][0]
    assert usd["net_balance"] == -30.0
    assert usd["owes"] == [{"member_id": "A", "amount": 30.0, "display": "$30.00"}]
    assert usd["summary"] == "B owes $30.00"


def test_member_balance_unknown_member(client, monkeypatch):
    def missing(group_id, member_id):
        raise LookupError(f"{member_id} is not a member of group {group_id}")

    monkeypatch.setattr(main, "get_member_balance", missing)

    assert client.get("/groups/G1/members/Z/balance").status_code == 404


def test_owner_cannot_be_removed(client, monkeypatch):
    def guard(group_id, member_id, actor_id=None):
        raise MembershipError(f"The owner of group {group_id} cannot leave or be removed")

    monkeypatch.setattr(main, "ensure_member_can_leave", guard)

    response = client.delete("/groups/G1/members/A", headers={"X-User-Id": "A"})

    assert response.status_code == 400
    assert "owner" in response.json()["detail"]


def test_concurrent_update_is_a_conflict(client, monkeypatch):
    def lost_race(**kwargs):
        raise ConcurrentUpdateError("Settlement S001 kept changing during update")

    monkeypatch.setattr(main, "update_settlement", lost_race)

    response = client.put("/groups/G1/settlements/S001", json={"amount": 5}, headers={"X-User-Id": "B"})
    assert response.status_code == 409


def test_balances_after_member_removal(client, store_snapshot, group):
    expenses.add_expense(group, "A", "90.00", "USD", "equal", ["A", "B", "C"])
    settlements.add_settlement(group, "B", "A", "30.00", "USD")

    assert client.delete("/groups/G1/members/C", headers={"X-User-Id": "B"}).status_code == 403
    assert client.delete("/groups/G1/members/B", headers={"X-User-Id": "B"}).status_code == 204
    assert client.delete("/groups/G1/members/A", headers={"X-User-Id": "A"}).status_code == 400

    response = client.get("/groups/G1/balances")

    assert response.status_code == 200
    assert response.json()["USD"]["netBalances"] == {"A": 30.0, "B": 0.0, "C": -30.0}
    assert members.get_member_ids(group) == ["A", "C"]
