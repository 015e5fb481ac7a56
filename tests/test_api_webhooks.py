from fastapi.testclient import TestClient

from conftest import FakeResult, entity_handler, insert_handler, make_loan
from salary_advance.main import app
from salary_advance.models.c2b_transaction import C2BTransaction
from salary_advance.models.loan import Loan
from salary_advance.services import gateway_results

client = TestClient(app)

C2B_BODY = {
    "TransactionType": "Pay Bill",
    "TransID": "QK12ABC345",
    "TransTime": "20260315120509",
    "TransAmount": "5000.00",
    "BusinessShortCode": "600000",
    "BillRefNumber": "0722123456",
    "MSISDN": "254722123456",
    "FirstName": "Jane",
}


def test_c2b_confirmation_is_acknowledged_without_envelope(override_deps, fake_db):
    fake_db.on_execute(insert_handler(C2BTransaction, FakeResult(scalar=501)))

    response = client.post("/api/v1/mpesa/1/c2b-confirmation", json=C2B_BODY)

    assert response.status_code == 200
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    assert fake_db.commits == 1


def test_redelivered_c2b_confirmation_is_ignored(override_deps, fake_db):
    fake_db.on_execute(insert_handler(C2BTransaction, FakeResult(scalar=None)))
    response = client.post("/api/v1/mpesa/1/c2b-confirmation", json=C2B_BODY)
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Duplicate ignored"}


def test_malformed_callbacks_still_get_200(override_deps, fake_db):
    invalid = client.post("/api/v1/mpesa/1/c2b-confirmation", json={"TransID": "X"})
    not_json = client.post(
        "/api/v1/mpesa/b2c-result", content=b"<xml/>", headers={"content-type": "application/xml"}
    )

    for response in (invalid, not_json):
        assert response.status_code == 200
        assert response.json() == {"ResultCode": 0, "ResultDesc": "Received"}
    assert fake_db.rollbacks == 2
    assert fake_db.inserts_into(C2BTransaction) == []


def test_handler_failure_is_rolled_back_and_acknowledged(monkeypatch, override_deps, fake_db):
    async def _boom(db, body):
        raise RuntimeError("deadlock detected")

    monkeypatch.setattr(gateway_results, "handle_b2c_result", _boom)

    response = client.post("/api/v1/mpesa/b2c-result", json={"Result": {"ResultCode": 0}})

    assert response.status_code == 200
    assert response.json()["ResultDesc"] == "Received"
    assert fake_db.rollbacks == 1


def test_duplicate_b2c_result_reports_already_processed(override_deps, fake_db):
    loan = make_loan(status="DISBURSED", originator_conversation_id="oc-1", mpesa_status="SUCCESS")
    fake_db.on_execute(entity_handler(Loan, FakeResult(scalar=loan)))

    response = client.post(
        "/api/v1/mpesa/b2c-result",
        json={"Result": {"ResultType": 0, "ResultCode": 0, "OriginatorConversationID": "oc-1"}},
    )

    assert response.json() == {"ResultCode": 0, "ResultDesc": "Result already processed"}
    assert fake_db.commits == 0


def test_balance_timeout_needs_no_database():
    response = client.post(
        "/api/v1/mpesa/accountbalance-timeout",
        json={"Result": {"ResultCode": 1, "OriginatorConversationID": "bal-1"}},
    )
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Timeout acknowledged"}
