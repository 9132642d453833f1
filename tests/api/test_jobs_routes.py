"""Tests for /jobs submission, status and result endpoints."""

import pytest
from fastapi.testclient import TestClient

from shiprate.services.job_service import JobService
from tests.helpers import ALICE, BOB, add_account, add_rate, wait_for_terminal


@pytest.fixture
def rate_card(db):
    account = add_account(db, owner="alice", is_rate_card=True)
    add_rate(db, account.id, service_code="03", zone="2", weight_break="5", rate_amount="8.00")
    return account


def _payload(account_id: str) -> dict:
    return {
        "shipments": [
            {"shipmentId": "A", "originZip": "90001", "destinationZip": "90210",
             "weight": 3, "currentlyPaid": "12.00", "zone": 2, "orderRef": "PO-1",
             "declaredService": "UPS 2nd Day Air"},
            {"shipmentId": "B", "originZip": "90001", "destinationZip": "90210",
             "weight": 3, "currentlyPaid": "12.00", "zone": "9"},
            {"shipmentId": "C", "originZip": "90001", "destinationZip": "90210",
             "weight": 3, "currentlyPaid": 5, "zone": "2"},
        ],
        "carrierAccountIds": [account_id],
    }


class TestSubmit:
    """Tests for POST /jobs."""

    def test_accepted_with_job_id(self, client: TestClient, rate_card):
        response = client.post("/jobs", json=_payload(rate_card.id), headers=ALICE)

        assert response.status_code == 202
        assert set(response.json()) == {"jobId"}

    def test_job_runs_to_completion(self, client: TestClient, rate_card):
        job_id = client.post("/jobs", json=_payload(rate_card.id), headers=ALICE).json()["jobId"]

        status = wait_for_terminal(client, job_id, ALICE)

        assert status == {
            "jobId": job_id,
            "status": "completed",
            "processedCount": 3,
            "totalCount": 3,
            "orphanedCount": 1,
            "error": None,
        }

    def test_malformed_body_is_400(self, client: TestClient):
        response = client.post("/jobs", json={"shipments": "nope"}, headers=ALICE)

        assert response.status_code == 400
        body = response.json()
        assert body["error_code"] == "E-2001"
        assert body["details"]["errors"]

    def test_empty_shipments_is_400(self, client: TestClient, rate_card):
        payload = {"shipments": [], "carrierAccountIds": [rate_card.id]}
        assert client.post("/jobs", json=payload, headers=ALICE).status_code == 400

    def test_non_positive_weight_is_400(self, client: TestClient, rate_card):
        payload = _payload(rate_card.id)
        payload["shipments"][0]["weight"] = 0
        assert client.post("/jobs", json=payload, headers=ALICE).status_code == 400

    def test_duplicate_shipment_ids_is_400(self, client: TestClient, rate_card, db):
        payload = _payload(rate_card.id)
        payload["shipments"][1]["shipmentId"] = "A"

        response = client.post("/jobs", json=payload, headers=ALICE)

        assert response.status_code == 400
        assert response.json()["error_code"] == "E-2003"
        assert JobService(db).list_jobs() == []

    def test_unknown_account_is_400(self, client: TestClient):
        response = client.post("/jobs", json=_payload("no-such-account"), headers=ALICE)
        assert response.status_code == 400
        assert response.json()["error_code"] == "E-2002"

    def test_another_owners_account_is_400(self, client: TestClient, rate_card):
        response = client.post("/jobs", json=_payload(rate_card.id), headers=BOB)
        assert response.status_code == 400
        assert response.json()["error_code"] == "E-2002"

    def test_missing_ids_default_to_position(self, client: TestClient, rate_card):
        payload = _payload(rate_card.id)
        for shipment in payload["shipments"]:
            del shipment["shipmentId"]

        job_id = client.post("/jobs", json=payload, headers=ALICE).json()["jobId"]
        wait_for_terminal(client, job_id, ALICE)
        body = client.get(f"/jobs/{job_id}/results", headers=ALICE).json()

        ids = {r["shipmentId"] for r in body["results"] + body["orphaned"]}
        assert ids == {"1", "2", "3"}


class TestStatus:
    def test_unknown_job_is_404(self, client: TestClient):
        response = client.get("/jobs/does-not-exist", headers=ALICE)
        assert response.status_code == 404
        assert "not found" in response.json()["detail"]

    def test_other_owners_job_is_404(self, client: TestClient, rate_card):
        job_id = client.post("/jobs", json=_payload(rate_card.id), headers=ALICE).json()["jobId"]
        wait_for_terminal(client, job_id, ALICE)

        assert client.get(f"/jobs/{job_id}", headers=BOB).status_code == 404
        assert client.get(f"/jobs/{job_id}/results", headers=BOB).status_code == 404

    def test_failed_job_reports_error(self, client: TestClient, db):
        account = add_account(db, owner="alice", carrier_type="dhl", credentials_ref="DHL")
        payload = _payload(account.id)

        job_id = client.post("/jobs", json=payload, headers=ALICE).json()["jobId"]
        status = wait_for_terminal(client, job_id, ALICE)

        assert status["status"] == "failed"
        assert status["error"].startswith("E-4002:")


class TestResults:
    def test_priced_and_orphaned_listed_separately(self, client: TestClient, rate_card):
        job_id = client.post("/jobs", json=_payload(rate_card.id), headers=ALICE).json()["jobId"]
        wait_for_terminal(client, job_id, ALICE)

        body = client.get(f"/jobs/{job_id}/results", headers=ALICE).json()

        assert body["status"] == "completed"
        priced = {r["shipmentId"]: r for r in body["results"]}
        assert priced["A"]["bestAmount"] == "8.00"
        assert priced["A"]["savings"] == "4.00"
        assert priced["A"]["source"] == "rate_card"
        assert priced["A"]["passthrough"] == {"orderRef": "PO-1"}
        assert priced["A"]["declaredService"] == "UPS 2nd Day Air"
        assert priced["A"]["serviceName"] == "UPS Ground"
        assert priced["C"]["declaredService"] is None
        assert priced["C"]["savings"] == "-3.00"
        assert [r["shipmentId"] for r in body["orphaned"]] == ["B"]
        assert body["orphaned"][0]["orphanReason"]

    def test_pagination(self, client: TestClient, rate_card):
        job_id = client.post("/jobs", json=_payload(rate_card.id), headers=ALICE).json()["jobId"]
        wait_for_terminal(client, job_id, ALICE)

        body = client.get(f"/jobs/{job_id}/results?limit=1&offset=1", headers=ALICE).json()

        assert len(body["results"]) == 1
        assert body["orphaned"] == []
        assert body["limit"] == 1


class TestShipmentRates:
    def test_rates_listed_cheapest_first(self, client: TestClient, rate_card, db):
        add_rate(db, rate_card.id, service_code="02", rate_amount="11.50", service_name="UPS 2nd Day Air")
        job_id = client.post("/jobs", json=_payload(rate_card.id), headers=ALICE).json()["jobId"]
        wait_for_terminal(client, job_id, ALICE)

        response = client.get(f"/jobs/{job_id}/shipments/A/rates", headers=ALICE)

        assert response.status_code == 200
        body = response.json()
        assert body["shipmentId"] == "A"
        assert [(r["serviceCode"], r["amount"]) for r in body["rates"]] == [
            ("03", "8.00"),
            ("02", "11.50"),
        ]
        assert body["rates"][0]["carrierAccountId"] == rate_card.id
        assert body["rates"][0]["source"] == "rate_card"

    def test_orphaned_shipment_has_no_rates(self, client: TestClient, rate_card):
        job_id = client.post("/jobs", json=_payload(rate_card.id), headers=ALICE).json()["jobId"]
        wait_for_terminal(client, job_id, ALICE)

        body = client.get(f"/jobs/{job_id}/shipments/B/rates", headers=ALICE).json()

        assert body["rates"] == []

    def test_other_owners_job_is_404(self, client: TestClient, rate_card):
        job_id = client.post("/jobs", json=_payload(rate_card.id), headers=ALICE).json()["jobId"]
        wait_for_terminal(client, job_id, ALICE)

        response = client.get(f"/jobs/{job_id}/shipments/A/rates", headers=BOB)

        assert response.status_code == 404

class TestListJobs:
    def test_lists_only_own_jobs(self, client: TestClient, rate_card, db):
        JobService(db).create_job("bob", 1, ["x"])
        job_id = client.post("/jobs", json=_payload(rate_card.id), headers=ALICE).json()["jobId"]
        wait_for_terminal(client, job_id, ALICE)

        body = client.get("/jobs", headers=ALICE).json()

        assert body["total"] == 1
        job = body["jobs"][0]
        assert job["id"] == job_id
        assert job["totalSavings"] == "1.00"
        assert job["carrierAccountIds"] == [rate_card.id]
