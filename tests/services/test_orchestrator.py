"""Tests for JobOrchestrator end-to-end job runs.

Jobs run against a real file-based SQLite database; the remote carrier
client is replaced by FakeClient through client_factory.
"""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from shiprate.config import EngineConfig, ShipRateConfig
from shiprate.db.models import JobStatus, RateSource
from shiprate.errors import NotFoundError, ValidationError
from shiprate.services.carrier_client import RemoteRateClient
from shiprate.services.credentials import CarrierCredentials
from shiprate.services.errors import AuthError, StorageError
from shiprate.services.job_service import JobService
from shiprate.services.models import RateCandidate
from shiprate.services.orchestrator import (
    ACCOUNTS_DISABLED_REASON,
    NO_RATE_REASON,
    JobOrchestrator,
    service_codes_for,
    validate_submission,
)
from tests.helpers import add_account, add_rate, make_account_config, make_shipment


class FakeClient:
    """Stands in for RemoteRateClient.

    Rejects the accounts in `rejected` and fails with an unexpected
    exception for the accounts in `crashing`.
    """

    def __init__(
        self,
        amount: str = "9.50",
        rejected: tuple[str, ...] = (),
        crashing: tuple[str, ...] = (),
    ) -> None:
        self.amount = Decimal(amount)
        self.rejected = set(rejected)
        self.crashing = set(crashing)
        self.calls: list[tuple[str, str]] = []
        self.closed = False

    async def quote(self, shipment, account, service_codes):
        self.calls.append((shipment.shipment_id, account.id))
        if account.id in self.rejected:
            raise AuthError.from_code(
                "E-5001", carrier=account.carrier_type, account_id=account.id, reason="HTTP 401"
            )
        if account.id in self.crashing:
            raise AttributeError("'str' object has no attribute 'get'")
        return [
            RateCandidate(
                carrier_account_id=account.id,
                carrier_type=account.carrier_type,
                service_code=service_codes[0],
                service_name="API service",
                amount=self.amount,
                source=RateSource.carrier_api,
            )
        ]

    async def aclose(self) -> None:
        self.closed = True


class BlockingClient(FakeClient):
    """Never answers; lets a test cancel a job mid-flight."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()

    async def quote(self, shipment, account, service_codes):
        self.started.set()
        await asyncio.Event().wait()


class FailingStore:
    async def append(self, job_id, batch):
        raise StorageError.from_code("E-4001", reason="disk full")


def _config(**engine) -> ShipRateConfig:
    engine.setdefault("concurrency", 1)
    return ShipRateConfig(engine=EngineConfig(**engine))


@pytest.fixture
def orchestrator(session_factory):
    return JobOrchestrator(session_factory, _config())


@pytest.fixture
def rate_card(db):
    account = add_account(db, is_rate_card=True)
    add_rate(db, account.id, service_code="03", zone="2", weight_break="5", rate_amount="8.00")
    return account


def _status(orchestrator, job_id):
    return orchestrator.get_status(job_id)


class TestRateCardJob:
    """Three shipments priced purely from a rate table."""

    async def test_priced_orphaned_and_negative_savings(self, orchestrator, rate_card):
        shipments = [
            make_shipment("A", weight="3", currently_paid="12.00", zone="2"),
            make_shipment("B", weight="3", currently_paid="12.00", zone="9"),
            make_shipment("C", weight="3", currently_paid="5.00", zone="2"),
        ]

        job_id = await orchestrator.submit("alice", shipments, [rate_card.id])
        await orchestrator.wait(job_id)

        status = _status(orchestrator, job_id)
        assert status["status"] == "completed"
        assert status["processed_count"] == status["total_count"] == 3
        assert status["orphaned_count"] == 1
        assert status["error"] is None

        rows = {r.shipment_id: r for r in orchestrator.result_store.list_results(job_id)}
        assert rows["A"].best_amount == Decimal("8.00")
        assert rows["A"].savings == Decimal("4.00")
        assert rows["A"].source == "rate_card"
        assert rows["B"].orphaned is True
        assert rows["B"].orphan_reason == NO_RATE_REASON
        assert rows["C"].savings == Decimal("-3.00")

    async def test_empty_rate_table_warns_and_orphans(self, orchestrator, db, caplog):
        empty = add_account(db, is_rate_card=True)

        with caplog.at_level("WARNING", logger="shiprate.services.orchestrator"):
            job_id = await orchestrator.submit("alice", [make_shipment("A")], [empty.id])
            await orchestrator.wait(job_id)

        assert f"Rate-card account {empty.id} has no rate table entries" in caplog.text
        assert _status(orchestrator, job_id)["status"] == "completed"
        assert orchestrator.result_store.list_results(job_id)[0].orphaned is True

    async def test_summary_recorded(self, orchestrator, rate_card, session_factory):
        shipments = [
            make_shipment("A", currently_paid="12.00"),
            make_shipment("C", currently_paid="5.00"),
        ]
        job_id = await orchestrator.submit("alice", shipments, [rate_card.id])
        await orchestrator.wait(job_id)

        db = session_factory()
        try:
            job = JobService(db).get_job(job_id)
            assert job.total_current_cost == Decimal("17.00")
            assert job.total_best_cost == Decimal("16.00")
            assert job.total_savings == Decimal("1.00")
            assert job.started_at is not None
            assert job.completed_at is not None
        finally:
            db.close()

    async def test_submit_returns_before_processing(self, orchestrator, rate_card):
        job_id = await orchestrator.submit("alice", [make_shipment()], [rate_card.id])

        assert _status(orchestrator, job_id)["status"] in ("pending", "in_progress")
        assert orchestrator.active_job_count == 1

        await orchestrator.wait(job_id)
        assert orchestrator.active_job_count == 0

    async def test_many_shipments_across_flushes(self, session_factory, rate_card):
        orchestrator = JobOrchestrator(
            session_factory, _config(concurrency=4, persist_batch_size=3)
        )
        shipments = [make_shipment(f"S{n}") for n in range(1, 11)]

        job_id = await orchestrator.submit("alice", shipments, [rate_card.id])
        await orchestrator.wait(job_id)

        assert _status(orchestrator, job_id)["status"] == "completed"
        assert orchestrator.result_store.count(job_id) == 10


class TestRemoteAccounts:
    async def test_auth_failure_skips_account_for_rest_of_job(self, session_factory, db):
        rejected = add_account(db, carrier_type="ups", credentials_ref="UPS_BAD")
        working = add_account(db, carrier_type="fedex", credentials_ref="FEDEX_OK")
        client = FakeClient(amount="9.50", rejected=(rejected.id,))
        orchestrator = JobOrchestrator(session_factory, _config(), client_factory=lambda c: client)

        shipments = [make_shipment(f"S{n}", currently_paid="10.00") for n in range(1, 4)]
        job_id = await orchestrator.submit("alice", shipments, [rejected.id, working.id])
        await orchestrator.wait(job_id)

        assert _status(orchestrator, job_id)["status"] == "completed"
        assert [c for c in client.calls if c[1] == rejected.id] == [("S1", rejected.id)]
        assert len([c for c in client.calls if c[1] == working.id]) == 3
        rows = orchestrator.result_store.list_results(job_id)
        assert all(r.carrier_account_id == working.id for r in rows)
        assert all(r.savings == Decimal("0.50") for r in rows)
        assert client.closed

    async def test_all_accounts_rejected_orphans_with_reason(self, session_factory, db):
        rejected = add_account(db, credentials_ref="UPS_BAD")
        client = FakeClient(rejected=(rejected.id,))
        orchestrator = JobOrchestrator(session_factory, _config(), client_factory=lambda c: client)

        job_id = await orchestrator.submit("alice", [make_shipment("S1")], [rejected.id])
        await orchestrator.wait(job_id)

        status = _status(orchestrator, job_id)
        assert status["status"] == "completed"
        assert status["orphaned_count"] == 1
        row = orchestrator.result_store.list_results(job_id)[0]
        assert row.orphan_reason == ACCOUNTS_DISABLED_REASON

    async def test_covered_rate_card_skips_api(self, session_factory, db):
        card = add_account(db, is_rate_card=True, credentials_ref="UPS_MAIN")
        add_rate(db, card.id, rate_amount="8.00")
        client = FakeClient(amount="8.00")
        orchestrator = JobOrchestrator(session_factory, _config(), client_factory=lambda c: client)

        job_id = await orchestrator.submit("alice", [make_shipment("S1")], [card.id])
        await orchestrator.wait(job_id)

        assert client.calls == []
        assert orchestrator.result_store.list_results(job_id)[0].source == "rate_card"

    async def test_rate_card_falls_back_to_api_without_coverage(self, session_factory, db):
        card = add_account(db, is_rate_card=True, credentials_ref="UPS_MAIN")
        add_rate(db, card.id, zone="2")
        client = FakeClient(amount="11.00")
        orchestrator = JobOrchestrator(session_factory, _config(), client_factory=lambda c: client)

        job_id = await orchestrator.submit("alice", [make_shipment("S1", zone="7")], [card.id])
        await orchestrator.wait(job_id)

        assert client.calls == [("S1", card.id)]
        row = orchestrator.result_store.list_results(job_id)[0]
        assert row.source == "carrier_api"
        assert row.best_amount == Decimal("11.00")

    async def test_cheapest_across_sources(self, session_factory, db, rate_card):
        api = add_account(db, carrier_type="fedex", credentials_ref="FEDEX_OK")
        client = FakeClient(amount="7.25")
        orchestrator = JobOrchestrator(session_factory, _config(), client_factory=lambda c: client)

        job_id = await orchestrator.submit("alice", [make_shipment("S1")], [rate_card.id, api.id])
        await orchestrator.wait(job_id)

        row = orchestrator.result_store.list_results(job_id)[0]
        assert row.carrier_account_id == api.id
        assert row.best_amount == Decimal("7.25")
        assert row.candidate_count == 2

    async def test_account_crash_keeps_other_candidates(self, session_factory, db, rate_card):
        """An unexpected error from one account leaves the rate-card quote in place."""
        broken = add_account(db, carrier_type="ups", credentials_ref="UPS_MAIN")
        working = add_account(db, carrier_type="fedex", credentials_ref="FEDEX_OK")
        client = FakeClient(amount="9.00", crashing=(broken.id,))
        orchestrator = JobOrchestrator(session_factory, _config(), client_factory=lambda c: client)

        job_id = await orchestrator.submit(
            "alice", [make_shipment("S1")], [rate_card.id, broken.id, working.id]
        )
        await orchestrator.wait(job_id)

        row = orchestrator.result_store.list_results(job_id)[0]
        assert row.orphaned is False
        assert row.best_amount == Decimal("8.00")
        assert row.source == "rate_card"
        assert row.candidate_count == 2

    async def test_malformed_carrier_reply_skips_only_that_service(
        self, session_factory, db, rate_card
    ):
        """A garbled UPS reply for one service neither orphans the shipment nor stops other services."""
        ups = add_account(db, carrier_type="ups", credentials_ref="UPS_MAIN", enabled_services=["03", "02"])

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/security/v1/oauth/token":
                return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
            code = json.loads(request.content)["RateRequest"]["Shipment"]["Service"]["Code"]
            if code == "03":
                return httpx.Response(200, json={"RateResponse": {"RatedShipment": ["oops"]}})
            return httpx.Response(200, json={"RateResponse": {"RatedShipment": {
                "Service": {"Code": code},
                "TotalCharges": {"CurrencyCode": "USD", "MonetaryValue": "9.00"},
            }}})

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        orchestrator = JobOrchestrator(
            session_factory,
            _config(),
            client_factory=lambda carriers: RemoteRateClient(
                carriers,
                http_client=http_client,
                credential_resolver=lambda account: CarrierCredentials("id", "secret"),
            ),
        )

        try:
            job_id = await orchestrator.submit("alice", [make_shipment("S1")], [rate_card.id, ups.id])
            await orchestrator.wait(job_id)
        finally:
            await http_client.aclose()

        row = orchestrator.result_store.list_results(job_id)[0]
        assert row.orphaned is False
        assert row.best_amount == Decimal("8.00")
        assert row.candidate_count == 2
        rates = orchestrator.result_store.list_rates(job_id, "S1")
        assert {(r.carrier_account_id, r.service_code) for r in rates} == {
            (rate_card.id, "03"),
            (ups.id, "02"),
        }


class TestJobFailures:
    async def test_unsupported_carrier_fails_job(self, orchestrator, db):
        account = add_account(db, carrier_type="dhl", credentials_ref="DHL")

        job_id = await orchestrator.submit("alice", [make_shipment()], [account.id])
        await orchestrator.wait(job_id)

        status = _status(orchestrator, job_id)
        assert status["status"] == "failed"
        assert status["error"].startswith("E-4002:")

    async def test_storage_failure_fails_job(self, session_factory, rate_card):
        orchestrator = JobOrchestrator(
            session_factory, _config(persist_batch_size=1, max_flush_failures=1)
        )
        orchestrator.result_store = FailingStore()
        shipments = [make_shipment(f"S{n}") for n in range(1, 4)]

        job_id = await orchestrator.submit("alice", shipments, [rate_card.id])
        await orchestrator.wait(job_id)

        status = orchestrator.get_status(job_id)
        assert status["status"] == "failed"
        assert status["error"].startswith("E-4001:")

    async def test_shutdown_fails_running_job(self, session_factory, db):
        account = add_account(db, credentials_ref="UPS_MAIN")
        client = BlockingClient()
        orchestrator = JobOrchestrator(session_factory, _config(), client_factory=lambda c: client)

        job_id = await orchestrator.submit("alice", [make_shipment()], [account.id])
        await asyncio.wait_for(client.started.wait(), timeout=5)
        await orchestrator.shutdown()

        status = orchestrator.get_status(job_id)
        assert status["status"] == "failed"
        assert status["error"].startswith("E-4003:")
        assert client.closed

    def test_recover_interrupted_jobs(self, orchestrator, db):
        jobs = JobService(db)
        pending = jobs.create_job("alice", 1, ["a"])

        assert orchestrator.recover_interrupted_jobs() == 1
        assert orchestrator.get_status(pending.id)["error"].startswith("E-4003:")


class TestSubmissionValidation:
    async def test_unknown_account(self, orchestrator):
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.submit("alice", [make_shipment()], ["nope"])
        assert exc_info.value.code == "E-2002"

    async def test_foreign_account(self, orchestrator, db):
        bobs = add_account(db, owner="bob", is_rate_card=True)
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.submit("alice", [make_shipment()], [bobs.id])
        assert exc_info.value.details == {"account_ids": [bobs.id]}

    async def test_inactive_account(self, orchestrator, db):
        account = add_account(db, is_rate_card=True, is_active=False)
        with pytest.raises(ValidationError):
            await orchestrator.submit("alice", [make_shipment()], [account.id])

    async def test_no_job_created_on_rejection(self, orchestrator, db):
        with pytest.raises(ValidationError):
            await orchestrator.submit("alice", [], ["acct"])
        assert JobService(db).list_jobs() == []

    @pytest.mark.parametrize(
        "shipments,account_ids,code",
        [
            ([], ["a"], "E-2001"),
            ([make_shipment("S1")], [], "E-2001"),
            ([make_shipment("S1")], ["a", "a"], "E-2001"),
            ([make_shipment("S1"), make_shipment("S1")], ["a"], "E-2003"),
            ([make_shipment("S1", weight="0")], ["a"], "E-2001"),
            ([make_shipment("S1", currently_paid="-1")], ["a"], "E-2001"),
        ],
    )
    def test_validate_submission(self, shipments, account_ids, code):
        with pytest.raises(ValidationError) as exc_info:
            validate_submission(shipments, account_ids)
        assert exc_info.value.code == code

    def test_zero_currently_paid_allowed(self):
        validate_submission([make_shipment("S1", currently_paid="0")], ["a"])


class TestStatusLookup:
    def test_unknown_job(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.get_status("missing")

    def test_foreign_job(self, orchestrator, db):
        job = JobService(db).create_job("bob", 1, ["a"])
        with pytest.raises(NotFoundError):
            orchestrator.get_status(job.id, owner="alice")
        assert orchestrator.get_status(job.id, owner="bob")["status"] == JobStatus.pending.value


class TestServiceCodes:
    def test_shipment_codes_win(self):
        account = make_account_config()
        assert service_codes_for(make_shipment(service_codes=("02",)), account) == ["02"]

    def test_enabled_services_then_defaults(self):
        assert service_codes_for(make_shipment(), make_account_config(enabled_services=("03",))) == ["03"]
        assert "03" in service_codes_for(make_shipment(), make_account_config())

    def test_enabled_services_filter_shipment_codes(self):
        account = make_account_config(enabled_services=("03",))
        assert service_codes_for(make_shipment(service_codes=("02",)), account) == []
