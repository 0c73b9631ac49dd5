"""Unit tests for the ingestion service."""

from unittest.mock import Mock

import pytest

from collector.errors import ClientError, RateLimitError, StorageError
from collector.ingestion import (
    Accepted,
    DropReason,
    Dropped,
    IngestionService,
    evaluate_request,
)
from collector.rate_limiter import SlidingWindowRateLimiter
from collector.schemas import BatchSubmission, PrivacyLevel, RequestData
from tests.conftest import RecordingGateway, make_payload, make_request, stored_rows


def submission(requests=None, **overrides) -> BatchSubmission:
    return BatchSubmission(**make_payload(requests, **overrides))


class TestEvaluateRequest:
    """Test validation and redaction of a single request."""

    def test_valid_request_accepted(self, lookup):
        outcome = evaluate_request(RequestData(**make_request()), PrivacyLevel.P1, lookup)

        assert isinstance(outcome, Accepted)
        assert outcome.row.method == 0
        assert outcome.row.ip_address == "8.8.8.8"
        assert outcome.row.location == "US"

    @pytest.mark.parametrize(
        "overrides, reason",
        [
            ({"method": "BOGUS"}, DropReason.UNKNOWN_METHOD),
            ({"user_agent": "bad\x00agent"}, DropReason.INVALID_USER_AGENT),
            ({"user_id": "line\nbreak"}, DropReason.INVALID_USER_ID),
            ({"hostname": "bad host"}, DropReason.INVALID_HOSTNAME),
            ({"path": "/has space"}, DropReason.INVALID_PATH),
            ({"created_at": "last tuesday"}, DropReason.INVALID_CREATED_AT),
        ],
    )
    def test_drop_reasons(self, lookup, overrides, reason):
        outcome = evaluate_request(
            RequestData(**make_request(**overrides)), PrivacyLevel.P1, lookup
        )

        assert isinstance(outcome, Dropped)
        assert outcome.reason is reason

    def test_dropped_user_agent_kept_for_diagnostics(self, lookup):
        outcome = evaluate_request(
            RequestData(**make_request(user_agent="bad\x00agent")), PrivacyLevel.P1, lookup
        )

        assert outcome.user_agent == "bad\x00agent"

    def test_missing_fields_normalised(self, lookup):
        outcome = evaluate_request(
            RequestData(method="GET", ip_address=None, status=404), PrivacyLevel.P1, lookup
        )

        assert isinstance(outcome, Accepted)
        assert outcome.row.ip_address == ""
        assert outcome.row.path == ""
        assert outcome.row.response_time == 0
        assert outcome.row.status == 404

    def test_missing_method_dropped(self, lookup):
        outcome = evaluate_request(RequestData(path="/x"), PrivacyLevel.P1, lookup)

        assert outcome == Dropped(DropReason.UNKNOWN_METHOD)

    def test_long_fields_truncated(self, lookup):
        outcome = evaluate_request(
            RequestData(**make_request(path="/" + "a" * 400, user_agent="u" * 400)),
            PrivacyLevel.P1,
            lookup,
        )

        assert isinstance(outcome, Accepted)
        assert len(outcome.row.path) == 255
        assert len(outcome.row.user_agent) == 255

    def test_missing_user_id_stored_empty(self, lookup):
        outcome = evaluate_request(RequestData(**make_request()), PrivacyLevel.P1, lookup)

        assert outcome.row.user_id == ""

    def test_dropped_request_skips_country_lookup(self, lookup):
        evaluate_request(RequestData(**make_request(method="BOGUS")), PrivacyLevel.P1, lookup)

        assert lookup.calls == []


class TestPrepare:
    """Test batch-level checks."""

    def test_missing_api_key(self, service):
        with pytest.raises(ClientError, match="API key required"):
            service.prepare(submission(api_key=""))

    def test_empty_batch(self, service):
        with pytest.raises(ClientError, match="no logged requests"):
            service.prepare(submission(requests=[]))

    def test_unknown_framework_skips_request_processing(self, gateway):
        lookup = Mock()
        service = IngestionService(
            SlidingWindowRateLimiter(limit=10, window_seconds=60), lookup, gateway
        )

        with pytest.raises(ClientError, match="Unsupported API framework"):
            service.prepare(submission(framework="Unknown"))
        lookup.lookup_country.assert_not_called()

    def test_rate_limit_checked_before_request_work(self, lookup, gateway):
        limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60)
        service = IngestionService(limiter, lookup, gateway)
        service.prepare(submission())
        lookup.calls.clear()

        with pytest.raises(RateLimitError):
            service.prepare(submission())
        assert lookup.calls == []

    def test_rate_limit_applies_before_empty_check(self, lookup, gateway):
        limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60)
        service = IngestionService(limiter, lookup, gateway)
        limiter.admit("k1")

        with pytest.raises(RateLimitError):
            service.prepare(submission(requests=[]))

    def test_report_records_every_request(self, service):
        report = service.prepare(
            submission(
                requests=[
                    make_request(),
                    make_request(method="BOGUS"),
                    make_request(path="/ok"),
                ]
            )
        )

        assert report.total == 3
        assert len(report.accepted) == 2
        assert [d.reason for d in report.dropped] == [DropReason.UNKNOWN_METHOD]

    def test_requests_past_ceiling_marked(self, lookup, gateway):
        service = IngestionService(
            SlidingWindowRateLimiter(limit=10, window_seconds=60), lookup, gateway, max_insert=2
        )

        report = service.prepare(submission(requests=[make_request() for _ in range(5)]))

        assert len(report.accepted) == 2
        assert [d.reason for d in report.dropped] == [DropReason.OVER_CEILING] * 3

    def test_ceiling_counts_accepted_requests_only(self, lookup, gateway):
        service = IngestionService(
            SlidingWindowRateLimiter(limit=10, window_seconds=60), lookup, gateway, max_insert=2
        )

        report = service.prepare(
            submission(
                requests=[make_request(method="BOGUS"), make_request(), make_request()]
            )
        )

        assert len(report.accepted) == 2


class TestIngest:
    """Test the full ingest path."""

    @pytest.mark.asyncio
    async def test_inserts_accepted_rows(self, service, gateway):
        report = await service.ingest(submission())

        assert report.inserted == 1
        assert len(gateway.batches) == 1
        row = stored_rows(gateway.batches[0])[0]
        assert row["api_key"] == "k1"
        assert row["framework"] == 1
        assert row["ip_address"] == "8.8.8.8"
        assert row["location"] == "US"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "level, ip_address, location",
        [(1, "8.8.8.8", "US"), (2, "", "US"), (3, "", "")],
    )
    async def test_privacy_levels(self, service, gateway, level, ip_address, location):
        await service.ingest(submission(privacy_level=level))

        row = stored_rows(gateway.batches[0])[0]
        assert row["ip_address"] == ip_address
        assert row["location"] == location

    @pytest.mark.asyncio
    async def test_nothing_valid_means_no_write(self, service, gateway):
        with pytest.raises(ClientError, match="Invalid request data"):
            await service.ingest(submission(requests=[make_request(method="BOGUS")]))

        assert gateway.batches == []

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self, rate_limiter, lookup, failing_gateway):
        service = IngestionService(rate_limiter, lookup, failing_gateway)

        with pytest.raises(StorageError):
            await service.ingest(submission())

    @pytest.mark.asyncio
    async def test_storage_timeout(self, rate_limiter, lookup):
        service = IngestionService(
            rate_limiter, lookup, RecordingGateway(delay=0.5), storage_timeout=0.05
        )

        with pytest.raises(StorageError):
            await service.ingest(submission())
