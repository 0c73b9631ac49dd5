"""Batch ingestion: admission, per-request validation, redaction and insert.

A batch is rejected as a whole only for batch-level problems (missing key,
rate limit, empty list, unknown framework, nothing valid left, storage
failure). A bad individual request is dropped and the rest carry on; each
request's fate is recorded in the returned ``IngestionReport``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from collector.errors import ClientError, RateLimitError, StorageError
from collector.privacy import CountryLookup, redact
from collector.rate_limiter import SlidingWindowRateLimiter
from collector.schemas import BatchSubmission, PrivacyLevel, RequestData
from collector.storage import MAX_INSERT, StorageGateway, StoredRow, build_batch_insert
from collector.validation import (
    framework_code,
    method_code,
    parse_created_at,
    truncate,
    valid_hostname,
    valid_path,
    valid_user_agent,
    valid_user_id,
)

logger = logging.getLogger(__name__)


class DropReason(str, Enum):
    UNKNOWN_METHOD = "unknown_method"
    INVALID_USER_AGENT = "invalid_user_agent"
    INVALID_USER_ID = "invalid_user_id"
    INVALID_HOSTNAME = "invalid_hostname"
    INVALID_PATH = "invalid_path"
    INVALID_CREATED_AT = "invalid_created_at"
    OVER_CEILING = "over_ceiling"


@dataclass(frozen=True)
class Accepted:
    row: StoredRow


@dataclass(frozen=True)
class Dropped:
    reason: DropReason
    user_agent: str = ""


EventOutcome = Accepted | Dropped


@dataclass
class IngestionReport:
    api_key: str
    framework: int
    outcomes: list[EventOutcome] = field(default_factory=list)
    inserted: int = 0

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def accepted(self) -> list[StoredRow]:
        return [o.row for o in self.outcomes if isinstance(o, Accepted)]

    @property
    def dropped(self) -> list[Dropped]:
        return [o for o in self.outcomes if isinstance(o, Dropped)]

    @property
    def bad_user_agents(self) -> list[str]:
        return [
            o.user_agent
            for o in self.dropped
            if o.reason is DropReason.INVALID_USER_AGENT
        ]


def evaluate_request(
    request: RequestData, privacy_level: PrivacyLevel, lookup: CountryLookup
) -> EventOutcome:
    """Validate and redact one logged request."""
    method = method_code(request.method)
    if method is None:
        return Dropped(DropReason.UNKNOWN_METHOD)

    user_agent = truncate(request.user_agent)
    if not valid_user_agent(user_agent):
        return Dropped(DropReason.INVALID_USER_AGENT, user_agent=user_agent)

    user_id = truncate(request.user_id)
    if not valid_user_id(user_id):
        return Dropped(DropReason.INVALID_USER_ID)

    hostname = truncate(request.hostname)
    if not valid_hostname(hostname):
        return Dropped(DropReason.INVALID_HOSTNAME)

    path = truncate(request.path)
    if not valid_path(path):
        return Dropped(DropReason.INVALID_PATH)

    created_at = parse_created_at(request.created_at)
    if created_at is None:
        return Dropped(DropReason.INVALID_CREATED_AT)

    redacted, location = redact(request, privacy_level, lookup)
    return Accepted(
        StoredRow(
            path=path,
            hostname=hostname,
            ip_address=redacted.ip_address or "",
            user_agent=user_agent,
            status=request.status,
            response_time=request.response_time,
            method=method,
            location=location,
            user_id=user_id,
            created_at=created_at,
        )
    )


class IngestionService:
    """Turns a batch submission into at most one insert."""

    def __init__(
        self,
        rate_limiter: SlidingWindowRateLimiter,
        lookup: CountryLookup,
        gateway: StorageGateway,
        max_insert: int = MAX_INSERT,
        storage_timeout: float = 10.0,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.lookup = lookup
        self.gateway = gateway
        self.max_insert = max_insert
        self.storage_timeout = storage_timeout

    def prepare(self, payload: BatchSubmission) -> IngestionReport:
        """Run the batch-level checks then evaluate every request.

        Raises:
            ClientError: Missing key, empty batch or unsupported framework.
            RateLimitError: The key has used up its window.
        """
        if not payload.api_key:
            raise ClientError("API key required.")
        if not self.rate_limiter.admit(payload.api_key):
            raise RateLimitError()
        if not payload.requests:
            raise ClientError("Payload contains no logged requests.")

        framework = framework_code(payload.framework)
        if framework is None:
            raise ClientError("Unsupported API framework.")

        report = IngestionReport(api_key=payload.api_key, framework=framework)
        accepted = 0
        for request in payload.requests:
            if accepted >= self.max_insert:
                report.outcomes.append(Dropped(DropReason.OVER_CEILING))
                continue
            outcome = evaluate_request(request, payload.privacy_level, self.lookup)
            if isinstance(outcome, Accepted):
                accepted += 1
            report.outcomes.append(outcome)
        return report

    async def ingest(self, payload: BatchSubmission) -> IngestionReport:
        """Validate, redact and store a batch.

        Raises:
            ClientError: The batch is invalid or nothing in it can be stored.
            RateLimitError: The key has used up its window.
            StorageError: The insert failed or timed out.
        """
        report = self.prepare(payload)
        rows = report.accepted

        logger.info(f"Logging {len(rows)}/{report.total} requests for {payload.api_key}")
        if report.bad_user_agents:
            for i, user_agent in enumerate(report.bad_user_agents):
                logger.warning(f"[{i}] bad user agent: {user_agent!r}")

        if not rows:
            logger.info("No rows inserted.")
            raise ClientError("Invalid request data.")

        batch = build_batch_insert(rows, payload.api_key, report.framework, self.max_insert)
        try:
            affected = await asyncio.wait_for(
                asyncio.to_thread(self.gateway.execute, batch),
                timeout=self.storage_timeout,
            )
        except StorageError as e:
            logger.error(f"Insert of {batch.row_count} rows failed: {e.__cause__}")
            raise
        except asyncio.TimeoutError:
            logger.error(
                f"Insert of {batch.row_count} rows timed out after {self.storage_timeout}s"
            )
            raise StorageError() from None

        logger.debug(f"Storage reported {affected} rows affected")
        report.inserted = batch.row_count
        return report
