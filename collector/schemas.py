from enum import IntEnum

from pydantic import BaseModel


class PrivacyLevel(IntEnum):
    P1 = 1  # IP address stored, location inferred from IP and stored
    P2 = 2  # Location inferred from IP and stored, IP address discarded
    P3 = 3  # IP address never used; user_id is the only identification


class RequestData(BaseModel):
    """One logged API call, as sent by a client library."""

    # Missing or null fields are checked per request, never for the whole batch
    path: str | None = None
    hostname: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    method: str | None = None
    status: int = 0
    response_time: int = 0  # milliseconds
    user_id: str | None = None
    created_at: str | None = None


class BatchSubmission(BaseModel):
    api_key: str = ""
    requests: list[RequestData] = []
    framework: str = ""
    privacy_level: PrivacyLevel = PrivacyLevel.P1


class StatusResponse(BaseModel):
    status: int
    message: str
