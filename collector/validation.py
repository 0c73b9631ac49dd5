"""Field checks applied to each logged request before it is stored.

All functions here are pure. Free-text fields are truncated to
``MAX_FIELD_LENGTH`` by the caller (see ``truncate``) before they are checked.
"""

import re
from datetime import datetime, timezone

MAX_FIELD_LENGTH = 255

METHOD_IDS: dict[str, int] = {
    "GET": 0,
    "POST": 1,
    "PUT": 2,
    "PATCH": 3,
    "DELETE": 4,
    "OPTIONS": 5,
    "CONNECT": 6,
    "HEAD": 7,
    "TRACE": 8,
}

FRAMEWORK_IDS: dict[str, int] = {
    "FastAPI": 0,
    "Flask": 1,
    "Gin": 2,
    "Echo": 3,
    "Express": 4,
    "Fastify": 5,
    "Koa": 6,
    "Chi": 7,
    "Fiber": 8,
    "Actix": 9,
    "Axum": 10,
    "Tornado": 11,
    "Django": 12,
    "Rails": 13,
    "Laravel": 14,
    "Sinatra": 15,
    "Rocket": 16,
    "ASP.NET Core": 17,
}

_LABEL = r"[A-Za-z0-9_](?:[A-Za-z0-9_-]{0,61}[A-Za-z0-9_])?"
_HOSTNAME_RE = re.compile(
    rf"^(?:{_LABEL}(?:\.{_LABEL})*\.?|\[[0-9A-Fa-f:.]+\])(?::[0-9]{{1,5}})?$"
)
# RFC 3986 path, query and fragment characters
_PATH_RE = re.compile(r"^[A-Za-z0-9\-._~!$&'()*+,;=:@/%?#\[\]]*$")


def truncate(value: str | None, limit: int = MAX_FIELD_LENGTH) -> str:
    if not value:
        return ""
    return value[:limit]


def _printable(value: str) -> bool:
    return value.isprintable()


def valid_user_agent(user_agent: str) -> bool:
    return _printable(user_agent)


def valid_user_id(user_id: str) -> bool:
    return _printable(user_id)


def valid_hostname(hostname: str) -> bool:
    if hostname == "":
        return True
    return _HOSTNAME_RE.match(hostname) is not None


def valid_path(path: str) -> bool:
    return _PATH_RE.match(path) is not None


def method_code(method: str | None) -> int | None:
    return METHOD_IDS.get(method)


def framework_code(framework: str) -> int | None:
    return FRAMEWORK_IDS.get(framework)


def parse_created_at(value: str | None, now: datetime | None = None) -> datetime | None:
    """Parse a client timestamp into an aware datetime.

    An empty value falls back to ``now`` (UTC). Naive timestamps are taken as
    UTC. Returns None when the value is not an ISO-8601 timestamp.
    """
    if not value:
        return now or datetime.now(timezone.utc)
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
