"""Privacy-level redaction of client IP addresses.

Country codes come from a local MaxMind GeoLite2 country database, so no
address ever leaves the process for a lookup.
"""

import ipaddress
import logging
from pathlib import Path
from typing import Protocol

import geoip2.database
from geoip2.errors import AddressNotFoundError

from collector.schemas import PrivacyLevel, RequestData

logger = logging.getLogger(__name__)


class CountryLookup(Protocol):
    def lookup_country(self, ip_address: str) -> str: ...


class GeoIPCountryLookup:
    """ISO country codes from a GeoLite2-Country database."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)

        if not self.db_path.exists():
            logger.warning(
                f"GeoLite2 database not found at {self.db_path}. "
                "Locations will not be recorded."
            )
            self.reader = None
        else:
            self.reader = geoip2.database.Reader(str(self.db_path))
            logger.info(f"GeoLite2 database loaded from {self.db_path}")

    def lookup_country(self, ip_address: str) -> str:
        """Return the ISO country code for ``ip_address``, or "" on any miss."""
        if self.reader is None or not ip_address:
            return ""

        try:
            response = self.reader.country(ip_address)
            return response.country.iso_code or ""
        except AddressNotFoundError:
            # Private ranges, localhost, etc.
            logger.debug(f"IP address not found in GeoLite2: {ip_address}")
            return ""
        except ValueError:
            logger.debug("Invalid IP address passed to country lookup")
            return ""
        except Exception as e:
            logger.error(f"Country lookup failed: {e}")
            return ""

    def close(self) -> None:
        if self.reader is not None:
            self.reader.close()
            self.reader = None


def _valid_ip(ip_address: str) -> bool:
    try:
        ipaddress.ip_address(ip_address)
    except ValueError:
        return False
    return True


def redact(
    request: RequestData, privacy_level: PrivacyLevel, lookup: CountryLookup
) -> tuple[RequestData, str]:
    """Apply ``privacy_level`` to one request.

    Returns a copy of the request that is safe to store along with the
    inferred country code. The location is always read from the original
    address before it is cleared.
    """
    location = ""
    if privacy_level < PrivacyLevel.P3:
        location = lookup.lookup_country(request.ip_address or "")

    if privacy_level > PrivacyLevel.P1:
        return request.model_copy(update={"ip_address": ""}), location

    if request.ip_address and not _valid_ip(request.ip_address):
        return request.model_copy(update={"ip_address": ""}), location
    return request, location
