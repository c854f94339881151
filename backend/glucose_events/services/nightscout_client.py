import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from glucose_events.core.errors import NightscoutError
from glucose_events.core.settings import NightscoutConfig
from glucose_events.models.enums import trend_from_direction
from glucose_events.models.glucose import DEFAULT_PATIENT, Reading
from glucose_events.models.schemas import NightscoutSGV

logger = logging.getLogger(__name__)

# CGMs report every 5 minutes; request a little headroom per range query.
READING_INTERVAL_MINUTES = 5
INITIAL_LOOKBACK = timedelta(hours=24)


def _is_jwt(token: str) -> bool:
    return len(token) > 20 and token.count(".") >= 2


class NightscoutClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout_seconds: int = 10,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.api_secret = api_secret
        self.timeout_seconds = timeout_seconds

        headers = self._auth_headers()
        headers["Accept"] = "application/json"

        # Access tokens (subject-hash, e.g. "app-1a2b...") go as a query param
        params = {}
        if self.token and not _is_jwt(self.token) and "-" in self.token:
            params["token"] = self.token

        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            headers=headers,
            params=params,
        )

    @classmethod
    def from_config(cls, config: NightscoutConfig, client: Optional[httpx.AsyncClient] = None) -> "NightscoutClient":
        if config.base_url is None:
            raise NightscoutError("Nightscout base_url is not configured")
        return cls(
            base_url=str(config.base_url),
            token=config.token,
            api_secret=config.api_secret,
            timeout_seconds=config.timeout_seconds,
            client=client,
        )

    def _auth_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}

        if self.token:
            if _is_jwt(self.token):
                headers["Authorization"] = f"Bearer {self.token}"
            else:
                # API secrets are sent sha1-hashed; Nightscout falls back to the
                # token query param when this header does not match
                headers["API-SECRET"] = hashlib.sha1(self.token.encode("utf-8")).hexdigest()

        if self.api_secret:
            headers["API-SECRET"] = hashlib.sha1(self.api_secret.encode("utf-8")).hexdigest()

        return headers

    async def _handle_response(self, response: httpx.Response) -> Any:
        try:
            response.raise_for_status()
            if not response.content.strip():
                # Empty body is sometimes returned by Nightscout instead of []
                return []
            return response.json()
        except httpx.HTTPStatusError as exc:
            logger.error("Nightscout API error %s: %s", exc.response.status_code, exc.response.text[:200])
            raise NightscoutError(f"Nightscout returned status {exc.response.status_code}") from exc
        except ValueError as exc:
            preview = response.text[:200]
            logger.error("Invalid JSON from Nightscout. Body: %r", preview)
            raise NightscoutError(f"Nightscout returned invalid JSON (Body: {preview!r})") from exc

    async def get_sgv_range(self, start_dt: datetime, end_dt: datetime, count: int = 288) -> list[NightscoutSGV]:
        """
        Fetches SGV entries within a date range.
        Epoch milliseconds are used for the query since dateString formats vary.
        """
        params = {
            "find[date][$gte]": int(start_dt.timestamp() * 1000),
            "find[date][$lte]": int(end_dt.timestamp() * 1000),
            "count": count,
        }
        try:
            response = await self.client.get("/api/v1/entries/sgv", params=params)
        except httpx.HTTPError as exc:
            raise NightscoutError(f"Nightscout request failed: {exc}") from exc
        data = await self._handle_response(response)

        if not isinstance(data, list):
            logger.warning("Expected list of SGV entries, got %s", type(data).__name__)
            return []

        results = []
        for entry in data:
            try:
                results.append(NightscoutSGV.model_validate(entry))
            except PydanticValidationError:
                logger.warning("Skipping malformed SGV entry: %r", entry)
        return results

    async def aclose(self) -> None:
        await self.client.aclose()


class NightscoutReadingSource:
    """FetchNewReadings over a Nightscout SGV feed."""

    def __init__(
        self,
        client: NightscoutClient,
        patient_id: str = DEFAULT_PATIENT,
        clock: Optional[Callable[[], datetime]] = None,
        initial_lookback: timedelta = INITIAL_LOOKBACK,
    ) -> None:
        self.client = client
        self.patient_id = patient_id
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.initial_lookback = initial_lookback

    async def fetch_new_readings(self, since: Optional[datetime]) -> list[Reading]:
        """Readings strictly newer than ``since``, oldest first."""
        now = self.clock()
        start = since if since is not None else now - self.initial_lookback
        span_minutes = max(0.0, (now - start).total_seconds() / 60)
        count = int(span_minutes // READING_INTERVAL_MINUTES) + 12

        entries = await self.client.get_sgv_range(start, now, count=count)
        readings = []
        for entry in entries:
            ts = datetime.fromtimestamp(entry.date / 1000, tz=timezone.utc)
            if since is not None and ts <= since:
                continue
            readings.append(
                Reading(
                    value=entry.sgv,
                    timestamp=ts,
                    trend=trend_from_direction(entry.direction),
                    patient_id=self.patient_id,
                )
            )
        readings.sort(key=lambda r: r.timestamp)
        logger.debug("Fetched %s new readings from Nightscout since %s", len(readings), since)
        return readings
