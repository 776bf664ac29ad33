"""
Source Provider for the range finder system.

Fetches the CLI access table of the carrier portal for one query key (a
country name) and turns its rows into RawRecords. Inside the provider a
rejected credential raises AuthenticationError and a transport failure or
unexpected status raises NetworkError; `fetch` maps both to results and
never raises. Auth signals also ask the session manager for a new credential.
"""

import random
from abc import abstractmethod
from typing import Optional, Protocol, runtime_checkable

import httpx
from bs4 import BeautifulSoup

from .config import SourceConfig
from .enums import FetchOutcome
from .event_logger import EventLogger
from .exceptions import AuthenticationError, NetworkError
from .models import AuthSession, FetchResult, RawRecord
from .session_manager import SessionLifecycleManager

# Minimum cells of a data row: range, call, -, cli, -, age
MIN_ROW_CELLS = 6


@runtime_checkable
class SourceProvider(Protocol):
    """Protocol defining the interface for record sources."""

    @abstractmethod
    async def fetch(self, key: str) -> FetchResult:
        """Fetch the current rows for one query key. Must not raise."""
        ...


def parse_rows(html: str, source_key: str) -> list[RawRecord]:
    """
    Extract data rows from the portal's HTML table fragment.

    Rows with fewer than six cells (headers, notices) are skipped.
    """
    soup = BeautifulSoup(html, "html.parser")
    records: list[RawRecord] = []
    for row in soup.find_all("tr"):
        cells = row.find_all("td")
        if len(cells) < MIN_ROW_CELLS:
            continue
        records.append(
            RawRecord(
                range=cells[0].get_text(strip=True),
                call=cells[1].get_text(strip=True),
                cli=cells[3].get_text(strip=True),
                relative_age=cells[5].get_text(strip=True),
                source_key=source_key,
            )
        )
    return records


class HttpSourceProvider:
    """
    Portal client over httpx.

    Redirects are not followed so a redirect to the login page is visible
    as an auth signal.
    """

    def __init__(
        self,
        config: SourceConfig,
        session_manager: SessionLifecycleManager,
        timeout: float = 15.0,
        logger: Optional[EventLogger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the provider.

        Args:
            config: Portal endpoint configuration
            session_manager: Source of the credential and of refreshes
            timeout: Per-request timeout in seconds
            logger: Optional event logger
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self._config = config
        self._session = session_manager
        self._timeout = timeout
        self._logger = logger
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "HttpSourceProvider":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=False,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self, credential: AuthSession) -> dict[str, str]:
        return {
            "accept": "*/*",
            "content-type": "application/x-www-form-urlencoded; charset=UTF-8",
            "user-agent": self._config.user_agent,
            "x-csrf-token": credential.csrf_token,
            "x-requested-with": "XMLHttpRequest",
            "cookie": f"{self._config.session_cookie_name}={credential.session_token}",
        }

    def is_auth_failure(self, response: httpx.Response) -> bool:
        """Detect the portal rejecting the credential."""
        if response.status_code in (401, 403):
            return True
        if 300 <= response.status_code < 400:
            location = response.headers.get("location", "")
            if "login" in location.lower():
                return True
        text = response.text
        return any(marker in text for marker in self._config.login_markers)

    async def fetch(self, key: str) -> FetchResult:
        credential = self._session.current_credential()
        if credential is None:
            try:
                credential = await self._session.ensure_valid_session()
            except Exception as e:
                self._log_error(f"No session available for '{key}'", e)
                return FetchResult.auth_failure(key)

        try:
            response = await self._request(key, credential)
        except AuthenticationError as e:
            await self._recover_auth(key, credential, e)
            return FetchResult.auth_failure(key)
        except NetworkError as e:
            self._log_debug(f"Fetch failed for '{key}'", e.to_dict())
            outcome = FetchOutcome.TIMEOUT if e.details.get("timeout") else FetchOutcome.TRANSPORT_ERROR
            return FetchResult.empty(key, outcome)

        records = parse_rows(response.text, key)
        return FetchResult(
            source_key=key,
            records=records,
            auth_error=False,
            outcome=FetchOutcome.RECORDS if records else FetchOutcome.EMPTY,
        )

    async def _request(self, key: str, credential: AuthSession) -> httpx.Response:
        """
        POST one query and return the 200 response.

        Raises:
            AuthenticationError: The portal rejected the credential
            NetworkError: Transport failure, timeout or unexpected status
        """
        client = self._ensure_client()
        url = self._config.search_url
        try:
            response = await client.post(
                url,
                data={"q": key},
                headers=self._headers(credential),
            )
        except httpx.TimeoutException as e:
            raise NetworkError(
                code="NETWORK_ERROR",
                message=f"Request timed out after {self._timeout}s",
                details={"url": url, "timeout": True},
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(
                code="NETWORK_ERROR",
                message=str(e) or type(e).__name__,
                details={"url": url},
            ) from e

        if self.is_auth_failure(response):
            raise AuthenticationError(
                code="SESSION_EXPIRED",
                message="Portal rejected the session credential",
                details={"url": url, "status_code": response.status_code},
            )

        if response.status_code != 200:
            raise NetworkError(
                code="NETWORK_ERROR",
                message=f"Unexpected status {response.status_code}",
                details={"url": url, "status_code": response.status_code},
            )
        return response

    async def _recover_auth(self, key: str, rejected: AuthSession, signal: AuthenticationError) -> None:
        if self._logger:
            self._logger.warn(
                "SourceProvider",
                f"Auth signal while fetching '{key}'",
                {"source_key": key, **signal.to_dict()},
            )
        try:
            await self._session.force_refresh(stale=rejected)
        except Exception as e:
            self._log_error("Refresh after auth signal failed", e)

    def _log_debug(self, message: str, data: dict) -> None:
        if self._logger:
            self._logger.debug("SourceProvider", message, data)

    def _log_error(self, message: str, error: Exception) -> None:
        if self._logger:
            self._logger.log_error(
                "SourceProvider", message, error=error, request_url=self._config.search_url
            )


class SimulatedSourceProvider:
    """
    Source for dry runs: deterministic pseudo-random rows, no network access.

    Roughly one key in three returns rows; the rest return nothing.
    """

    AGES = ["just now", "5 sec", "20 sec", "45 sec", "1 min", "3 min", "7 min"]

    def __init__(self, seed: int = 0, ranges_per_key: int = 3) -> None:
        self._random = random.Random(seed)
        self._ranges_per_key = ranges_per_key
        self.call_count = 0

    async def fetch(self, key: str) -> FetchResult:
        self.call_count += 1
        if self._random.random() > 0.35:
            return FetchResult.empty(key)

        prefix = "".join(ch for ch in key.upper() if ch.isalpha())[:6] or "RANGE"
        records = []
        for _ in range(self._random.randint(1, 5)):
            range_no = self._random.randint(1, self._ranges_per_key)
            cli = str(self._random.randint(100000, 100050))
            records.append(
                RawRecord(
                    range=f"{prefix} {range_no}",
                    call=str(self._random.randint(2000000, 2000100)),
                    cli=cli,
                    relative_age=self._random.choice(self.AGES),
                    source_key=key,
                )
            )
        return FetchResult(
            source_key=key,
            records=records,
            auth_error=False,
            outcome=FetchOutcome.RECORDS,
        )

