"""
APIBAN feed access.

`FeedClient` is the single fetch operation the sync loop relies on;
`ApibanFeedClient` implements it against the apiban.org HTTPS API.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from apiban_errors import FetchPermanent, FetchTransient

__version__ = '1.0.0'


@dataclass
class FeedPage:
    """One page of the banned list and the ID to request the next page with."""

    next_cursor: str
    addresses: List[str] = field(default_factory=list)


class FeedClient:
    """Source of banned IP pages."""

    def fetch(self, api_key: str, cursor: str, dataset: str) -> FeedPage:
        raise NotImplementedError()

    def close(self) -> None:
        pass


class ApibanFeedClient(FeedClient):
    """Client for the apiban.org banned list API."""

    BASE_URL = 'https://apiban.org/api/'
    REQUEST_TIMEOUT = 30
    MAX_RETRIES = 2

    # ID returned alongside HTTP 400 when nothing was banned since the given ID
    NO_NEW_BANS_ID = 'none'

    def __init__(self, verify: bool = True, timeout: Optional[int] = None,
                 base_url: Optional[str] = None, max_retries: Optional[int] = None):
        """
        Initialize the feed client.

        Args:
            verify: If False, skip TLS certificate verification for this client
            timeout: Per request timeout in seconds
            base_url: API root, must end with a slash
            max_retries: Retries for 429 and 5xx responses before giving up
        """
        self.verify = verify
        self.timeout = self.REQUEST_TIMEOUT if timeout is None else timeout
        self.base_url = base_url or self.BASE_URL
        self.max_retries = self.MAX_RETRIES if max_retries is None else max_retries
        self.logger = logging.getLogger(__name__)
        self.session = self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a configured requests session."""
        session = requests.Session()
        session.headers.update({'User-Agent': f'apiban-client-nftables/{__version__}'})

        retry_strategy = Retry(
            total=self.max_retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=['GET'],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount('http://', adapter)
        session.mount('https://', adapter)

        if not self.verify:
            self.logger.warning("TLS certificate verification is disabled for the APIBAN feed")
            session.verify = False
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        return session

    def _url(self, api_key: str, cursor: str) -> str:
        return f"{self.base_url}{api_key}/banned/{cursor}"

    @staticmethod
    def _addresses(entries: list) -> List[str]:
        """Every entry as a string, in feed order. The firewall rejects bad ones per element."""
        return [str(entry).strip() for entry in entries]

    def fetch(self, api_key: str, cursor: str, dataset: str) -> FeedPage:
        """
        Fetch the banned addresses added after `cursor`.

        Returns:
            A FeedPage; next_cursor equals cursor when there are no new bans

        Raises:
            FetchTransient: On network errors, timeouts, 429/5xx or unreadable bodies
            FetchPermanent: On rejected requests such as an unknown API key
        """
        params = {'set': dataset} if dataset else None
        try:
            start_time = time.time()
            response = self.session.get(
                self._url(api_key, cursor),
                params=params,
                timeout=self.timeout
            )
            elapsed = time.time() - start_time
        except requests.RequestException as e:
            raise FetchTransient(f"Error fetching banned list: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        status = response.status_code
        self.logger.debug(f"APIBAN responded {status} in {elapsed:.2f}s")

        if isinstance(body, dict) and str(body.get('ID', '')).lower() == self.NO_NEW_BANS_ID:
            return FeedPage(next_cursor=cursor, addresses=[])

        if status == 429 or status >= 500:
            raise FetchTransient(f"APIBAN returned HTTP {status}")

        if 400 <= status < 500:
            detail = body.get('ipaddress') if isinstance(body, dict) else response.text[:200]
            raise FetchPermanent(f"APIBAN rejected the request with HTTP {status}: {detail}")

        if not isinstance(body, dict) or 'ID' not in body:
            raise FetchTransient(f"Unexpected response from APIBAN (HTTP {status})")

        entries = body.get('ipaddress') or []
        if not isinstance(entries, list):
            raise FetchTransient("Unexpected ipaddress field in APIBAN response")

        return FeedPage(next_cursor=str(body['ID']), addresses=self._addresses(entries))

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> 'ApibanFeedClient':
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()
