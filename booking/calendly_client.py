"""Calendly API client for event and invitee resources."""
import logging
from typing import Any, Dict, Iterator, Optional

import requests

from reconciler.errors import UpstreamFetchError

logger = logging.getLogger(__name__)


class CalendlyClient:
    """Bearer-authenticated reader for the Calendly v2 API."""

    BASE_URL = "https://api.calendly.com"
    SERVICE = 'booking'
    PAGE_SIZE = 100

    def __init__(self, token: str, base_url: Optional[str] = None, timeout: int = 30):
        """
        Initialize the Calendly client.

        Args:
            token: Personal access token
            base_url: API root (default: https://api.calendly.com)
            timeout: HTTP request timeout in seconds (default: 30)
        """
        self.token = token
        self.base_url = (base_url or self.BASE_URL).rstrip('/')
        self.timeout = timeout

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        """
        Issue one authenticated GET. Failures are not retried.

        Raises:
            UpstreamFetchError: On transport failure or non-2xx status
        """
        try:
            response = requests.get(
                url,
                params=params,
                headers={'Authorization': f"Bearer {self.token}"},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error(f"Calendly request to {url} failed: {e}")
            raise UpstreamFetchError(self.SERVICE, None, message=f"Calendly request failed: {e}") from e

        if not response.ok:
            logger.error(f"Calendly returned {response.status_code} for {url}")
            raise UpstreamFetchError(self.SERVICE, response.status_code, body=response.text)
        return response

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        GET a URL and decode its JSON object.

        Raises:
            UpstreamFetchError: Also when a 2xx body is not a JSON object
        """
        response = self._get(url, params=params)
        try:
            data = response.json()
        except ValueError:
            logger.error(f"Calendly returned a non-JSON body for {url}")
            raise UpstreamFetchError(self.SERVICE, response.status_code, body=response.text,
                                     message="Calendly returned a non-JSON body")
        if not isinstance(data, dict):
            raise UpstreamFetchError(self.SERVICE, response.status_code, body=response.text,
                                     message="Calendly returned an unexpected body")
        return data

    def _get_resource(self, uri: str) -> Dict[str, Any]:
        data = self._get_json(uri)
        return data.get('resource') or {}

    def fetch_event(self, event_uri: str) -> Dict[str, Any]:
        """Fetch a scheduled event resource by URI."""
        logger.info(f"Fetching Calendly event {event_uri}")
        return self._get_resource(event_uri)

    def fetch_invitee(self, invitee_uri: str) -> Dict[str, Any]:
        """Fetch an invitee resource by URI."""
        logger.info(f"Fetching Calendly invitee {invitee_uri}")
        return self._get_resource(invitee_uri)

    def _paginate(self, url: str, params: Optional[Dict[str, Any]]) -> Iterator[Dict[str, Any]]:
        """Yield collection items, following pagination.next_page."""
        while url:
            data = self._get_json(url, params=params)
            for item in data.get('collection') or []:
                yield item
            url = (data.get('pagination') or {}).get('next_page')
            # next_page already carries the query string
            params = None

    def list_scheduled_events(self, organization: str, min_start_time: str,
                              status: str = 'active') -> Iterator[Dict[str, Any]]:
        """
        List scheduled events for an organization.

        Args:
            organization: Organization URI
            min_start_time: ISO 8601 lower bound for event start
            status: Event status filter (default: active)

        Returns:
            Iterator over event resources
        """
        params = {
            'organization': organization,
            'min_start_time': min_start_time,
            'status': status,
            'count': self.PAGE_SIZE
        }
        return self._paginate(f"{self.base_url}/scheduled_events", params)

    def list_invitees(self, event_uri: str) -> Iterator[Dict[str, Any]]:
        """List the invitees of one scheduled event."""
        return self._paginate(
            f"{event_uri.rstrip('/')}/invitees", {'count': self.PAGE_SIZE}
        )

    def whoami(self) -> requests.Response:
        """Call /users/me; the raw response is returned for health reporting."""
        try:
            return requests.get(
                f"{self.base_url}/users/me",
                headers={'Authorization': f"Bearer {self.token}"},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise UpstreamFetchError(self.SERVICE, None, message=f"Calendly request failed: {e}") from e
