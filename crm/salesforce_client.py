"""Salesforce REST client for Lead lookup and update."""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import requests

from reconciler.config import Settings
from reconciler.errors import ConfigurationError, UpstreamFetchError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CrmSession:
    """Access token plus the instance URL API calls are made against."""
    access_token: str
    instance_url: str
    token_type: Optional[str] = None
    scope: Optional[str] = None


def escape_soql(value: str) -> str:
    """
    Escape a value for use inside a single-quoted SOQL string literal.

    Backslashes are escaped before quotes so the quote escapes survive.
    """
    return value.replace('\\', '\\\\').replace("'", "\\'")


def build_lead_query(email: str, fields: Sequence[str] = ('Id',)) -> str:
    """Most recently created Lead with exactly this email."""
    return (
        f"SELECT {', '.join(fields)} FROM Lead "
        f"WHERE Email = '{escape_soql(email)}' "
        f"ORDER BY CreatedDate DESC LIMIT 1"
    )


class SalesforceClient:
    """Client for the Salesforce OAuth token, query and sobject endpoints."""

    TOKEN_PATH = '/services/oauth2/token'

    def __init__(self, settings: Settings, timeout: Optional[int] = None):
        """
        Initialize the Salesforce client.

        Args:
            settings: Application settings carrying SF_* credentials
            timeout: HTTP request timeout in seconds (default: settings value)
        """
        self.settings = settings
        self.timeout = timeout or settings.timeout_seconds
        self.session: Optional[CrmSession] = None

    def _token_request_body(self) -> Dict[str, str]:
        s = self.settings
        if s.auth_flow == 'password':
            if not s.sf_username or not s.sf_password:
                raise ConfigurationError('Missing SF_USERNAME or SF_PASSWORD')
            return {
                'grant_type': 'password',
                'client_id': s.sf_client_id,
                'client_secret': s.sf_client_secret,
                'username': s.sf_username,
                'password': s.sf_password + s.sf_security_token,
            }
        if s.auth_flow != 'client_credentials':
            raise ConfigurationError(f"Unsupported SF_AUTH_FLOW: {s.sf_auth_flow}")
        body = {
            'grant_type': 'client_credentials',
            'client_id': s.sf_client_id,
            'client_secret': s.sf_client_secret,
        }
        if s.sf_audience:
            body['audience'] = s.sf_audience
        return body

    def request_token(self) -> requests.Response:
        """POST the configured grant to the token endpoint; raw response."""
        url = self.settings.sf_login_url.rstrip('/') + self.TOKEN_PATH
        try:
            return requests.post(url, data=self._token_request_body(), timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Salesforce token request failed: {e}")
            raise UpstreamFetchError('crm-auth', None, message=f"SF token request failed: {e}") from e

    def authenticate(self) -> CrmSession:
        """
        Acquire an access token using the configured flow.

        Returns:
            CrmSession

        Raises:
            UpstreamFetchError: If the token endpoint rejects the request
            ConfigurationError: If no instance URL is known
        """
        self.settings.require('sf_client_id', 'sf_client_secret')
        response = self.request_token()
        if not response.ok:
            logger.error(f"Salesforce token error {response.status_code}: {response.text[:400]}")
            raise UpstreamFetchError(
                'crm-auth', response.status_code, body=response.text,
                message=f"SF token ({self.settings.auth_flow}) {response.status_code}"
            )

        try:
            token = response.json()
        except ValueError:
            raise UpstreamFetchError('crm-auth', response.status_code, body=response.text,
                                     message='SF token response is not JSON')
        access_token = token.get('access_token')
        instance_url = token.get('instance_url') or self.settings.sf_instance_url
        if not access_token:
            raise UpstreamFetchError('crm-auth', response.status_code,
                                     message='Missing Salesforce access_token')
        if not instance_url:
            raise ConfigurationError('Missing Salesforce instance_url (set SF_INSTANCE_URL)')

        self.session = CrmSession(
            access_token=access_token,
            instance_url=instance_url.rstrip('/'),
            token_type=token.get('token_type'),
            scope=token.get('scope')
        )
        logger.info(f"Salesforce authenticated: {self.session.instance_url}")
        return self.session

    def _session(self) -> CrmSession:
        return self.session or self.authenticate()

    def _data_url(self, path: str) -> str:
        session = self._session()
        return f"{session.instance_url}/services/data/{self.settings.sf_api_version}{path}"

    def _headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self._session().access_token}"}

    def query(self, soql: str) -> List[Dict[str, Any]]:
        """
        Run a SOQL query and return its records.

        Raises:
            UpstreamFetchError: service "crm-query" on any failure
        """
        url = self._data_url('/query')
        try:
            response = requests.get(url, params={'q': soql}, headers=self._headers(),
                                    timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamFetchError('crm-query', None, message=f"SF query failed: {e}") from e
        if not response.ok:
            raise UpstreamFetchError('crm-query', response.status_code, body=response.text,
                                     message=f"SF query error {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            raise UpstreamFetchError('crm-query', response.status_code, body=response.text,
                                     message='SF query returned a non-JSON body')
        return data.get('records') or []

    def find_lead_by_email(self, email: str,
                           fields: Sequence[str] = ('Id',)) -> Optional[Dict[str, Any]]:
        """Newest Lead with this email, or None if the query matched nothing."""
        records = self.query(build_lead_query(email, fields))
        return records[0] if records else None

    def patch_lead(self, lead_id: str, fields: Dict[str, Any]) -> None:
        """
        Overwrite the given fields on one Lead.

        Raises:
            UpstreamFetchError: service "crm-patch" with the response body
        """
        url = self._data_url(f"/sobjects/Lead/{lead_id}")
        try:
            response = requests.patch(url, json=fields, headers=self._headers(),
                                      timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamFetchError('crm-patch', None, message=f"SF patch failed: {e}") from e
        if not response.ok:
            raise UpstreamFetchError('crm-patch', response.status_code, body=response.text,
                                     message=f"SF patch error {response.status_code}")
