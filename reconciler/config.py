"""Process configuration for the reconciliation Lambdas."""
import json
import logging
import os
from dataclasses import dataclass, fields
from typing import Dict, Mapping, Optional

import boto3
from botocore.exceptions import ClientError

from reconciler.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    """Configuration constructed once at process entry and injected."""
    calendly_token: str = ''
    calendly_organization_uri: str = ''
    calendly_api_url: str = 'https://api.calendly.com'
    sf_login_url: str = 'https://login.salesforce.com'
    sf_instance_url: str = ''
    sf_client_id: str = ''
    sf_client_secret: str = ''
    sf_username: str = ''
    sf_password: str = ''
    sf_security_token: str = ''
    sf_audience: str = ''
    sf_auth_flow: str = 'client_credentials'
    sf_api_version: str = 'v61.0'
    cron_secret: str = ''
    log_level: str = 'INFO'
    timeout_seconds: int = 30
    lead_lookup_attempts: int = 5
    sweep_lookup_attempts: int = 1
    sweep_lookback_hours: int = 24
    sweep_max_duration_seconds: int = 270
    sweep_max_invitees: int = 500

    # Setting name -> environment variable
    ENV_NAMES = {
        'calendly_token': 'CALENDLY_PAT',
        'calendly_organization_uri': 'CALENDLY_ORGANIZATION_URI',
        'calendly_api_url': 'CALENDLY_API_URL',
        'sf_login_url': 'SF_LOGIN_URL',
        'sf_instance_url': 'SF_INSTANCE_URL',
        'sf_client_id': 'SF_CLIENT_ID',
        'sf_client_secret': 'SF_CLIENT_SECRET',
        'sf_username': 'SF_USERNAME',
        'sf_password': 'SF_PASSWORD',
        'sf_security_token': 'SF_SECURITY_TOKEN',
        'sf_audience': 'SF_AUDIENCE',
        'sf_auth_flow': 'SF_AUTH_FLOW',
        'sf_api_version': 'SF_API_VERSION',
        'cron_secret': 'CRON_SECRET',
        'log_level': 'LOG_LEVEL',
        'timeout_seconds': 'TIMEOUT_SECONDS',
        'lead_lookup_attempts': 'LEAD_LOOKUP_ATTEMPTS',
        'sweep_lookup_attempts': 'SWEEP_LOOKUP_ATTEMPTS',
        'sweep_lookback_hours': 'SWEEP_LOOKBACK_HOURS',
        'sweep_max_duration_seconds': 'SWEEP_MAX_DURATION_SECONDS',
        'sweep_max_invitees': 'SWEEP_MAX_INVITEES',
    }

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> 'Settings':
        """
        Build settings from a mapping keyed by environment variable names.

        Args:
            values: Environment-style mapping (e.g. os.environ)

        Returns:
            Settings with defaults for every missing or blank value

        Raises:
            ConfigurationError: If a numeric setting is not an integer
        """
        kwargs = {}
        for f in fields(cls):
            raw = values.get(cls.ENV_NAMES[f.name])
            if raw is None or str(raw).strip() == '':
                continue
            raw = str(raw).strip()
            if f.type in (int, 'int'):
                try:
                    kwargs[f.name] = int(raw)
                except ValueError:
                    raise ConfigurationError(
                        f"{cls.ENV_NAMES[f.name]} must be an integer, got {raw!r}"
                    )
            else:
                kwargs[f.name] = raw
        settings = cls(**kwargs)
        return settings

    def require(self, *names: str) -> None:
        """
        Ensure the named settings are non-empty.

        Raises:
            ConfigurationError: Listing every missing environment variable
        """
        missing = [self.ENV_NAMES[name] for name in names if not getattr(self, name)]
        if missing:
            raise ConfigurationError(f"Missing configuration: {', '.join(missing)}")

    @property
    def auth_flow(self) -> str:
        return self.sf_auth_flow.lower()


def fetch_secret_values(secret_id: str, client=None) -> Dict[str, str]:
    """
    Read a JSON key/value secret from AWS Secrets Manager.

    Args:
        secret_id: Secret ARN or name
        client: Optional boto3 secretsmanager client

    Returns:
        Dictionary keyed by environment variable names
    """
    client = client or boto3.client('secretsmanager')
    try:
        response = client.get_secret_value(SecretId=secret_id)
    except ClientError as e:
        logger.error(f"Error reading secret {secret_id}: {e}")
        raise ConfigurationError(f"Cannot read secret {secret_id}") from e

    try:
        values = json.loads(response.get('SecretString') or '{}')
    except ValueError as e:
        raise ConfigurationError(f"Secret {secret_id} is not valid JSON") from e
    if not isinstance(values, dict):
        raise ConfigurationError(f"Secret {secret_id} must be a JSON object")
    return {str(k): str(v) for k, v in values.items()}


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Load settings from the environment, overlaid by SECRETS_ARN if set.

    Secret values take precedence over plain environment variables.
    """
    values = dict(os.environ if environ is None else environ)
    secret_id = values.get('SECRETS_ARN', '').strip()
    if secret_id:
        logger.info("Loading configuration overlay from Secrets Manager")
        values.update(fetch_secret_values(secret_id))
    return Settings.from_mapping(values)
