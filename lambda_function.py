"""AWS Lambda handlers for Calendly to Salesforce booking reconciliation."""
import base64
import json
import logging
import os
import time
from typing import Any, Dict, Optional

from booking.calendly_client import CalendlyClient
from booking.resolver import BookingDetailResolver
from crm.salesforce_client import SalesforceClient
from reconciler.config import Settings, load_settings
from reconciler.engine import ReconciliationEngine
from reconciler.errors import MalformedPayload, ReconciliationError
from reconciler.lead_resolver import LeadResolver
from reconciler.sweep import ReconciliationSweep, authorize_trigger
from reconciler.update_applier import UpdateApplier


# Attributes every LogRecord has; anything else came in through `extra`
_RESERVED_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {'message', 'asctime'}

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'Content-Type, Authorization',
    'Access-Control-Allow-Methods': 'POST, OPTIONS',
}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including `extra` fields."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


logger = logging.getLogger(__name__)


def json_response(status_code: int, body: Optional[Dict[str, Any]] = None,
                  cors: bool = False) -> Dict[str, Any]:
    headers = {'Content-Type': 'application/json'}
    if cors:
        headers.update(CORS_HEADERS)
    response = {'statusCode': status_code, 'headers': headers}
    response['body'] = json.dumps(body) if body is not None else ''
    return response


def error_response(error: ReconciliationError, cors: bool = False,
                   started: Optional[float] = None) -> Dict[str, Any]:
    body = {'ok': False}
    body.update(error.to_dict())
    body.update(error.context or {})
    if started is not None:
        body['duration_seconds'] = round(time.time() - started, 2)
    return json_response(error.status_code, body, cors=cors)


def unexpected_error_response(error: Exception, started: float,
                              cors: bool = False) -> Dict[str, Any]:
    return json_response(500, {
        'ok': False,
        'error': str(error),
        'error_type': type(error).__name__,
        'duration_seconds': round(time.time() - started, 2)
    }, cors=cors)


def http_method(event: Dict[str, Any]) -> str:
    """Request method for REST (v1), HTTP API / Function URL (v2) or direct invokes."""
    method = event.get('httpMethod') or (
        (event.get('requestContext') or {}).get('http') or {}
    ).get('method')
    return (method or 'POST').upper()


def request_body(event: Dict[str, Any]) -> Any:
    """
    Decode the JSON body of a proxy event.

    A direct invocation without a ``body`` key is treated as the body itself.

    Raises:
        MalformedPayload: If the body is not valid JSON
    """
    if 'body' not in event and 'requestContext' not in event:
        return event

    body = event.get('body')
    if body is None or isinstance(body, (dict, list)):
        return body
    try:
        if event.get('isBase64Encoded'):
            body = base64.b64decode(body).decode('utf-8')
        return json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedPayload(f"Invalid JSON body: {e}") from e


def build_engine(settings: Settings) -> ReconciliationEngine:
    settings.require('calendly_token')
    calendly = CalendlyClient(settings.calendly_token, base_url=settings.calendly_api_url,
                              timeout=settings.timeout_seconds)
    crm = SalesforceClient(settings)
    return ReconciliationEngine(
        booking_resolver=BookingDetailResolver(calendly),
        lead_resolver=LeadResolver(crm, max_attempts=settings.lead_lookup_attempts),
        applier=UpdateApplier(crm)
    )


def build_sweep(settings: Settings) -> ReconciliationSweep:
    settings.require('calendly_token', 'calendly_organization_uri',
                     'sf_client_id', 'sf_client_secret')
    calendly = CalendlyClient(settings.calendly_token, base_url=settings.calendly_api_url,
                              timeout=settings.timeout_seconds)
    crm = SalesforceClient(settings)
    return ReconciliationSweep(
        calendly=calendly,
        crm=crm,
        lead_resolver=LeadResolver(crm, max_attempts=settings.sweep_lookup_attempts),
        applier=UpdateApplier(crm),
        organization_uri=settings.calendly_organization_uri,
        lookback_hours=settings.sweep_lookback_hours,
        max_duration_seconds=settings.sweep_max_duration_seconds,
        max_invitees=settings.sweep_max_invitees
    )


def webhook_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Handle one Calendly webhook delivery.

    Args:
        event: API Gateway / Function URL proxy event
        context: Lambda context object

    Returns:
        Proxy response with the ``{ok, ...}`` envelope
    """
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    started = time.time()

    method = http_method(event)
    if method == 'OPTIONS':
        return json_response(204, cors=True)
    if method != 'POST':
        return json_response(405, {'ok': False, 'error': 'Method not allowed'}, cors=True)

    try:
        body = request_body(event)
        settings = load_settings()
        engine = build_engine(settings)
        result = engine.process(body)
        logger.info(
            "Webhook processed",
            extra={'duration_seconds': round(time.time() - started, 2),
                   'processed': result.get('processed')}
        )
        return json_response(200, result, cors=True)

    except ReconciliationError as e:
        logger.error(
            f"Webhook failed: {e}",
            extra={'error_type': type(e).__name__, 'status_code': e.status_code}
        )
        return error_response(e, cors=True)

    except Exception as e:
        logger.error(
            f"Webhook failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return unexpected_error_response(e, started, cors=True)


def sweep_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Scheduled reconciliation sweep.

    Args:
        event: Scheduler event or proxy event carrying the bearer secret
        context: Lambda context object

    Returns:
        Response with processed, skipped, errors and totalEvents
    """
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    started = time.time()
    logger.info("Calendly-Salesforce sync sweep started")

    try:
        settings = load_settings()
        authorize_trigger(event.get('headers'), settings.cron_secret)
        sweep = build_sweep(settings)
        result = sweep.run()

    except ReconciliationError as e:
        logger.error(
            f"Sweep failed: {e}",
            extra={'error_type': type(e).__name__, 'status_code': e.status_code}
        )
        return error_response(e, started=started)

    except Exception as e:
        logger.error(
            f"Sweep failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return unexpected_error_response(e, started)

    duration = round(time.time() - started, 2)
    return json_response(200, {
        'ok': True,
        'message': 'Sync complete' if result.total_events else 'No events to process',
        'processed': result.processed,
        'skipped': result.skipped,
        'errors': result.errors,
        'totalEvents': result.total_events,
        'truncated': result.truncated,
        'errorDetails': result.error_details,
        'duration_seconds': duration
    })


def health_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Report whether the Calendly token is accepted."""
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    started = time.time()
    try:
        settings = load_settings()
        calendly = CalendlyClient(settings.calendly_token, base_url=settings.calendly_api_url,
                                  timeout=settings.timeout_seconds)
        response = calendly.whoami()
        try:
            whoami = (response.json().get('resource') or {}).get('slug')
        except ValueError:
            whoami = None
        return json_response(200 if response.ok else 500, {
            'ok': response.ok,
            'status': response.status_code,
            'whoami': whoami
        })
    except ReconciliationError as e:
        return error_response(e)

    except Exception as e:
        logger.error(
            f"Health check failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return unexpected_error_response(e, started)


def crm_token_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Check the Salesforce token request without exposing the token."""
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    started = time.time()
    try:
        settings = load_settings()
        settings.require('sf_login_url', 'sf_client_id', 'sf_client_secret')
        response = SalesforceClient(settings).request_token()

        if not response.ok:
            logger.error(f"Salesforce token check failed with {response.status_code}")
            return json_response(response.status_code, {
                'ok': False,
                'status': response.status_code,
                'error': 'token_failed',
                'body': response.text[:400]
            })

        token = response.json()
        return json_response(200, {
            'ok': True,
            'instance_url': token.get('instance_url'),
            'token_type': token.get('token_type'),
            'scope': token.get('scope')
        })

    except ReconciliationError as e:
        return error_response(e)

    except Exception as e:
        logger.error(
            f"Salesforce token check failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return unexpected_error_response(e, started)
