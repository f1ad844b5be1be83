"""Error taxonomy for booking reconciliation."""
from typing import Optional


class ReconciliationError(Exception):
    """
    Base class for errors that map onto an HTTP response.

    Attributes:
        context: Booking fields attached once a booking was resolved, so the
            response carries enough detail for manual reconciliation
    """

    status_code = 500

    def __init__(self, *args):
        super().__init__(*args)
        self.context: Optional[dict] = None

    def to_dict(self) -> dict:
        return {'error': str(self), 'error_type': type(self).__name__}


class MalformedPayload(ReconciliationError):
    """Inbound payload is missing a required locator or identity field."""

    status_code = 400


class InvalidEmail(ReconciliationError):
    """Email failed the basic local@domain.tld check."""

    status_code = 400

    def __init__(self, email: str):
        super().__init__(f"Invalid email address: {email!r}")
        self.email = email


class Unauthorized(ReconciliationError):
    status_code = 401


class NotFound(ReconciliationError):
    """No lead matched the email after every lookup attempt."""

    status_code = 404

    def __init__(self, email: str, attempts: int):
        super().__init__(
            f"Lead not found by email after {attempts} attempts"
        )
        self.email = email
        self.attempts = attempts


class ConfigurationError(ReconciliationError):
    status_code = 500


class UpstreamFetchError(ReconciliationError):
    """
    A dependency (Calendly or Salesforce) returned a non-success response.

    Attributes:
        service: One of "booking", "crm-auth", "crm-query", "crm-patch"
        status: HTTP status code, or None for transport failures
        body: Truncated response body, when one was read
    """

    status_code = 500
    MAX_BODY_LENGTH = 400

    def __init__(self, service: str, status: Optional[int],
                 body: str = '', message: Optional[str] = None):
        self.service = service
        self.status = status
        self.body = (body or '')[:self.MAX_BODY_LENGTH]
        if message is None:
            message = f"{service} error {status}" if status else f"{service} request failed"
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['service'] = self.service
        data['status'] = self.status
        if self.body:
            data['details'] = self.body
        return data
