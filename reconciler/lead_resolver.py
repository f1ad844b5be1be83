"""Lead lookup by email with bounded backoff for CRM indexing lag."""
import logging
import re
import time
from typing import Any, Callable, Dict, Optional, Sequence

from reconciler.errors import InvalidEmail, NotFound
from reconciler.models import LeadMatch

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')

SURVEY_DATE_FIELD = 'Survey_scheduled__c'
PAID_FIELD = 'Survey_payment_complete__c'

BASE_FIELDS = ('Id', 'FirstName', 'LastName')
SWEEP_FIELDS = BASE_FIELDS + (SURVEY_DATE_FIELD, PAID_FIELD)


def is_valid_email(email: str) -> bool:
    return bool(email) and EMAIL_PATTERN.match(email) is not None


def to_lead_match(record: Dict[str, Any]) -> LeadMatch:
    """Convert a Lead query record into a LeadMatch."""
    display_name = ' '.join(
        part for part in (record.get('FirstName'), record.get('LastName')) if part
    )
    paid = record.get(PAID_FIELD)
    return LeadMatch(
        id=record['Id'],
        display_name=display_name,
        existing_survey_date=record.get(SURVEY_DATE_FIELD) or None,
        existing_paid_flag=None if paid is None else bool(paid)
    )


class LeadResolver:
    """
    Find the newest Lead for an email, waiting out search-index lag.

    After an empty attempt n (1-indexed) the resolver sleeps 2**n seconds,
    so five attempts wait 2+4+8+16 = 30 seconds at most. Query failures are
    not retried: they propagate from the CRM client immediately.
    """

    DEFAULT_MAX_ATTEMPTS = 5

    def __init__(self, crm, max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                 sleep: Optional[Callable[[float], None]] = None):
        """
        Args:
            crm: Object exposing find_lead_by_email(email, fields)
            max_attempts: Query attempts before giving up (default: 5)
            sleep: Delay function (default: time.sleep)
        """
        self.crm = crm
        self.max_attempts = max(1, max_attempts)
        self.sleep = sleep or time.sleep

    def resolve(self, email: str, fields: Sequence[str] = BASE_FIELDS) -> LeadMatch:
        """
        Resolve an email to a Lead.

        Args:
            email: Invitee email
            fields: Lead fields to select

        Returns:
            LeadMatch

        Raises:
            InvalidEmail: Before any query if the email is malformed
            NotFound: If every attempt returned zero records
            UpstreamFetchError: If a query fails
        """
        if not is_valid_email(email):
            raise InvalidEmail(email)

        for attempt in range(1, self.max_attempts + 1):
            logger.info(f"Searching for lead (attempt {attempt}/{self.max_attempts})")
            record = self.crm.find_lead_by_email(email, fields)
            if record:
                lead = to_lead_match(record)
                logger.info(f"Lead found on attempt {attempt}: {lead.id}")
                return lead

            if attempt < self.max_attempts:
                delay = 2 ** attempt
                logger.info(f"Lead not found, waiting {delay}s before retry")
                self.sleep(delay)

        logger.warning(f"Lead not found for {email} after {self.max_attempts} attempts")
        raise NotFound(email, self.max_attempts)
