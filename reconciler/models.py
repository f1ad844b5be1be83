"""Data models for booking reconciliation."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

LOCAL_TIME_FORMAT = '%d/%m/%Y, %H:%M:%S'


@dataclass(frozen=True)
class InviteeCreated:
    """Calendly ``invitee.created`` webhook with invitee fields embedded."""
    event_uri: str
    email: str
    invitee_uri: Optional[str] = None
    name: Optional[str] = None
    timezone: Optional[str] = None
    payment: Optional[Dict[str, Any]] = None
    payment_status: Optional[str] = None
    questions_and_answers: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class InviteeReference:
    """Locator triple; the invitee resource must be fetched by URI."""
    event_uri: str
    email: str
    invitee_uri: Optional[str] = None


@dataclass(frozen=True)
class Ignored:
    """Webhook for an event type other than ``invitee.created``."""
    event_type: str


Notification = Union[InviteeCreated, InviteeReference, Ignored]


@dataclass
class Booking:
    """Canonical record of one scheduled event and its attendee."""
    email: str
    start_time_utc: Optional[datetime]
    timezone: str = 'UTC'
    paid: bool = False
    amount: Optional[Any] = None
    currency: Optional[str] = None
    name: Optional[str] = None
    event_uri: Optional[str] = None
    invitee_uri: Optional[str] = None

    @property
    def survey_date(self) -> Optional[str]:
        """UTC calendar date of the start time (YYYY-MM-DD)."""
        if self.start_time_utc is None:
            return None
        return self.start_time_utc.strftime('%Y-%m-%d')

    @property
    def start_time_iso(self) -> Optional[str]:
        if self.start_time_utc is None:
            return None
        return self.start_time_utc.strftime('%Y-%m-%dT%H:%M:%SZ')

    @property
    def start_time_local(self) -> Optional[str]:
        """
        Start time rendered in the booking timezone.

        Best effort: an unknown timezone, or a name that resolves to a
        directory or an unreadable path, yields None instead of an error.
        """
        if self.start_time_utc is None:
            return None
        try:
            local = self.start_time_utc.astimezone(ZoneInfo(self.timezone))
        except (ZoneInfoNotFoundError, ValueError, OSError) as e:
            logger.warning(f"Cannot format start time in '{self.timezone}': {e}")
            return None
        return local.strftime(LOCAL_TIME_FORMAT)

    def to_response(self) -> Dict[str, Any]:
        """Booking context included in every webhook response."""
        return {
            'email': self.email,
            'startTime': self.start_time_iso,
            'eventTimezone': self.timezone,
            'startTimeLocal': self.start_time_local,
            'surveyDate': self.survey_date,
            'paid': self.paid,
            'amount': self.amount,
            'currency': self.currency,
        }


@dataclass
class LeadMatch:
    """CRM lead as returned by the lookup query."""
    id: str
    display_name: str = ''
    existing_survey_date: Optional[str] = None
    existing_paid_flag: Optional[bool] = None


@dataclass
class SweepResult:
    """Aggregate counts of one reconciliation sweep run."""
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    total_events: int = 0
    truncated: bool = False
    error_details: List[str] = field(default_factory=list)
