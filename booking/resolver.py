"""Resolution of booking notifications into fully populated bookings."""
import logging
from typing import Union

from booking.calendly_client import CalendlyClient
from booking.normalizer import build_booking, invitee_fields
from reconciler.models import Booking, InviteeCreated, InviteeReference

logger = logging.getLogger(__name__)


class BookingDetailResolver:
    """Fetches the Calendly resources a notification refers to."""

    def __init__(self, calendly: CalendlyClient):
        self.calendly = calendly

    def resolve(self, notification: Union[InviteeCreated, InviteeReference]) -> Booking:
        """
        Build a Booking for an actionable notification.

        Embedded notifications only need the event resource; referenced
        ones fetch the invitee as well. Fetch failures propagate as
        UpstreamFetchError without retry.

        Args:
            notification: InviteeCreated or InviteeReference

        Returns:
            Booking
        """
        if isinstance(notification, InviteeCreated):
            invitee = invitee_fields(notification)
        elif notification.invitee_uri:
            invitee = self.calendly.fetch_invitee(notification.invitee_uri)
            invitee.setdefault('uri', notification.invitee_uri)
        else:
            logger.info("No invitee URI supplied; resolving from event only")
            invitee = {}

        event = self.calendly.fetch_event(notification.event_uri)
        event.setdefault('uri', notification.event_uri)

        booking = build_booking(event, invitee, email=notification.email)
        logger.info(
            f"Resolved booking for {booking.email}",
            extra={
                'survey_date': booking.survey_date,
                'paid': booking.paid,
                'event_timezone': booking.timezone
            }
        )
        return booking
