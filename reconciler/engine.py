"""Webhook reconciliation flow: notification -> booking -> lead -> update."""
import logging
from typing import Any, Dict

from booking.normalizer import parse_notification
from booking.resolver import BookingDetailResolver
from reconciler.errors import InvalidEmail, ReconciliationError
from reconciler.lead_resolver import LeadResolver, is_valid_email
from reconciler.models import Ignored
from reconciler.update_applier import UpdateApplier

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """Processes one webhook delivery end to end."""

    def __init__(self, booking_resolver: BookingDetailResolver,
                 lead_resolver: LeadResolver, applier: UpdateApplier):
        self.booking_resolver = booking_resolver
        self.lead_resolver = lead_resolver
        self.applier = applier

    def process(self, body: Any) -> Dict[str, Any]:
        """
        Reconcile one inbound webhook body.

        Args:
            body: Decoded JSON body

        Returns:
            Success response body; ignored event types return
            ``processed: False``

        Raises:
            ReconciliationError: Any failure. Errors raised after the booking
                was resolved carry its fields in ``context``.
        """
        notification = parse_notification(body)
        if isinstance(notification, Ignored):
            return {
                'ok': True,
                'processed': False,
                'reason': f"Event type '{notification.event_type}' is not handled"
            }

        if not is_valid_email(notification.email):
            raise InvalidEmail(notification.email)

        booking = self.booking_resolver.resolve(notification)
        try:
            lead = self.lead_resolver.resolve(booking.email)
            self.applier.apply(lead.id, booking)
        except ReconciliationError as e:
            e.context = booking.to_response()
            raise

        logger.info(f"Lead {lead.id} updated for {booking.email}")
        response = {'ok': True, 'processed': True}
        response.update(booking.to_response())
        response['leadId'] = lead.id
        return response
