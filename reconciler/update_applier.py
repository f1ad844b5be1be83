"""Idempotent write-back of booking fields onto a Lead."""
import logging
from typing import Any, Dict

from reconciler.lead_resolver import PAID_FIELD, SURVEY_DATE_FIELD
from reconciler.models import Booking, LeadMatch

logger = logging.getLogger(__name__)


def lead_fields(booking: Booking) -> Dict[str, Any]:
    """
    The two managed Lead fields for a booking.

    Salesforce has no null date over this API, so a missing date is sent
    as an empty string.
    """
    return {
        SURVEY_DATE_FIELD: booking.survey_date or '',
        PAID_FIELD: bool(booking.paid),
    }


def is_already_applied(lead: LeadMatch, booking: Booking) -> bool:
    """
    True when the sweep has nothing to write for this lead.

    Either both managed fields are already set, or they already hold
    exactly what the booking would write.
    """
    if lead.existing_survey_date and lead.existing_paid_flag:
        return True
    return (
        (lead.existing_survey_date or '') == (booking.survey_date or '')
        and bool(lead.existing_paid_flag) == bool(booking.paid)
    )


class UpdateApplier:
    """Writes both managed fields together in one PATCH."""

    def __init__(self, crm):
        """
        Args:
            crm: Object exposing patch_lead(lead_id, fields)
        """
        self.crm = crm

    def apply(self, lead_id: str, booking: Booking) -> Dict[str, Any]:
        """
        Overwrite the survey date and paid flag on a Lead.

        Re-applying the same booking converges on the same state.

        Returns:
            The fields that were written

        Raises:
            UpstreamFetchError: service "crm-patch" if the update is rejected
        """
        fields = lead_fields(booking)
        logger.info(f"Updating lead {lead_id}", extra={'fields': fields})
        self.crm.patch_lead(lead_id, fields)
        return fields
