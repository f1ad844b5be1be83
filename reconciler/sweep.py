"""Periodic sweep reconciling recent Calendly bookings with Salesforce leads."""
import hmac
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from booking.calendly_client import CalendlyClient
from booking.normalizer import build_booking
from reconciler.errors import NotFound, ReconciliationError, Unauthorized, UpstreamFetchError
from reconciler.lead_resolver import SWEEP_FIELDS, LeadResolver
from reconciler.models import SweepResult
from reconciler.update_applier import UpdateApplier, is_already_applied

logger = logging.getLogger(__name__)


def authorize_trigger(headers: Optional[Mapping[str, str]], secret: str) -> None:
    """
    Check the sweep trigger's bearer secret.

    An empty secret disables the check.

    Raises:
        Unauthorized: If the Authorization header does not match
    """
    if not secret:
        logger.warning("CRON_SECRET is not set; sweep trigger is not authenticated")
        return
    headers = {str(k).lower(): v for k, v in (headers or {}).items()}
    presented = headers.get('authorization') or ''
    if not hmac.compare_digest(presented.encode(), f"Bearer {secret}".encode()):
        logger.error("Unauthorized sweep trigger")
        raise Unauthorized('Unauthorized')


class ReconciliationSweep:
    """
    Re-applies recent bookings to leads the webhook may have missed.

    Events and invitees are processed sequentially. A per-invitee failure
    is counted and the sweep moves on; only listing the events or
    authenticating with Salesforce can fail the whole run.
    """

    def __init__(self, calendly: CalendlyClient, crm, lead_resolver: LeadResolver,
                 applier: UpdateApplier, organization_uri: str,
                 lookback_hours: int = 24, max_duration_seconds: float = 270,
                 max_invitees: int = 500,
                 clock: Callable[[], float] = time.monotonic,
                 now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.calendly = calendly
        self.crm = crm
        self.lead_resolver = lead_resolver
        self.applier = applier
        self.organization_uri = organization_uri
        self.lookback_hours = lookback_hours
        self.max_duration_seconds = max_duration_seconds
        self.max_invitees = max_invitees
        self.clock = clock
        self.now = now

    def run(self) -> SweepResult:
        """
        Run one sweep.

        Returns:
            SweepResult with processed, skipped and error counts

        Raises:
            UpstreamFetchError: If events cannot be listed or CRM auth fails
        """
        started = self.clock()
        min_start = self.now() - timedelta(hours=self.lookback_hours)
        min_start_time = min_start.strftime('%Y-%m-%dT%H:%M:%S.%fZ')

        logger.info(f"Fetching Calendly bookings since {min_start_time}")
        events = list(self.calendly.list_scheduled_events(
            organization=self.organization_uri,
            min_start_time=min_start_time
        ))
        result = SweepResult(total_events=len(events))
        logger.info(f"Found {len(events)} scheduled events")
        if not events:
            return result

        self.crm.authenticate()

        seen = 0
        for event in events:
            if self._out_of_budget(started, seen):
                result.truncated = True
                break

            event_uri = event.get('uri')
            if not event_uri:
                logger.error("Skipping listed event without a uri")
                result.errors += 1
                continue
            logger.info(f"Processing event {event_uri}")
            try:
                invitees = list(self.calendly.list_invitees(event_uri))
            except UpstreamFetchError as e:
                logger.error(f"Failed to fetch invitees for {event_uri}: {e}")
                result.errors += 1
                result.error_details.append(f"{event_uri}: {e}")
                continue

            for invitee in invitees:
                if self._out_of_budget(started, seen):
                    result.truncated = True
                    break
                seen += 1
                self._process_invitee(event, invitee, result)
            if result.truncated:
                break

        if result.truncated:
            logger.warning(
                f"Sweep stopped early after {seen} invitees",
                extra={'max_invitees': self.max_invitees,
                       'max_duration_seconds': self.max_duration_seconds}
            )
        logger.info(
            "Sweep complete",
            extra={
                'total_events': result.total_events,
                'processed': result.processed,
                'skipped': result.skipped,
                'errors': result.errors
            }
        )
        return result

    def _out_of_budget(self, started: float, seen: int) -> bool:
        if seen >= self.max_invitees:
            return True
        return self.clock() - started >= self.max_duration_seconds

    def _process_invitee(self, event: Dict[str, Any], invitee: Dict[str, Any],
                         result: SweepResult) -> None:
        email = (invitee.get('email') or '').strip()
        if not email:
            logger.info("Skipping invitee without email")
            result.skipped += 1
            return

        try:
            booking = build_booking(event, invitee)
            lead = self.lead_resolver.resolve(email, SWEEP_FIELDS)
            if is_already_applied(lead, booking):
                logger.info(f"Lead {lead.display_name} ({lead.id}) already up to date")
                result.skipped += 1
                return
            self.applier.apply(lead.id, booking)
        except NotFound:
            logger.info(f"Lead not found for {email}")
            result.skipped += 1
            return
        except ReconciliationError as e:
            logger.error(f"Failed to reconcile {email}: {e}")
            result.errors += 1
            result.error_details.append(f"{email}: {e}")
            return

        result.processed += 1
