"""Normalization of inbound booking notifications into canonical bookings."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from reconciler.errors import MalformedPayload
from reconciler.models import (
    Booking,
    Ignored,
    InviteeCreated,
    InviteeReference,
    Notification,
)

logger = logging.getLogger(__name__)

INVITEE_CREATED = 'invitee.created'
DEFAULT_TIMEZONE = 'UTC'


def parse_notification(body: Any) -> Notification:
    """
    Classify an inbound webhook body into one notification variant.

    Args:
        body: Decoded JSON body

    Returns:
        InviteeCreated, InviteeReference or Ignored

    Raises:
        MalformedPayload: If no known shape matches or a required field is missing
    """
    if not isinstance(body, dict):
        raise MalformedPayload('Request body must be a JSON object')

    has_event_type = isinstance(body.get('event'), str)
    if has_event_type and 'payload' in body:
        return _parse_calendly_webhook(body)
    if 'eventUri' in body or 'inviteeUri' in body:
        return _parse_uri_triple(body)
    if has_event_type:
        # Non-created types are ignored even without a payload
        return _parse_calendly_webhook(body)

    raise MalformedPayload(
        'Unrecognized payload: expected a Calendly webhook or eventUri, inviteeUri, email'
    )


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _parse_calendly_webhook(body: Dict[str, Any]) -> Notification:
    event_type = body['event']
    if event_type != INVITEE_CREATED:
        logger.info(f"Ignoring webhook event type '{event_type}'")
        return Ignored(event_type=event_type)

    payload = body.get('payload')
    if not isinstance(payload, dict):
        raise MalformedPayload('payload must be an object')

    event_uri = _text(payload.get('event'))
    email = _text(payload.get('email'))
    if not event_uri or not email:
        raise MalformedPayload('payload.event and payload.email are required')

    name = _text(payload.get('name'))
    if not name:
        parts = [_text(payload.get('first_name')), _text(payload.get('last_name'))]
        name = ' '.join(p for p in parts if p) or None

    payment = payload.get('payment')
    answers = payload.get('questions_and_answers')

    return InviteeCreated(
        event_uri=event_uri,
        email=email,
        invitee_uri=_text(payload.get('uri')),
        name=name,
        timezone=_text(payload.get('timezone')),
        payment=payment if isinstance(payment, dict) else None,
        payment_status=_text(payload.get('payment_status')),
        questions_and_answers=answers if isinstance(answers, list) else []
    )


def _parse_uri_triple(body: Dict[str, Any]) -> Notification:
    event_uri = _text(body.get('eventUri'))
    email = _text(body.get('email'))
    if not event_uri or not email:
        raise MalformedPayload('eventUri and email are required')
    return InviteeReference(
        event_uri=event_uri,
        email=email,
        invitee_uri=_text(body.get('inviteeUri'))
    )


def parse_start_time(value: Any) -> Optional[datetime]:
    """
    Parse an ISO 8601 start time into an aware UTC datetime.

    Naive values are taken as UTC. Unparseable values yield None.
    """
    text = _text(value)
    if not text:
        return None
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning(f"Invalid start_time format: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _nonzero(value: Any) -> bool:
    if isinstance(value, str):
        value = value.strip()
        try:
            return float(value) != 0
        except ValueError:
            return bool(value)
    return bool(value)


def has_payment_record(payment: Optional[Dict[str, Any]]) -> bool:
    if not payment:
        return False
    return any(
        _nonzero(payment.get(key)) for key in ('amount', 'external_id', 'provider')
    )


def has_paid_status(payment: Optional[Dict[str, Any]], payment_status: Any = None) -> bool:
    statuses = [payment_status]
    if payment:
        statuses.append(payment.get('status'))
    return any(isinstance(s, str) and s.strip().lower() == 'paid' for s in statuses)


def has_successful_payment(payment: Optional[Dict[str, Any]]) -> bool:
    return bool(payment) and payment.get('successful') is True


def has_payment_answer(questions_and_answers: Optional[Iterable[Any]]) -> bool:
    """
    Heuristic: a non-empty answer under a question mentioning "payment".

    Any non-empty answer counts, including "no". Kept as a fallback for
    payload shapes without a structured payment record.
    """
    for item in questions_and_answers or []:
        if not isinstance(item, dict):
            continue
        question = str(item.get('question') or '')
        if 'payment' in question.lower() and _text(item.get('answer')):
            return True
    return False


def detect_payment(invitee: Dict[str, Any]) -> bool:
    """True if any payment signal on the invitee fields is present."""
    payment = invitee.get('payment')
    if not isinstance(payment, dict):
        payment = None
    return (
        has_payment_record(payment)
        or has_paid_status(payment, invitee.get('payment_status'))
        or has_successful_payment(payment)
        or has_payment_answer(invitee.get('questions_and_answers'))
    )


def invitee_fields(notification: InviteeCreated) -> Dict[str, Any]:
    """Embedded webhook fields in the shape of a Calendly invitee resource."""
    return {
        'email': notification.email,
        'name': notification.name,
        'timezone': notification.timezone,
        'payment': notification.payment,
        'payment_status': notification.payment_status,
        'questions_and_answers': notification.questions_and_answers,
        'uri': notification.invitee_uri,
    }


def build_booking(event: Dict[str, Any], invitee: Dict[str, Any],
                  email: Optional[str] = None) -> Booking:
    """
    Combine an event resource and invitee fields into a Booking.

    Args:
        event: Calendly scheduled event resource
        invitee: Calendly invitee resource (or embedded webhook fields)
        email: Email taken from the notification; overrides the invitee's

    Returns:
        Booking

    Raises:
        MalformedPayload: If no email is available
    """
    email = _text(email) or _text(invitee.get('email'))
    if not email:
        raise MalformedPayload('Invitee email is required')

    payment = invitee.get('payment') if isinstance(invitee.get('payment'), dict) else None
    tz = _text(invitee.get('timezone')) or _text(event.get('timezone')) or DEFAULT_TIMEZONE

    return Booking(
        email=email,
        start_time_utc=parse_start_time(event.get('start_time')),
        timezone=tz,
        paid=detect_payment(invitee),
        amount=payment.get('amount') if payment else None,
        currency=payment.get('currency') if payment else None,
        name=_text(invitee.get('name')),
        event_uri=_text(event.get('uri')),
        invitee_uri=_text(invitee.get('uri'))
    )
