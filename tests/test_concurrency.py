"""Concurrent webhook delivery and sweep run against the same lead."""
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

from booking.resolver import BookingDetailResolver
from reconciler.engine import ReconciliationEngine
from reconciler.lead_resolver import LeadResolver
from reconciler.sweep import ReconciliationSweep
from reconciler.update_applier import UpdateApplier

EVENT_URI = 'https://api.calendly.com/scheduled_events/ev1'
EVENT = {'uri': EVENT_URI, 'start_time': '2025-11-03T10:00:00.000000Z'}
INVITEE = {
    'email': 'a@b.com',
    'payment': {'amount': 120, 'currency': 'USD', 'provider': 'stripe'},
}
EXPECTED = {'Survey_scheduled__c': '2025-11-03', 'Survey_payment_complete__c': True}


def test_webhook_and_sweep_converge(fake_crm):
    """Interleaved writers compute the same two fields, so last writer wins safely."""
    fake_crm.add_lead('a@b.com', '00Q1', Company='Acme')
    # Both paths miss the lead at first, so their lookups overlap
    fake_crm.index_lag['a@b.com'] = 2
    barrier = threading.Barrier(2)

    def sleep(_):
        barrier.wait(timeout=5)

    calendly = Mock()
    calendly.fetch_event.side_effect = lambda uri: dict(EVENT)
    calendly.fetch_invitee.side_effect = lambda uri: dict(INVITEE)
    calendly.list_scheduled_events.return_value = [dict(EVENT)]
    calendly.list_invitees.side_effect = lambda uri: [dict(INVITEE)]

    engine = ReconciliationEngine(
        booking_resolver=BookingDetailResolver(calendly),
        lead_resolver=LeadResolver(fake_crm, sleep=sleep),
        applier=UpdateApplier(fake_crm)
    )
    sweep = ReconciliationSweep(
        calendly=calendly,
        crm=fake_crm,
        lead_resolver=LeadResolver(fake_crm, max_attempts=3, sleep=sleep),
        applier=UpdateApplier(fake_crm),
        organization_uri='https://api.calendly.com/organizations/org1'
    )
    webhook_body = {
        'eventUri': EVENT_URI,
        'inviteeUri': f"{EVENT_URI}/invitees/inv1",
        'email': 'a@b.com'
    }

    with ThreadPoolExecutor(max_workers=2) as pool:
        webhook_future = pool.submit(engine.process, webhook_body)
        sweep_future = pool.submit(sweep.run)
        webhook_result = webhook_future.result(timeout=10)
        sweep_result = sweep_future.result(timeout=10)

    assert webhook_result['ok'] is True
    assert sweep_result.errors == 0
    assert sweep_result.processed + sweep_result.skipped == 1
    assert fake_crm.patches
    assert all(fields == EXPECTED for _, fields in fake_crm.patches)

    lead = fake_crm.lead('a@b.com')
    assert lead['Survey_scheduled__c'] == '2025-11-03'
    assert lead['Survey_payment_complete__c'] is True
    assert lead['Company'] == 'Acme'


def test_repeated_concurrent_deliveries(fake_crm):
    """Duplicate webhook deliveries racing each other leave one consistent state."""
    fake_crm.add_lead('a@b.com', '00Q1')
    calendly = Mock()
    calendly.fetch_event.side_effect = lambda uri: dict(EVENT)
    engine = ReconciliationEngine(
        booking_resolver=BookingDetailResolver(calendly),
        lead_resolver=LeadResolver(fake_crm, sleep=lambda s: None),
        applier=UpdateApplier(fake_crm)
    )
    body = {
        'event': 'invitee.created',
        'payload': {'event': EVENT_URI, 'email': 'a@b.com', 'payment': INVITEE['payment']}
    }

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: engine.process(body), range(8)))

    assert all(r['ok'] for r in results)
    assert len(fake_crm.patches) == 8
    assert {tuple(sorted(f.items())) for _, f in fake_crm.patches} == {tuple(sorted(EXPECTED.items()))}
    assert fake_crm.lead('a@b.com')['Survey_payment_complete__c'] is True
