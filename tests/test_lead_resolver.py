"""Unit tests for LeadResolver and UpdateApplier."""
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from reconciler.errors import InvalidEmail, NotFound, UpstreamFetchError
from reconciler.lead_resolver import SWEEP_FIELDS, LeadResolver, is_valid_email
from reconciler.models import Booking, LeadMatch
from reconciler.update_applier import UpdateApplier, is_already_applied, lead_fields


@pytest.fixture
def booking():
    return Booking(
        email='a@b.com',
        start_time_utc=datetime(2025, 11, 3, 10, 0, tzinfo=timezone.utc),
        paid=True
    )


class TestLeadResolver:
    """Test cases for lead lookup with backoff."""

    def test_found_on_first_attempt(self, fake_crm, no_sleep):
        sleep, delays = no_sleep
        fake_crm.add_lead('a@b.com', '00Q1')

        lead = LeadResolver(fake_crm, sleep=sleep).resolve('a@b.com')

        assert lead.id == '00Q1'
        assert lead.display_name == 'Test Lead'
        assert fake_crm.queries == ['a@b.com']
        assert delays == []

    def test_found_after_index_lag(self, fake_crm, no_sleep):
        """Success at attempt k stops further attempts."""
        sleep, delays = no_sleep
        fake_crm.add_lead('a@b.com', '00Q1')
        fake_crm.index_lag['a@b.com'] = 2

        lead = LeadResolver(fake_crm, sleep=sleep).resolve('a@b.com')

        assert lead.id == '00Q1'
        assert len(fake_crm.queries) == 3
        assert delays == [2, 4]

    def test_exhaustion_after_five_attempts(self, fake_crm, no_sleep):
        sleep, delays = no_sleep

        with pytest.raises(NotFound) as exc_info:
            LeadResolver(fake_crm, sleep=sleep).resolve('a@b.com')

        assert len(fake_crm.queries) == 5
        assert delays == [2, 4, 8, 16]
        assert sum(delays) == 30
        assert exc_info.value.attempts == 5
        assert exc_info.value.status_code == 404

    def test_custom_attempt_count(self, fake_crm, no_sleep):
        sleep, delays = no_sleep

        with pytest.raises(NotFound):
            LeadResolver(fake_crm, max_attempts=1, sleep=sleep).resolve('a@b.com')

        assert len(fake_crm.queries) == 1
        assert delays == []

    def test_query_failure_is_not_retried(self, no_sleep):
        sleep, delays = no_sleep
        crm = Mock()
        crm.find_lead_by_email.side_effect = UpstreamFetchError('crm-query', 500)

        with pytest.raises(UpstreamFetchError) as exc_info:
            LeadResolver(crm, sleep=sleep).resolve('a@b.com')

        assert exc_info.value.service == 'crm-query'
        assert crm.find_lead_by_email.call_count == 1
        assert delays == []

    @pytest.mark.parametrize('email', ['', 'plainaddress', 'a@b', '@b.com', 'a b@c.com', 'a@b .com'])
    def test_invalid_email_fails_fast(self, email, no_sleep):
        sleep, delays = no_sleep
        crm = Mock()

        with pytest.raises(InvalidEmail):
            LeadResolver(crm, sleep=sleep).resolve(email)

        crm.find_lead_by_email.assert_not_called()
        assert delays == []

    @pytest.mark.parametrize('email', ['a@b.com', "o'brien@x.co.uk", 'first.last+tag@sub.example.org'])
    def test_valid_emails(self, email):
        assert is_valid_email(email)

    def test_sweep_fields_are_loaded(self, fake_crm, no_sleep):
        sleep, _ = no_sleep
        fake_crm.add_lead('a@b.com', '00Q1', Survey_scheduled__c='2025-11-03',
                          Survey_payment_complete__c=False)

        lead = LeadResolver(fake_crm, sleep=sleep).resolve('a@b.com', SWEEP_FIELDS)

        assert lead.existing_survey_date == '2025-11-03'
        assert lead.existing_paid_flag is False


class TestUpdateApplier:
    """Test cases for the idempotent lead update."""

    def test_writes_exactly_two_fields(self, fake_crm, booking):
        fake_crm.add_lead('a@b.com', '00Q1', Company='Acme')

        written = UpdateApplier(fake_crm).apply('00Q1', booking)

        assert written == {'Survey_scheduled__c': '2025-11-03', 'Survey_payment_complete__c': True}
        assert fake_crm.patches == [('00Q1', written)]
        assert fake_crm.lead('a@b.com')['Company'] == 'Acme'

    def test_missing_date_is_sent_as_empty_string(self):
        booking = Booking(email='a@b.com', start_time_utc=None)

        assert lead_fields(booking) == {
            'Survey_scheduled__c': '',
            'Survey_payment_complete__c': False
        }

    def test_applying_twice_is_idempotent(self, fake_crm, booking):
        fake_crm.add_lead('a@b.com', '00Q1')
        applier = UpdateApplier(fake_crm)

        applier.apply('00Q1', booking)
        first = dict(fake_crm.lead('a@b.com'))
        applier.apply('00Q1', booking)

        assert fake_crm.lead('a@b.com') == first
        assert fake_crm.patches[0] == fake_crm.patches[1]

    def test_patch_failure_propagates(self, booking):
        crm = Mock()
        crm.patch_lead.side_effect = UpstreamFetchError('crm-patch', 400, body='bad field')

        with pytest.raises(UpstreamFetchError) as exc_info:
            UpdateApplier(crm).apply('00Q1', booking)

        assert exc_info.value.to_dict()['details'] == 'bad field'


class TestIsAlreadyApplied:
    """Test cases for the sweep short-circuit."""

    def test_both_fields_set(self, booking):
        lead = LeadMatch(id='00Q1', existing_survey_date='2025-10-01', existing_paid_flag=True)

        assert is_already_applied(lead, booking)

    def test_matching_unpaid_values(self):
        booking = Booking(email='a@b.com',
                          start_time_utc=datetime(2025, 11, 3, tzinfo=timezone.utc))
        lead = LeadMatch(id='00Q1', existing_survey_date='2025-11-03', existing_paid_flag=False)

        assert is_already_applied(lead, booking)

    @pytest.mark.parametrize('survey_date,paid_flag', [
        (None, None),
        ('2025-11-03', False),
        (None, True),
        ('2025-11-02', None),
    ])
    def test_needs_update(self, booking, survey_date, paid_flag):
        lead = LeadMatch(id='00Q1', existing_survey_date=survey_date, existing_paid_flag=paid_flag)

        assert not is_already_applied(lead, booking)
