from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, settings, strategies as st

from reportgate.access_policy import (
    AccessControlPolicy,
    AccessDecision,
    ReasonCode,
    RequestContext,
    as_utc,
    describe,
    evaluate,
)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
UTC_MINUS_5 = timezone(timedelta(hours=-5))
EMAILS = ['a@x.com', 'b@x.com', 'inspector@roofing.example', 'owner@inspections.example']

emails = st.sampled_from(EMAILS)
passwords = st.text(min_size=1, max_size=12)
moments = st.datetimes(
    min_value=datetime(2000, 1, 1),
    max_value=datetime(2100, 1, 1),
    timezones=st.just(timezone.utc),
)


@st.composite
def policies(draw, is_public=st.booleans()):
    max_count = draw(st.none() | st.integers(min_value=0, max_value=50))
    return AccessControlPolicy(
        is_public=draw(is_public),
        expires_at=draw(st.none() | moments),
        access_password=draw(st.none() | passwords),
        allowed_emails=draw(st.frozensets(emails, max_size=3)),
        max_access_count=max_count,
        current_access_count=draw(st.integers(min_value=0, max_value=60)),
    )


contexts = st.builds(
    RequestContext,
    now=moments,
    requester_email=st.none() | emails,
    supplied_password=st.none() | passwords,
)


def _ctx(**kwargs):
    kwargs.setdefault('now', NOW)
    return RequestContext(**kwargs)


def test_missing_policy_allows_without_counters():
    decision = evaluate(None, _ctx())
    assert decision == AccessDecision(allowed=True, reason=None, remaining_access=None)


def test_public_policy_without_restrictions_allows():
    decision = evaluate(AccessControlPolicy(is_public=True), _ctx())
    assert decision.allowed
    assert decision.reason is None
    assert decision.remaining_access is None


@settings(max_examples=200)
@given(policy=policies(is_public=st.just(False)), ctx=contexts)
def test_private_policy_denies_everyone(policy, ctx):
    assert evaluate(policy, ctx) == AccessDecision.deny(ReasonCode.NOT_PUBLIC)


@settings(max_examples=200)
@given(policy=policies(is_public=st.just(True)), expiry=moments)
def test_expiry_boundary(policy, expiry):
    policy = AccessControlPolicy(
        is_public=True,
        expires_at=expiry,
        access_password=policy.access_password,
        allowed_emails=policy.allowed_emails,
        max_access_count=policy.max_access_count,
        current_access_count=policy.current_access_count,
    )
    before = evaluate(policy, _ctx(now=expiry - timedelta(seconds=1)))
    after = evaluate(policy, _ctx(now=expiry + timedelta(seconds=1)))
    assert before.reason is not ReasonCode.EXPIRED
    assert after == AccessDecision.deny(ReasonCode.EXPIRED)


def test_access_exactly_at_expiry_is_still_allowed():
    policy = AccessControlPolicy(is_public=True, expires_at=NOW)
    assert evaluate(policy, _ctx(now=NOW)).allowed


@settings(max_examples=200)
@given(ceiling=st.integers(min_value=0, max_value=100), used=st.integers(min_value=0, max_value=120))
def test_quota_is_a_hard_ceiling(ceiling, used):
    policy = AccessControlPolicy(is_public=True, max_access_count=ceiling, current_access_count=used)
    decision = evaluate(policy, _ctx())
    if used >= ceiling:
        assert decision == AccessDecision.deny(ReasonCode.QUOTA_EXCEEDED)
    else:
        assert decision == AccessDecision.allow(remaining_access=ceiling - used)


@settings(max_examples=300)
@given(policy=policies(), ctx=contexts)
def test_first_failing_check_supplies_reason(policy, ctx):
    decision = evaluate(policy, ctx)
    if not policy.is_public:
        expected = ReasonCode.NOT_PUBLIC
    elif policy.expires_at is not None and ctx.now > policy.expires_at:
        expected = ReasonCode.EXPIRED
    elif policy.allowed_emails and ctx.requester_email not in policy.allowed_emails:
        expected = ReasonCode.EMAIL_NOT_AUTHORIZED
    elif policy.access_password is not None and ctx.supplied_password != policy.access_password:
        expected = ReasonCode.INVALID_PASSWORD
    elif policy.max_access_count is not None and policy.current_access_count >= policy.max_access_count:
        expected = ReasonCode.QUOTA_EXCEEDED
    else:
        expected = None
    assert decision.reason is expected
    assert decision.allowed is (expected is None)


def test_email_allow_list():
    policy = AccessControlPolicy(is_public=True, allowed_emails=frozenset({'a@x.com'}))
    assert evaluate(policy, _ctx(requester_email='b@x.com')).reason is ReasonCode.EMAIL_NOT_AUTHORIZED
    assert evaluate(policy, _ctx()).reason is ReasonCode.EMAIL_NOT_AUTHORIZED
    assert evaluate(policy, _ctx(requester_email='a@x.com')).allowed


def test_password_is_exact_match():
    policy = AccessControlPolicy(is_public=True, access_password='abc123')
    assert evaluate(policy, _ctx(supplied_password='ABC123')).reason is ReasonCode.INVALID_PASSWORD
    assert evaluate(policy, _ctx(supplied_password='abc123 ')).reason is ReasonCode.INVALID_PASSWORD
    assert evaluate(policy, _ctx()).reason is ReasonCode.INVALID_PASSWORD
    assert evaluate(policy, _ctx(supplied_password='abc123')).allowed


def test_email_checked_before_password():
    policy = AccessControlPolicy(
        is_public=True,
        allowed_emails=frozenset({'a@x.com'}),
        access_password='abc123',
    )
    decision = evaluate(policy, _ctx(requester_email='b@x.com', supplied_password='wrong'))
    assert decision.reason is ReasonCode.EMAIL_NOT_AUTHORIZED


def test_zero_quota_denies_first_view():
    policy = AccessControlPolicy(is_public=True, max_access_count=0)
    assert evaluate(policy, _ctx()).reason is ReasonCode.QUOTA_EXCEEDED


def test_naive_timestamps_are_treated_as_utc():
    policy = AccessControlPolicy(is_public=True, expires_at=datetime(2026, 6, 1, 11, 0))
    assert evaluate(policy, _ctx()).reason is ReasonCode.EXPIRED


@pytest.mark.parametrize(
    'policy, ctx',
    [
        (AccessControlPolicy(is_public='yes'), _ctx()),
        (AccessControlPolicy(is_public=True, max_access_count='3'), _ctx()),
        (AccessControlPolicy(is_public=True, current_access_count=-1), _ctx()),
        (AccessControlPolicy(is_public=True, expires_at='2026-01-01'), _ctx()),
        (AccessControlPolicy(is_public=True, expires_at=datetime(9999, 12, 31, 23, 0, tzinfo=UTC_MINUS_5)), _ctx()),
        (AccessControlPolicy(is_public=True, access_password='abc'), _ctx(supplied_password=123)),
    ],
)
def test_malformed_input_is_denied(policy, ctx):
    assert evaluate(policy, ctx) == AccessDecision.deny(ReasonCode.MALFORMED_POLICY)


def test_decision_carries_message():
    decision = AccessDecision.deny(ReasonCode.EXPIRED)
    assert decision.message == 'Report access has expired'
    assert decision.to_dict() == {
        'allowed': False,
        'reason': 'EXPIRED',
        'message': 'Report access has expired',
        'remaining_access': None,
    }
    assert describe(None) is None


def test_policy_dict_masks_password():
    policy = AccessControlPolicy(is_public=True, access_password='secret', allowed_emails=frozenset({'b@x.com', 'a@x.com'}))
    data = policy.to_dict()
    assert 'access_password' not in data
    assert data['has_password'] is True
    assert data['allowed_emails'] == ['a@x.com', 'b@x.com']
    assert policy.to_dict(include_password=True)['access_password'] == 'secret'


def test_as_utc_reports_out_of_range_moments_as_value_errors():
    with pytest.raises(ValueError):
        as_utc(datetime(9999, 12, 31, 23, 0, tzinfo=UTC_MINUS_5))
    assert as_utc(datetime(9999, 12, 31, 18, 0, tzinfo=UTC_MINUS_5)) == datetime(9999, 12, 31, 23, 0, tzinfo=timezone.utc)
