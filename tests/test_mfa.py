"""Unit tests for auth/mfa.py -- second factors and trusted devices.

Covers:
- enrolment returns a TOTP secret and ten XXXX-XXXX recovery codes
- a login for an MFA user binds an unverified session until a code is verified
- TOTP, emailed and recovery codes each verify; recovery codes are single-use
- emailed challenges burn after five wrong attempts and expire
- trusted devices skip the second factor until they expire
"""

import re

import pyotp
import pytest

from auth.errors import MfaInvalidCode, ValidationFailed
from auth.mfa import device_name
from auth.models import Company

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def enrolled(engine, acme, make_user):
    """(user, setup) for a user with TOTP enabled."""
    user = make_user("alice@acme.com", acme.id)
    return user, engine.mfa.enable(user.id)


@pytest.fixture
def strict_company(store):
    """Company that requires MFA from every member."""
    return store.get_company(store.create_company(Company(name="Strict", mfa_required=True)))


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


# ---------------------------------------------------------------------------
# Enrolment
# ---------------------------------------------------------------------------


def test_enable_issues_secret_and_recovery_codes(engine, enrolled):
    user, setup = enrolled
    assert setup.provisioning_uri.startswith("otpauth://totp/")
    assert len(setup.recovery_codes) == 10
    assert all(re.fullmatch(r"[A-Z0-9]{4}-[A-Z0-9]{4}", c) for c in setup.recovery_codes)

    status = engine.mfa.status(user.id)
    assert status.enabled and status.totp_enrolled
    assert status.recovery_codes_remaining == 10


def test_disable_discards_secret_codes_and_devices(engine, enrolled):
    user, _ = enrolled
    session = engine.sessions.bind_login(None, user.id, user.company_id, mfa_verified=False).session
    engine.mfa.verify(session, pyotp.TOTP(enrolled[1].secret).at(engine.clock()), trust_device=True)

    engine.mfa.disable(user.id)
    status = engine.mfa.status(user.id)
    assert not status.enabled
    assert not status.totp_enrolled
    assert status.recovery_codes_remaining == 0
    assert status.trusted_devices == []


def test_regenerate_requires_mfa_enabled(engine, acme, make_user):
    user = make_user("bob@acme.com", acme.id)
    with pytest.raises(ValidationFailed):
        engine.mfa.regenerate_recovery_codes(user.id)


def test_regenerate_replaces_old_codes(engine, enrolled):
    user, setup = enrolled
    fresh = engine.mfa.regenerate_recovery_codes(user.id)
    session = engine.sessions.bind_login(None, user.id, user.company_id, mfa_verified=False).session
    with pytest.raises(MfaInvalidCode):
        engine.mfa.verify(session, setup.recovery_codes[0])
    assert engine.mfa.verify(session, fresh[0]).method == "recovery"


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def test_login_leaves_session_unverified_until_totp(engine, enrolled, password):
    user, setup = enrolled
    result = engine.login.login(user.email, password)
    assert result.requires_mfa
    assert not result.session.mfa_verified

    with pytest.raises(MfaInvalidCode):
        engine.mfa.verify(result.session, _wrong(pyotp.TOTP(setup.secret).at(engine.clock())))
    assert not engine.sessions.get(result.session.sid).mfa_verified

    verified = engine.mfa.verify(result.session, pyotp.TOTP(setup.secret).at(engine.clock()))
    assert verified.method == "totp"
    assert engine.sessions.get(result.session.sid).mfa_verified


def test_recovery_code_is_single_use_and_loosely_typed(engine, enrolled):
    user, setup = enrolled
    session = engine.sessions.bind_login(None, user.id, user.company_id, mfa_verified=False).session
    code = setup.recovery_codes[0]

    assert engine.mfa.verify(session, code.replace("-", "").lower()).method == "recovery"
    assert engine.mfa.remaining_recovery_codes(user.id) == 9
    with pytest.raises(MfaInvalidCode):
        engine.mfa.verify(session, code)


def test_emailed_code_verifies_once(engine, strict_company, make_user):
    user = make_user("carol@strict.com", strict_company.id)
    session = engine.sessions.bind_login(None, user.id, strict_company.id, mfa_verified=False).session
    issued = engine.mfa.send_code(session)
    assert len(issued.code) == 6 and issued.code.isdigit()

    assert engine.mfa.verify(session, issued.code).method == "email"
    with pytest.raises(MfaInvalidCode):
        engine.mfa.verify(session, issued.code)


def test_emailed_code_burns_after_five_wrong_attempts(engine, strict_company, make_user):
    user = make_user("carol@strict.com", strict_company.id)
    session = engine.sessions.bind_login(None, user.id, strict_company.id, mfa_verified=False).session
    issued = engine.mfa.send_code(session)

    for _ in range(5):
        with pytest.raises(MfaInvalidCode):
            engine.mfa.verify(session, _wrong(issued.code))
    with pytest.raises(MfaInvalidCode):
        engine.mfa.verify(session, issued.code)


def test_emailed_code_expires(engine, clock, strict_company, make_user):
    user = make_user("carol@strict.com", strict_company.id)
    session = engine.sessions.bind_login(None, user.id, strict_company.id, mfa_verified=False).session
    issued = engine.mfa.send_code(session)
    clock.advance(minutes=issued.expires_in_minutes + 1)
    with pytest.raises(MfaInvalidCode):
        engine.mfa.verify(session, issued.code)


def test_new_code_supersedes_previous(engine, strict_company, make_user):
    user = make_user("carol@strict.com", strict_company.id)
    session = engine.sessions.bind_login(None, user.id, strict_company.id, mfa_verified=False).session
    first = engine.mfa.send_code(session)
    second = engine.mfa.send_code(session)
    if first.code != second.code:
        with pytest.raises(MfaInvalidCode):
            engine.mfa.verify(session, first.code)
    assert engine.mfa.verify(session, second.code).method == "email"


def test_company_requirement_applies_without_enrolment(engine, strict_company, make_user, password):
    make_user("carol@strict.com", strict_company.id)
    result = engine.login.login("carol@strict.com", password)
    assert result.requires_mfa
    assert not result.session.mfa_verified


# ---------------------------------------------------------------------------
# Trusted devices
# ---------------------------------------------------------------------------


def test_trusted_device_skips_second_factor_until_expiry(engine, clock, enrolled, password):
    user, setup = enrolled
    first = engine.login.login(user.email, password)
    verified = engine.mfa.verify(
        first.session,
        pyotp.TOTP(setup.secret).at(clock()),
        trust_device=True,
        user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) AppleWebKit/537.36 Chrome/120.0 Safari/537.36",
    )
    assert verified.device_token

    again = engine.login.login(user.email, password, device_token=verified.device_token)
    assert not again.requires_mfa
    assert again.session.mfa_verified
    assert engine.mfa.list_trusted_devices(user.id)[0].device_name == "Chrome on macOS"

    clock.advance(days=31)
    later = engine.login.login(user.email, password, device_token=verified.device_token)
    assert later.requires_mfa


def test_trusted_device_token_is_bound_to_its_user(engine, enrolled, acme, make_user):
    user, setup = enrolled
    other = make_user("dave@acme.com", acme.id)
    session = engine.sessions.bind_login(None, user.id, acme.id, mfa_verified=False).session
    token = engine.mfa.verify(session, pyotp.TOTP(setup.secret).at(engine.clock()), trust_device=True).device_token

    assert engine.mfa.is_trusted_device(user.id, token)
    assert not engine.mfa.is_trusted_device(other.id, token)


def test_device_name_labels():
    assert device_name(None) == "Unknown Device"
    assert device_name("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Safari/604.1") == "Safari on iOS"
    assert device_name("Mozilla/5.0 (Windows NT 10.0) Gecko/20100101 Firefox/121.0") == "Firefox on Windows"
