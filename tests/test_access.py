"""Unit tests for auth/access.py -- access scope, company switching and memberships.

Covers:
- company users only see and enter companies with an ACTIVE membership
- a missing company and a forbidden company give the same error
- switching stamps last_accessed_at and feeds the "recent" list
- company search treats % and _ literally
- internal users: unrestricted with no grants, restricted after the first grant
- membership deactivation revokes sessions in that company, exactly once
"""

import pytest

from auth.errors import AlreadyMember, CompanyNotFound, NoActiveMembership, NotFound, ValidationFailed
from auth.models import Company, RestrictedTo, Unrestricted, UserType

# ---------------------------------------------------------------------------
# Company users
# ---------------------------------------------------------------------------


@pytest.fixture
def alice(engine, acme, globex, make_user):
    """Active member of Acme with an inactive Globex membership."""
    user = make_user("alice@acme.com", acme.id)
    engine.access.add_membership(user.id, globex.id)
    engine.access.deactivate_membership(user.id, globex.id)
    return user


def test_scope_lists_only_active_memberships(engine, acme, alice):
    scope = engine.access.access_scope(alice)
    assert scope == RestrictedTo(frozenset({acme.id}))
    listing = engine.access.list_companies(alice)
    assert [c.id for c in listing.results] == [acme.id]
    assert listing.total == 1
    assert not listing.has_more
    assert not engine.access.can_switch_companies(alice)


def test_switch_to_inactive_membership_is_refused(engine, acme, globex, alice):
    sid = engine.sessions.bind_login(None, alice.id, acme.id).session.sid
    with pytest.raises(NoActiveMembership):
        engine.access.switch_company(sid, globex.id)
    assert engine.access.active_company(sid).id == acme.id


def test_switch_to_unknown_company_looks_like_forbidden(engine, acme, alice):
    sid = engine.sessions.bind_login(None, alice.id, acme.id).session.sid
    with pytest.raises(NoActiveMembership):
        engine.access.switch_company(sid, 99999)


def test_switch_stamps_recent_companies(engine, acme, globex, make_user):
    user = make_user("carol@acme.com", acme.id)
    engine.access.add_membership(user.id, globex.id, assign_defaults=False)
    assert engine.access.can_switch_companies(user)

    sid = engine.sessions.bind_login(None, user.id, acme.id).session.sid
    company = engine.access.switch_company(sid, globex.id, ip_address="10.0.0.7")
    assert company.id == globex.id
    assert engine.access.active_company(sid).id == globex.id

    listing = engine.access.list_companies(user)
    assert [c.id for c in listing.recent] == [globex.id]
    assert listing.recent[0].last_accessed_at is not None


def test_most_recently_accessed_company_is_default(engine, store, acme, globex, make_user):
    user = make_user("carol@acme.com", acme.id)
    engine.access.add_membership(user.id, globex.id, assign_defaults=False)
    assert store.read(lambda conn: engine.access.default_company_in(conn, user)).id == acme.id

    sid = engine.sessions.bind_login(None, user.id, acme.id).session.sid
    engine.access.switch_company(sid, globex.id)
    assert store.read(lambda conn: engine.access.default_company_in(conn, user)).id == globex.id


def test_search_filters_by_name(engine, store, acme, globex, make_user):
    user = make_user("carol@acme.com", acme.id)
    engine.access.add_membership(user.id, globex.id, assign_defaults=False)
    listing = engine.access.list_companies(user, search="glob")
    assert [c.name for c in listing.results] == ["Globex"]


def test_search_wildcards_are_literal(engine, store, globex, make_user):
    for name in ("100% Corp", "1000 Corp", "a_b Labs", "axb Labs"):
        store.create_company(Company(name=name))
    ops = make_user("ops@platform.com", globex.id, user_type=UserType.INTERNAL)

    assert [c.name for c in engine.access.list_companies(ops, search="100%").results] == ["100% Corp"]
    assert [c.name for c in engine.access.list_companies(ops, search="a_b").results] == ["a_b Labs"]


def test_pinning_requires_active_membership(engine, acme, globex, alice):
    engine.access.set_pinned(alice, acme.id, True)
    assert [c.id for c in engine.access.list_companies(alice).pinned] == [acme.id]
    with pytest.raises(NotFound):
        engine.access.set_pinned(alice, globex.id, True)


# ---------------------------------------------------------------------------
# Memberships
# ---------------------------------------------------------------------------


def test_add_membership_twice_is_already_member(engine, acme, make_user):
    user = make_user("carol@acme.com", acme.id)
    with pytest.raises(AlreadyMember):
        engine.access.add_membership(user.id, acme.id)


def test_add_membership_to_unknown_company(engine, acme, make_user):
    user = make_user("carol@acme.com", acme.id)
    with pytest.raises(CompanyNotFound):
        engine.access.add_membership(user.id, 99999)


def test_internal_users_get_grants_not_memberships(engine, acme, globex, make_user):
    ops = make_user("ops@platform.com", globex.id, user_type=UserType.INTERNAL)
    with pytest.raises(ValidationFailed):
        engine.access.add_membership(ops.id, acme.id)


def test_deactivate_revokes_sessions_once(engine, acme, globex, make_user):
    user = make_user("carol@acme.com", acme.id)
    engine.access.add_membership(user.id, globex.id, assign_defaults=False)
    in_globex = engine.sessions.bind_login(None, user.id, globex.id).session
    in_acme = engine.sessions.bind_login(None, user.id, acme.id).session

    assert engine.access.deactivate_membership(user.id, globex.id) == 1
    assert engine.sessions.touch(in_globex.sid) is None
    assert engine.sessions.touch(in_acme.sid) is not None

    with pytest.raises(NotFound):
        engine.access.deactivate_membership(user.id, globex.id)


def test_reactivate_restores_access(engine, acme, globex, alice):
    engine.access.reactivate_membership(alice.id, globex.id)
    assert engine.access.access_scope(alice).allows(globex.id)
    with pytest.raises(NotFound):
        engine.access.reactivate_membership(alice.id, globex.id)


# ---------------------------------------------------------------------------
# Internal users
# ---------------------------------------------------------------------------


def test_internal_user_without_grants_is_unrestricted(engine, store, acme, globex, make_user):
    ops = make_user("ops@platform.com", globex.id, user_type=UserType.INTERNAL)
    assert isinstance(engine.access.access_scope(ops), Unrestricted)
    assert engine.access.can_switch_companies(ops)
    assert engine.access.list_internal_grants(ops.id).has_restrictions is False

    sid = engine.sessions.bind_login(None, ops.id, globex.id).session.sid
    assert engine.access.switch_company(sid, acme.id).id == acme.id
    with pytest.raises(CompanyNotFound):
        engine.access.switch_company(sid, 99999)


def test_first_grant_restricts_and_ends_other_sessions(engine, acme, globex, make_user):
    ops = make_user("ops@platform.com", globex.id, user_type=UserType.INTERNAL)
    elsewhere = engine.sessions.bind_login(None, ops.id, globex.id).session
    inside = engine.sessions.bind_login(None, ops.id, acme.id).session

    engine.access.grant_internal_access(ops.id, acme.id)

    assert engine.access.access_scope(ops) == RestrictedTo(frozenset({acme.id}))
    assert engine.sessions.touch(elsewhere.sid) is None
    assert engine.sessions.touch(inside.sid) is not None
    with pytest.raises(NoActiveMembership):
        engine.access.switch_company(inside.sid, globex.id)

    grants = engine.access.list_internal_grants(ops.id)
    assert grants.has_restrictions
    assert [c.id for c in grants.companies] == [acme.id]


def test_revoking_last_grant_makes_user_unrestricted(engine, acme, globex, make_user):
    ops = make_user("ops@platform.com", globex.id, user_type=UserType.INTERNAL)
    engine.access.grant_internal_access(ops.id, acme.id)
    engine.access.revoke_internal_access(ops.id, acme.id)
    assert isinstance(engine.access.access_scope(ops), Unrestricted)
    with pytest.raises(NotFound):
        engine.access.revoke_internal_access(ops.id, acme.id)


def test_grants_only_apply_to_internal_users(engine, acme, make_user):
    user = make_user("carol@acme.com", acme.id)
    with pytest.raises(NotFound):
        engine.access.grant_internal_access(user.id, acme.id)
