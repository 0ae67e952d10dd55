"""
auth/engine.py -- Wiring for the engine components.

build_engine() constructs every service over one AuthStore, one clock and
one Settings object. api/main.py builds it in the lifespan and stores it on
app.state.engine; tests build it directly with a controllable clock.
"""

from __future__ import annotations

from dataclasses import dataclass

from auth.access import MultiCompanyAccessController
from auth.api_keys import ApiKeyService
from auth.audit import AuditLog
from auth.credentials import CredentialStore
from auth.invites import InviteService
from auth.login import LoginFlow
from auth.mfa import MfaEngine
from auth.notifier import EmailNotifier
from auth.oauth_server import OAuthTokenService
from auth.permissions import PermissionResolver
from auth.sessions import SessionManager
from auth.store import AuthStore
from core.config import Settings, get_settings
from core.timeutil import Clock, utc_now


@dataclass
class AuthEngine:
    store: AuthStore
    settings: Settings
    audit: AuditLog
    credentials: CredentialStore
    mfa: MfaEngine
    sessions: SessionManager
    permissions: PermissionResolver
    access: MultiCompanyAccessController
    oauth: OAuthTokenService
    invites: InviteService
    api_keys: ApiKeyService
    login: LoginFlow
    notifier: EmailNotifier
    clock: Clock = utc_now


def build_engine(store: AuthStore, *, clock: Clock = utc_now, settings: Settings | None = None) -> AuthEngine:
    settings = settings or get_settings()
    audit = AuditLog(store, clock)
    credentials = CredentialStore(store, audit, clock, settings)
    mfa = MfaEngine(store, audit, clock, settings)
    sessions = SessionManager(store, audit, clock, settings)
    permissions = PermissionResolver(store, audit, clock)
    access = MultiCompanyAccessController(store, audit, permissions, clock)
    return AuthEngine(
        store=store,
        settings=settings,
        audit=audit,
        credentials=credentials,
        mfa=mfa,
        sessions=sessions,
        permissions=permissions,
        access=access,
        oauth=OAuthTokenService(store, audit, clock, settings),
        invites=InviteService(store, audit, credentials, access, permissions, clock, settings),
        api_keys=ApiKeyService(store, clock),
        login=LoginFlow(audit, credentials, sessions, mfa, access, clock, settings),
        notifier=EmailNotifier(settings),
        clock=clock,
    )
