"""Signed-in session state for the carpool board.

The identity provider's OAuth flow happens elsewhere; this service receives the
resulting :class:`~campus_carpool.models.ProviderIdentity`, enforces the college
e-mail allow-list, loads or creates the profile row, and announces every session
transition through ``session_changed``.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Sequence

from PyQt6.QtCore import QObject, pyqtSignal

from .database import DatabaseManager
from .errors import Unauthenticated
from .models import ProviderIdentity, UserProfile, is_allowed_email, normalize_whatsapp

logger = logging.getLogger(__name__)


class SessionEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


class AuthService(QObject):
    """Own the current user and broadcast session transitions."""

    session_changed = pyqtSignal(str, object)

    def __init__(
        self,
        db_manager: DatabaseManager,
        allowed_domains: Sequence[str],
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self.db_manager = db_manager
        self.allowed_domains = [domain.strip().lower() for domain in allowed_domains if domain.strip()]
        self._user: Optional[UserProfile] = None

    @property
    def current_user(self) -> Optional[UserProfile]:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._user is not None

    @property
    def needs_whatsapp(self) -> bool:
        return self._user is not None and self._user.needs_whatsapp

    def require_user(self, action: str) -> UserProfile:
        if self._user is None:
            raise Unauthenticated(f"You must be signed in to {action}.")
        return self._user

    def sign_in(self, identity: ProviderIdentity) -> UserProfile:
        """Accept a provider identity, or sign out and raise if the domain is not allowed."""

        if not is_allowed_email(identity.email, self.allowed_domains):
            logger.warning("Rejected sign-in for non-college address %s", identity.email)
            self.sign_out()
            raise Unauthenticated("Please sign in with a college email address.")

        row = self.db_manager.fetch_profile(identity.user_id)
        if row is None:
            logger.info("Creating profile for %s", identity.email)
            name = (identity.full_name or "").strip() or identity.email.split("@")[0]
            row = self.db_manager.insert_profile(
                identity.user_id, identity.email, name, identity.avatar_url
            )
        self._user = UserProfile.from_row(row)
        logger.info("Signed in as %s", self._user.email)
        self.session_changed.emit(SessionEvent.SIGNED_IN.value, self._user)
        return self._user

    def restore_session(self, user_id: str) -> Optional[UserProfile]:
        """Resume a persisted session; returns ``None`` when it can no longer be used."""

        row = self.db_manager.fetch_profile(user_id)
        if row is None:
            return None
        profile = UserProfile.from_row(row)
        if not is_allowed_email(profile.email, self.allowed_domains):
            return None
        self._user = profile
        self.session_changed.emit(SessionEvent.SIGNED_IN.value, self._user)
        return self._user

    def refresh_session(self) -> Optional[UserProfile]:
        if self._user is None:
            return None
        row = self.db_manager.fetch_profile(self._user.id)
        if row is None:
            self.sign_out()
            return None
        self._user = UserProfile.from_row(row)
        self.session_changed.emit(SessionEvent.TOKEN_REFRESHED.value, self._user)
        return self._user

    def sign_out(self) -> None:
        if self._user is None:
            return
        logger.info("Signed out %s", self._user.email)
        self._user = None
        self.session_changed.emit(SessionEvent.SIGNED_OUT.value, None)

    def set_whatsapp(self, number: str) -> UserProfile:
        user = self.require_user("save a WhatsApp number")
        digits = normalize_whatsapp(number)
        row = self.db_manager.update_profile_whatsapp(user.id, digits)
        self._user = UserProfile.from_row(row)
        self.session_changed.emit(SessionEvent.USER_UPDATED.value, self._user)
        return self._user
