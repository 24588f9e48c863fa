"""First-run flow: college sign-in followed by the WhatsApp number prompt."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from PyQt6.QtCore import Qt
from PyQt6.QtWidgets import (
    QDialog,
    QDialogButtonBox,
    QFormLayout,
    QFrame,
    QLabel,
    QLineEdit,
    QVBoxLayout,
    QWidget,
)

from ..auth import AuthService
from ..errors import CarpoolError, ValidationFailed
from ..models import ProviderIdentity, UserProfile, is_allowed_email, normalize_whatsapp


class OnboardingAborted(RuntimeError):
    """Raised when the user closes a required onboarding step."""


def identity_for_email(email: str, full_name: str | None = None) -> ProviderIdentity:
    """Build a provider identity whose id is stable for the given address."""

    normalized = email.strip().lower()
    user_id = str(uuid.uuid5(uuid.NAMESPACE_URL, f"mailto:{normalized}"))
    return ProviderIdentity(user_id=user_id, email=normalized, full_name=full_name or None)


def _card(parent: QWidget) -> tuple[QFrame, QFormLayout]:
    card = QFrame(parent)
    card.setObjectName("OnboardingCard")
    layout = QFormLayout(card)
    layout.setHorizontalSpacing(18)
    layout.setVerticalSpacing(12)
    return card, layout


def _error_label(parent: QWidget) -> QLabel:
    label = QLabel("", parent)
    label.setObjectName("OnboardingError")
    label.setWordWrap(True)
    label.setVisible(False)
    return label


class SignInDialog(QDialog):
    """Collect the college e-mail address the identity provider signs in with."""

    def __init__(self, *, allowed_domains: list[str], parent: QWidget | None = None) -> None:
        super().__init__(parent)
        self.setModal(True)
        self.setWindowTitle("Sign in")
        self._allowed_domains = list(allowed_domains)

        intro = QLabel(
            "Sign in with your college email to post and join rides.\n"
            f"Accepted domains: {', '.join(self._allowed_domains) or 'none configured'}"
        )
        intro.setWordWrap(True)

        card, form = _card(self)
        self._email_input = QLineEdit()
        self._email_input.setPlaceholderText("name@college.edu")
        self._name_input = QLineEdit()
        self._name_input.setPlaceholderText("Display name (optional)")
        form.addRow("College email", self._email_input)
        form.addRow("Name", self._name_input)

        self._error_label = _error_label(self)
        buttons = QDialogButtonBox(
            QDialogButtonBox.StandardButton.Ok | QDialogButtonBox.StandardButton.Cancel
        )
        buttons.button(QDialogButtonBox.StandardButton.Ok).setText("Sign in")
        buttons.accepted.connect(self.accept)
        buttons.rejected.connect(self.reject)

        layout = QVBoxLayout(self)
        layout.setContentsMargins(24, 24, 24, 24)
        layout.setSpacing(16)
        layout.addWidget(intro)
        layout.addWidget(card)
        layout.addWidget(self._error_label)
        layout.addWidget(buttons)
        self.resize(460, 260)

    def show_error(self, message: str) -> None:
        self._error_label.setText(message)
        self._error_label.setVisible(bool(message))

    def accept(self) -> None:  # type: ignore[override]
        email = self._email_input.text().strip()
        if not is_allowed_email(email, self._allowed_domains):
            self.show_error("Please sign in with a college email address")
            return
        self.show_error("")
        super().accept()

    @property
    def result_data(self) -> ProviderIdentity:
        return identity_for_email(self._email_input.text(), self._name_input.text().strip())


class WhatsAppPromptDialog(QDialog):
    """Ask for the number riders use to reach the driver."""

    def __init__(self, parent: QWidget | None = None) -> None:
        super().__init__(parent)
        self.setModal(True)
        self.setWindowTitle("WhatsApp Number")
        self._phone: Optional[str] = None

        description = QLabel(
            "Enter your WhatsApp number to coordinate rides. This will only be\n"
            "shared with riders who join your rides."
        )
        description.setWordWrap(True)

        card, form = _card(self)
        self._phone_input = QLineEdit()
        self._phone_input.setPlaceholderText("e.g., 919876543210")
        self._phone_input.textChanged.connect(lambda _text: self.show_error(""))
        form.addRow("WhatsApp Number", self._phone_input)

        self._error_label = _error_label(self)
        buttons = QDialogButtonBox(QDialogButtonBox.StandardButton.Ok)
        buttons.button(QDialogButtonBox.StandardButton.Ok).setText("Confirm Number")
        buttons.accepted.connect(self.accept)

        layout = QVBoxLayout(self)
        layout.setContentsMargins(24, 24, 24, 24)
        layout.setSpacing(16)
        layout.addWidget(description)
        layout.addWidget(card)
        layout.addWidget(self._error_label)
        layout.addWidget(buttons, 0, Qt.AlignmentFlag.AlignRight)
        self.resize(440, 220)

    def show_error(self, message: str) -> None:
        self._error_label.setText(message)
        self._error_label.setVisible(bool(message))

    def accept(self) -> None:  # type: ignore[override]
        try:
            self._phone = normalize_whatsapp(self._phone_input.text())
        except ValidationFailed as exc:
            self.show_error(str(exc))
            return
        super().accept()

    @property
    def phone(self) -> str:
        return self._phone or ""


def maybe_run_onboarding(
    *,
    settings_manager,
    auth_service: AuthService,
    sign_in_dialog_cls=SignInDialog,
    whatsapp_dialog_cls=WhatsAppPromptDialog,
) -> UserProfile:
    """Make sure a college user is signed in and has a WhatsApp number.

    A persisted session is resumed when possible. Dialog classes are injectable
    for testing. Raises :class:`OnboardingAborted` when a dialog is cancelled.
    """

    user: Optional[UserProfile] = None
    stored_user_id = settings_manager.data.get("session", {}).get("user_id")
    if stored_user_id:
        user = auth_service.restore_session(str(stored_user_id))

    if user is None:
        dialog = sign_in_dialog_cls(allowed_domains=auth_service.allowed_domains)
        while user is None:
            if dialog.exec() != QDialog.DialogCode.Accepted:
                raise OnboardingAborted()
            try:
                user = auth_service.sign_in(dialog.result_data)
            except CarpoolError as exc:
                dialog.show_error(str(exc))

    if user.needs_whatsapp:
        prompt = whatsapp_dialog_cls()
        while user.needs_whatsapp:
            if prompt.exec() != QDialog.DialogCode.Accepted:
                raise OnboardingAborted()
            try:
                user = auth_service.set_whatsapp(prompt.phone)
            except CarpoolError as exc:
                prompt.show_error(str(exc))

    settings_manager.update(
        {
            "session": {"user_id": user.id},
            "onboarding": {
                "completed": True,
                "completed_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            },
        }
    )
    return user
