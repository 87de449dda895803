"""Typed failures raised by the conversation, notification and ledger services.

Callers catch the specific class to decide what to show:

    try:
        await conversations.send(conversation_id, user_id, text)
    except SendError as e:
        restore_input(e.draft)
"""

from __future__ import annotations

SUPPORT_GUIDANCE = "Your payment was received. Please contact support so we can finish setting up your session."


class CoreError(Exception):
    """Base exception for all core errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class StoreError(CoreError):
    """Record store call failed."""


class TransientStoreError(StoreError):
    """Store or network unavailable. Safe to retry from the UI."""


class UniqueViolation(StoreError):
    """Insert collided with a unique constraint."""

    def __init__(self, collection: str, detail: str = "") -> None:
        super().__init__(f"Unique constraint violated on {collection}" + (f": {detail}" if detail else ""))
        self.collection = collection


class RecordNotFound(StoreError):
    def __init__(self, collection: str, identifier: str) -> None:
        super().__init__(f"{collection} '{identifier}' not found")
        self.collection = collection
        self.identifier = identifier


class MessageValidationError(CoreError):
    """Message rejected before any store write."""


class SendError(CoreError):
    """Durable send failed. `draft` holds the text the user typed."""

    def __init__(self, draft: str, cause: Exception | None = None) -> None:
        super().__init__(f"Message could not be sent: {cause}" if cause else "Message could not be sent")
        self.draft = draft


class ChatLockedError(CoreError):
    """Client has neither a paid session nor credits for this counselor."""

    def __init__(self, client_id: str, counselor_id: str) -> None:
        super().__init__(f"Chat with counselor '{counselor_id}' is locked for client '{client_id}'")
        self.client_id = client_id
        self.counselor_id = counselor_id


class InvalidTransitionError(CoreError):
    def __init__(self, session_id: str, current: str, target: str) -> None:
        super().__init__(f"Session '{session_id}' cannot move from {current} to {target}")
        self.session_id = session_id
        self.current = current
        self.target = target


class LedgerInvariantError(CoreError):
    """Amount split does not add up or holds a negative/non-integer value."""


class BookingIncompleteError(CoreError):
    """Payment went through but the follow-up bookkeeping did not finish.

    Never retry the payment itself. The session (or credit purchase) stays
    paid; the user is told to contact support and the UI may retry the
    confirmation, which resumes the unfinished steps.
    """

    def __init__(self, reference: str, step: str, cause: Exception | None = None) -> None:
        super().__init__(f"{SUPPORT_GUIDANCE} (reference {reference}, failed at {step})")
        self.reference = reference
        self.step = step
        self.cause = cause


class PaymentGatewayError(CoreError):
    """Payment processor returned an error or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PaymentVerificationError(CoreError):
    """Processor did not confirm the payment for this reference."""


class AuthError(CoreError):
    """Sign-up or sign-in rejected."""


class AuthRequiredError(CoreError):
    """No signed-in user. Callers must force re-authentication."""

    def __init__(self, message: str = "Sign-in required") -> None:
        super().__init__(message)
