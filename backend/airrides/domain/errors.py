from dataclasses import dataclass
from typing import List

PROBLEM_TYPE_BASE = "https://airrides.example/problems"


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = f"{PROBLEM_TYPE_BASE}/domain-error"
    errors: List[dict] | None = None
    status_code: int = 400

    def __str__(self) -> str:
        return self.detail


# Taxonomy kinds. Wire codes are what API callers see in the ``error`` member.
AUTH_FAILURE = "AUTH_FAILURE"
NOT_FOUND = "NOT_FOUND"
RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
TRANSIENT_STORAGE_FAILURE = "TRANSIENT_STORAGE_FAILURE"
DUPLICATE = "DUPLICATE"

WIRE_CODES = {
    AUTH_FAILURE: "SIGNATURE_VERIFICATION_FAILED",
    NOT_FOUND: "NOT_FOUND",
    RESOURCE_EXHAUSTED: "SEATS_UNAVAILABLE",
    TRANSIENT_STORAGE_FAILURE: "SERVER_ERROR",
}


@dataclass
class ReconciliationError(DomainError):
    kind: str = TRANSIENT_STORAGE_FAILURE

    @property
    def code(self) -> str:
        return WIRE_CODES.get(self.kind, "SERVER_ERROR")


@dataclass
class SignatureVerificationError(ReconciliationError):
    title: str = "Signature Verification Failed"
    type: str = f"{PROBLEM_TYPE_BASE}/signature-verification-failed"
    status_code: int = 400
    kind: str = AUTH_FAILURE


@dataclass
class NotFoundError(ReconciliationError):
    title: str = "Not Found"
    type: str = f"{PROBLEM_TYPE_BASE}/not-found"
    status_code: int = 404
    kind: str = NOT_FOUND


@dataclass
class SeatsUnavailableError(ReconciliationError):
    title: str = "Seats Unavailable"
    type: str = f"{PROBLEM_TYPE_BASE}/seats-unavailable"
    status_code: int = 409
    kind: str = RESOURCE_EXHAUSTED
    seats_available: int = 0


@dataclass
class TransientStorageError(ReconciliationError):
    title: str = "Server Error"
    type: str = f"{PROBLEM_TYPE_BASE}/server-error"
    status_code: int = 500
    kind: str = TRANSIENT_STORAGE_FAILURE


@dataclass
class PaymentOwnershipError(ReconciliationError):
    """The payment is already linked to another user or flight."""

    title: str = "Payment Already Claimed"
    type: str = f"{PROBLEM_TYPE_BASE}/payment-already-claimed"
    status_code: int = 409
    kind: str = AUTH_FAILURE

    @property
    def code(self) -> str:
        return "PAYMENT_ALREADY_CLAIMED"
