# Overview: Kind-specific instrument details for tenders (closed union).

"""
Instrument Details

Each tender kind carries its own payload and nothing else. The payload is
validated into one of the frozen dataclasses below before a tender is
recorded, then stored as JSON on the tender row.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict, fields
from typing import Any, Union

from ..constants import (
    TENDER_CASH,
    TENDER_CARD,
    TENDER_WIRE_TRANSFER,
    TENDER_QR_PAYMENT,
    VALID_TENDER_KINDS,
)
from .errors import InvalidInstrumentDetails


CARD_TYPE_DEBIT = "DEBIT"
CARD_TYPE_CREDIT = "CREDIT"

CARD_TERMINALS = ("MANUAL", "POSNET", "GETNET", "MERCADOPAGO")
CREDIT_INSTALLMENT_PLANS = (1, 3, 6, 12)

# Matches Tender.verification_reference
REFERENCE_MAX_LENGTH = 128
TEXT_MAX_LENGTH = 255


@dataclass(frozen=True)
class CashDetails:
    received_note: str | None = None

    def __post_init__(self):
        _check_text("received_note", self.received_note)

    @property
    def verification_reference(self) -> str | None:
        return None


@dataclass(frozen=True)
class CardDetails:
    card_type: str = CARD_TYPE_DEBIT
    terminal: str = "POSNET"
    brand: str | None = None
    installments: int = 1
    last_four: str | None = None
    authorization_code: str | None = None

    def __post_init__(self):
        _check_text("brand", self.brand)
        _check_text("authorization_code", self.authorization_code, REFERENCE_MAX_LENGTH)
        if self.card_type not in (CARD_TYPE_DEBIT, CARD_TYPE_CREDIT):
            raise InvalidInstrumentDetails(f"Invalid card_type: {self.card_type}")
        if self.terminal not in CARD_TERMINALS:
            raise InvalidInstrumentDetails(
                f"Invalid terminal: {self.terminal}. Must be one of {list(CARD_TERMINALS)}"
            )
        if not isinstance(self.installments, int) or isinstance(self.installments, bool):
            raise InvalidInstrumentDetails("installments must be an integer")
        if self.card_type == CARD_TYPE_DEBIT and self.installments != 1:
            raise InvalidInstrumentDetails("Debit cards cannot be split into installments")
        if self.card_type == CARD_TYPE_CREDIT and self.installments not in CREDIT_INSTALLMENT_PLANS:
            raise InvalidInstrumentDetails(
                f"installments must be one of {list(CREDIT_INSTALLMENT_PLANS)}"
            )
        # Manual capture has no terminal record, so the card must be identified
        if self.terminal == "MANUAL" and not _is_four_digits(self.last_four):
            raise InvalidInstrumentDetails("Manual card capture requires the last four digits")
        if self.last_four is not None and not _is_four_digits(self.last_four):
            raise InvalidInstrumentDetails("last_four must be exactly four digits")

    @property
    def verification_reference(self) -> str | None:
        return self.authorization_code


@dataclass(frozen=True)
class WireTransferDetails:
    receipt_reference: str
    bank_id: str | None = None

    def __post_init__(self):
        if not _has_text(self.receipt_reference):
            raise InvalidInstrumentDetails("Wire transfers require a receipt_reference")
        _check_text("receipt_reference", self.receipt_reference, REFERENCE_MAX_LENGTH)
        _check_text("bank_id", self.bank_id)

    @property
    def verification_reference(self) -> str | None:
        return self.receipt_reference


@dataclass(frozen=True)
class QRPaymentDetails:
    provider_transaction_id: str
    provider: str = "MERCADOPAGO"

    def __post_init__(self):
        if not _has_text(self.provider_transaction_id):
            raise InvalidInstrumentDetails("QR payments require a provider_transaction_id")
        _check_text("provider_transaction_id", self.provider_transaction_id, REFERENCE_MAX_LENGTH)
        _check_text("provider", self.provider)

    @property
    def verification_reference(self) -> str | None:
        return self.provider_transaction_id


InstrumentDetails = Union[CashDetails, CardDetails, WireTransferDetails, QRPaymentDetails]

DETAILS_BY_KIND = {
    TENDER_CASH: CashDetails,
    TENDER_CARD: CardDetails,
    TENDER_WIRE_TRANSFER: WireTransferDetails,
    TENDER_QR_PAYMENT: QRPaymentDetails,
}


def parse_details(kind: str, payload: dict[str, Any] | None) -> InstrumentDetails:
    """
    Build the details variant for ``kind`` from a raw payload.

    Raises:
        InvalidInstrumentDetails: unknown kind, unknown keys, or missing/invalid fields
    """
    if kind not in VALID_TENDER_KINDS:
        raise InvalidInstrumentDetails(
            f"Invalid tender kind: {kind}. Must be one of {list(VALID_TENDER_KINDS)}"
        )
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise InvalidInstrumentDetails("details must be an object")

    details_cls = DETAILS_BY_KIND[kind]
    allowed = {f.name for f in fields(details_cls)}
    unknown = sorted(set(payload) - allowed)
    if unknown:
        raise InvalidInstrumentDetails(
            f"Unexpected fields for {kind}: {unknown}", allowed=sorted(allowed)
        )

    try:
        return details_cls(**payload)
    except TypeError as exc:
        # Missing required field
        raise InvalidInstrumentDetails(f"Incomplete details for {kind}: {exc}")


def details_to_dict(details: InstrumentDetails) -> dict[str, Any]:
    return {k: v for k, v in asdict(details).items() if v is not None}


def _has_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _is_four_digits(value: Any) -> bool:
    return isinstance(value, str) and len(value) == 4 and value.isdigit()


def _check_text(name: str, value: Any, max_length: int = TEXT_MAX_LENGTH) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise InvalidInstrumentDetails(f"{name} must be a string")
    if len(value) > max_length:
        raise InvalidInstrumentDetails(f"{name} must be at most {max_length} characters")
