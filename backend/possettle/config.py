# backend/possettle/config.py
from __future__ import annotations
import os


def _csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip().upper() for part in value.split(",") if part.strip())


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/possettle.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///possettle.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Payment verification provider (wire transfers, QR payments)
    VERIFICATION_GATEWAY_URL = os.environ.get("VERIFICATION_GATEWAY_URL")
    VERIFICATION_GATEWAY_TOKEN = os.environ.get("VERIFICATION_GATEWAY_TOKEN")
    VERIFICATION_TIMEOUT_SECONDS = float(os.environ.get("VERIFICATION_TIMEOUT_SECONDS", "10"))

    # Non-cash tenders must match the outstanding balance exactly unless a tolerance is set
    NON_CASH_OVERCOLLECTION_TOLERANCE_CENTS = int(
        os.environ.get("NON_CASH_OVERCOLLECTION_TOLERANCE_CENTS", "0")
    )

    # Tender kinds trusted at capture time (operator custody or terminal authorization)
    SYNC_VERIFIED_TENDER_KINDS = _csv(os.environ.get("SYNC_VERIFIED_TENDER_KINDS", "CASH,CARD"))
