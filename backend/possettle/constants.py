# Overview: Status and kind codes shared by models, services, and routes.

# =============================================================================
# TENDER KINDS
# =============================================================================

TENDER_CASH = "CASH"
TENDER_CARD = "CARD"
TENDER_WIRE_TRANSFER = "WIRE_TRANSFER"
TENDER_QR_PAYMENT = "QR_PAYMENT"

VALID_TENDER_KINDS = (
    TENDER_CASH,
    TENDER_CARD,
    TENDER_WIRE_TRANSFER,
    TENDER_QR_PAYMENT,
)

# =============================================================================
# TENDER VERIFICATION STATES
# =============================================================================

VERIFICATION_UNVERIFIED = "UNVERIFIED"
VERIFICATION_VERIFIED = "VERIFIED"
VERIFICATION_FAILED = "FAILED"

# =============================================================================
# SETTLEMENT STATUS
# =============================================================================

SETTLEMENT_COLLECTING = "COLLECTING"
SETTLEMENT_SETTLED = "SETTLED"
SETTLEMENT_ABANDONED = "ABANDONED"

# =============================================================================
# CASH SESSIONS AND MOVEMENTS
# =============================================================================

SESSION_OPEN = "OPEN"
SESSION_CLOSED = "CLOSED"

MOVEMENT_INCOME = "INCOME"
MOVEMENT_EXPENSE = "EXPENSE"
MOVEMENT_SALE_SETTLEMENT = "SALE_SETTLEMENT"
MOVEMENT_PENDING_SALE_SETTLEMENT = "PENDING_SALE_SETTLEMENT"

VALID_MOVEMENT_KINDS = (
    MOVEMENT_INCOME,
    MOVEMENT_EXPENSE,
    MOVEMENT_SALE_SETTLEMENT,
    MOVEMENT_PENDING_SALE_SETTLEMENT,
)

# Only these may be posted by hand; sale kinds come from finalized settlements
MANUAL_MOVEMENT_KINDS = (MOVEMENT_INCOME, MOVEMENT_EXPENSE)
