from .cash import CashSession, CashMovement
from .settlements import Settlement, Tender
from .audit import AuditRecord

__all__ = [
    'CashSession', 'CashMovement',
    'Settlement', 'Tender',
    'AuditRecord',
]
