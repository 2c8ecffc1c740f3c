from .backends import HttpBackend, ServiceBackend
from .cart import Cart, CartLine, PrescribedItem, Prescription, PrescriptionLink, ProductSnapshot
from .cash_session import CashSessionManager, CashSessionSummary, SessionHandle, SessionMemory
from .checkout import Identity, OrderSubmissionGateway, Receipt
from .errors import (
    CommitFailure,
    CommitInFlight,
    PartialLoadWarning,
    PosError,
    SessionConflict,
    SessionError,
    StockConflict,
    StockExceeded,
    ValidationError,
)
from .payment import PaymentOrchestrator
from .terminal import Terminal

__all__ = [
    "Cart",
    "CartLine",
    "CashSessionManager",
    "CashSessionSummary",
    "CommitFailure",
    "CommitInFlight",
    "HttpBackend",
    "Identity",
    "OrderSubmissionGateway",
    "PartialLoadWarning",
    "PaymentOrchestrator",
    "PosError",
    "PrescribedItem",
    "Prescription",
    "PrescriptionLink",
    "ProductSnapshot",
    "Receipt",
    "ServiceBackend",
    "SessionConflict",
    "SessionError",
    "SessionHandle",
    "SessionMemory",
    "StockConflict",
    "StockExceeded",
    "Terminal",
    "ValidationError",
]
