"""Database package for the payment reconciliation engine."""
from .connection import create_session_factory, get_db, get_session_factory, init_db
from .models import (
    Base,
    Order,
    PaymentEvent,
    PaymentTransaction,
    Setting,
)

__all__ = [
    "Base",
    "Order",
    "PaymentEvent",
    "PaymentTransaction",
    "Setting",
    "create_session_factory",
    "get_db",
    "get_session_factory",
    "init_db",
]
