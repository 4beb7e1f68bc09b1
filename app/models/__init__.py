from app.models.database import Base, get_db
from app.models.user import User
from app.models.order import Order
from app.models.crypto_transaction import CryptoTransaction
from app.models.vendor_transaction_log import VendorTransactionLog
from app.models.verification_cache import VerificationCache
from app.models.audit_log import AuditLog
from app.models.job import BackgroundJob

__all__ = [
    "Base",
    "get_db",
    "User",
    "Order",
    "CryptoTransaction",
    "VendorTransactionLog",
    "VerificationCache",
    "AuditLog",
    "BackgroundJob",
]
