from app.models.billing_sync import BillingSyncRecord
from app.models.subscription import Subscription
from app.models.tebra_document import TebraDocument

__all__ = [
    "BillingSyncRecord",
    "Subscription",
    "TebraDocument",
]
