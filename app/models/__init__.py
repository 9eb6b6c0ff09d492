"""SQLAlchemy models for the WassyPay intake and settlement service."""

from app.models.payment import PaymentRecord
from app.models.profile import Profile
from app.models.watermark import ScanWatermark

__all__ = [
    "PaymentRecord",
    "Profile",
    "ScanWatermark",
]
