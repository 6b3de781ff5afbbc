"""
Parcel sequence counter model.

One row per logical counter. The value is the last number handed out; it
is advanced with a single UPDATE so concurrent bookings serialize on the row.
"""

from sqlalchemy import Column, Integer, String, DateTime
from shipping_backend.app.db.session import Base
from shipping_backend.app.models.shipment import utcnow


class ParcelSequence(Base):
    __tablename__ = "parcel_sequences"

    name = Column(String(50), primary_key=True)
    value = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<ParcelSequence(name='{self.name}', value={self.value})>"
