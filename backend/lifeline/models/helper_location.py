from sqlalchemy import Column, String, DateTime, Float, Boolean, Integer, DDL, event

from lifeline.db.postgres import Base
from lifeline.models.emergency import utcnow


class HelperLocation(Base):
    """Last known position and availability of a helper (one row per helper)."""

    __tablename__ = "helper_locations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    helper_id = Column(String, nullable=False, unique=True, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)  # metres
    is_available = Column(Boolean, nullable=False, default=True, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


event.listen(
    HelperLocation.__table__,
    "after_create",
    DDL(
        "CREATE INDEX IF NOT EXISTS ix_helper_locations_geog ON helper_locations "
        "USING GIST ((ST_SetSRID(ST_MakePoint(longitude, latitude), 4326)::geography))"
    ).execute_if(dialect="postgresql"),
)
