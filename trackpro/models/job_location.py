from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from trackpro.database import Base


class JobLocation(Base):
    """
    Append-only location history for a job.
    One row per (job_id, captured_at); replayed updates hit the constraint.
    """

    __tablename__ = "job_locations"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    technician_id = Column(String(36), nullable=False)

    # GPS coordinates
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)  # meters

    # Movement data
    speed = Column(Float, nullable=True)  # m/s
    heading = Column(Float, nullable=True)  # Compass heading 0-360

    # Device-derived fields
    driving_score = Column(Integer, nullable=True)
    is_moving = Column(Boolean, nullable=True)
    confidence = Column(String(20), nullable=True)

    # Timestamps (UTC)
    captured_at = Column(DateTime, nullable=False)  # When the GPS was captured on device
    received_at = Column(DateTime, default=func.now())  # When server received it

    job = relationship("Job", back_populates="locations")

    __table_args__ = (
        UniqueConstraint("job_id", "captured_at", name="uq_job_locations_job_captured"),
    )
