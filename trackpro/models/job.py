from sqlalchemy import Column, String, Float, DateTime, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from trackpro.database import Base
import uuid


class Job(Base):
    """Field-service job as seen by the tracking API."""

    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    status = Column(String(20), nullable=False, default="pending")

    # Assignment
    technician_id = Column(String(36), nullable=True, index=True)
    company_id = Column(String(36), nullable=True, index=True)

    # Public tracking code for the customer page
    tracking_code = Column(String(32), unique=True, nullable=True, index=True)

    # Destination
    destination_latitude = Column(Float)
    destination_longitude = Column(Float)
    destination_label = Column(String(255))

    # Aggregate recomputed from capture-ordered location history
    total_distance_meters = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    locations = relationship(
        "JobLocation",
        back_populates="job",
        order_by="JobLocation.captured_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_jobs_technician_status", "technician_id", "status"),
    )

    def __repr__(self):
        return f"<Job {self.id} status={self.status}>"
