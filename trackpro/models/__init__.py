from trackpro.models.job import Job
from trackpro.models.job_location import JobLocation

__all__ = [
    "Job",
    "JobLocation",
]
