"""
Test factories for generating realistic test data.

Uses factory_boy for declarative test data generation.
"""

from .job import TECHNICIAN_ID, JobFactory, JobInfoFactory
from .position import BASE_TIME, PositionSampleFactory, make_sample

__all__ = [
    "JobFactory",
    "JobInfoFactory",
    "PositionSampleFactory",
    "make_sample",
    "BASE_TIME",
    "TECHNICIAN_ID",
]
