from tddloop.specialists.base import SpecialistAgent
from tddloop.specialists.coder import CoderAgent
from tddloop.specialists.reviewer import ReviewerAgent

__all__ = [
    "CoderAgent",
    "ReviewerAgent",
    "SpecialistAgent",
]
