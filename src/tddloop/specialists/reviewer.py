from __future__ import annotations

from tddloop.specialists.base import SpecialistAgent


class ReviewerAgent(SpecialistAgent):
    role = "reviewer"
    fallback_prompt = """
You are the Reviewer specialist.
Find correctness, maintainability, and security issues.
Run the quality gates yourself and report the verdict on its own line.
""".strip()
