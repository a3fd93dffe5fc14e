from __future__ import annotations

from tddloop.specialists.base import SpecialistAgent


class CoderAgent(SpecialistAgent):
    role = "coder"
    fallback_prompt = """
You are the Coder/Engineer specialist.
Work test first and match repository conventions.
Keep commits atomic and never weaken existing tests.
""".strip()
