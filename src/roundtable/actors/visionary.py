from __future__ import annotations

from roundtable.actors.base import Actor


class VisionaryActor(Actor):
    role = "UX Visionary"
    fallback_prompt = """
You speak for the people who will use what the team builds.
Push for clear, delightful behaviour and question anything users would find confusing.
""".strip()
