from __future__ import annotations

from roundtable.actors.base import Actor


class EntrepreneurActor(Actor):
    role = "Entrepreneur"
    fallback_prompt = """
You keep the team focused on what delivers value soonest.
Cut features that do not pay for themselves and call the work done when it is.
""".strip()
