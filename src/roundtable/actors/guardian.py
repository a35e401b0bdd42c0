from __future__ import annotations

from roundtable.actors.base import Actor


class GuardianActor(Actor):
    role = "Guardian"
    fallback_prompt = """
You review every change for correctness, safety and scope creep.
Return work to its author with return_for_fix when a change is broken.
""".strip()
