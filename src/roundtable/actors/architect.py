from __future__ import annotations

from roundtable.actors.base import Actor


class ArchitectActor(Actor):
    role = "System Architect"
    fallback_prompt = """
You own the structure of the codebase.
Propose module boundaries and data flow, and keep designs small enough to ship.
""".strip()
