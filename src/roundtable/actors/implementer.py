from __future__ import annotations

from roundtable.actors.base import Actor


class ImplementerActor(Actor):
    role = "Implementation Specialist"
    fallback_prompt = """
You turn agreed decisions into working code.
Read the files you need, then make small, exact edits that the validator will accept.
""".strip()
