from __future__ import annotations

from collections.abc import Iterable, Iterator
from pathlib import Path

from roundtable.actors.architect import ArchitectActor
from roundtable.actors.base import Actor
from roundtable.actors.entrepreneur import EntrepreneurActor
from roundtable.actors.guardian import GuardianActor
from roundtable.actors.implementer import ImplementerActor
from roundtable.actors.visionary import VisionaryActor
from roundtable.backends.base import ActorBackend

ROLE_CLASSES: dict[str, type[Actor]] = {
    VisionaryActor.role: VisionaryActor,
    ArchitectActor.role: ArchitectActor,
    ImplementerActor.role: ImplementerActor,
    GuardianActor.role: GuardianActor,
    EntrepreneurActor.role: EntrepreneurActor,
}


class UnknownActorError(KeyError):
    """Raised when a name does not belong to the configured roster."""

    def __init__(self, name: str, known: Iterable[str]) -> None:
        super().__init__(name)
        self.name = name
        self.known = sorted(known)

    def __str__(self) -> str:
        return f"Unknown actor '{self.name}'. Roster: {', '.join(self.known)}"


class ActorRoster:
    """Closed lookup table of the actors taking part in a session."""

    def __init__(self, actors: Iterable[Actor]) -> None:
        self._actors: dict[str, Actor] = {}
        for actor in actors:
            if actor.name in self._actors:
                raise ValueError(f"Duplicate actor name in roster: {actor.name}")
            self._actors[actor.name] = actor
        if not self._actors:
            raise ValueError("Roster must contain at least one actor.")

    @classmethod
    def build(
        cls,
        members: Iterable[tuple[str, str]],
        backend: ActorBackend,
        *,
        prompt_dir: Path | None = None,
    ) -> ActorRoster:
        actors = []
        for name, role in members:
            actor_cls = ROLE_CLASSES.get(role, Actor)
            actors.append(actor_cls(name, backend, role=role, prompt_dir=prompt_dir))
        return cls(actors)

    def __contains__(self, name: object) -> bool:
        return name in self._actors

    def __iter__(self) -> Iterator[Actor]:
        return iter(self._actors.values())

    def __len__(self) -> int:
        return len(self._actors)

    @property
    def names(self) -> list[str]:
        return list(self._actors)

    def get(self, name: str) -> Actor:
        try:
            return self._actors[name]
        except KeyError:
            raise UnknownActorError(name, self._actors) from None

    def lookup(self, name: str) -> str | None:
        """Case-insensitive match of a free-form target to a roster name."""
        if name in self._actors:
            return name
        lowered = name.strip().lower()
        for known in self._actors:
            if known.lower() == lowered:
                return known
        return None

    def validate_order(self, order: Iterable[str]) -> list[str]:
        resolved = []
        for name in order:
            if name not in self._actors:
                raise UnknownActorError(name, self._actors)
            if name not in resolved:
                resolved.append(name)
        # Members missing from the configured order go last, in roster order.
        resolved.extend(name for name in self._actors if name not in resolved)
        return resolved
