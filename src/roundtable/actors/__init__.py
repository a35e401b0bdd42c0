from roundtable.actors.architect import ArchitectActor
from roundtable.actors.base import (
    COORDINATOR_TARGET,
    Actor,
    ActorResponse,
    ActorResponseError,
    ProjectDocument,
    extract_json_object,
)
from roundtable.actors.entrepreneur import EntrepreneurActor
from roundtable.actors.guardian import GuardianActor
from roundtable.actors.implementer import ImplementerActor
from roundtable.actors.roster import ROLE_CLASSES, ActorRoster, UnknownActorError
from roundtable.actors.visionary import VisionaryActor

__all__ = [
    "COORDINATOR_TARGET",
    "ROLE_CLASSES",
    "Actor",
    "ActorResponse",
    "ActorResponseError",
    "ActorRoster",
    "ArchitectActor",
    "EntrepreneurActor",
    "GuardianActor",
    "ImplementerActor",
    "ProjectDocument",
    "UnknownActorError",
    "VisionaryActor",
    "extract_json_object",
]
