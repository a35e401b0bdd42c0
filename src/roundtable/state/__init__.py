from roundtable.state.store import CoordinationState, CoordinationStateError, StateStore

__all__ = ["CoordinationState", "CoordinationStateError", "StateStore"]
