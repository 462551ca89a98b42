import asyncio
import enum
import logging

from .errors import InvalidTransition


class NodeState(enum.IntEnum):
    CREATED = 0
    LISTENING = 1
    BOOTSTRAPPING = 2
    READY = 3
    EPHEMERAL = 4
    PERSISTENT = 5
    DESTROYED = 6


EVENTS = ("listening", "bootstrap", "ready", "persistent", "request", "error", "close")

TRANSITIONS = {
    NodeState.CREATED: {NodeState.LISTENING, NodeState.DESTROYED},
    NodeState.LISTENING: {NodeState.BOOTSTRAPPING, NodeState.READY, NodeState.DESTROYED},
    NodeState.BOOTSTRAPPING: {NodeState.READY, NodeState.DESTROYED},
    NodeState.READY: {NodeState.EPHEMERAL, NodeState.PERSISTENT, NodeState.DESTROYED},
    NodeState.EPHEMERAL: {NodeState.PERSISTENT, NodeState.DESTROYED},
    NodeState.PERSISTENT: {NodeState.DESTROYED},
    NodeState.DESTROYED: set(),
}

# Events fired on entering a state
STATE_EVENTS = {
    NodeState.LISTENING: "listening",
    NodeState.READY: "ready",
    NodeState.DESTROYED: "close",
}


class Lifecycle:
    """
    Node state machine with callback subscriptions.

    States only move forward along TRANSITIONS. `reached(state)` and
    `wait_for(state)` compare by order, so a node that went on to
    PERSISTENT has also reached READY. DESTROYED releases every waiter.
    """

    def __init__(self):
        self.state = NodeState.CREATED
        self.log = logging.getLogger("Lifecycle")
        self._listeners = {event: [] for event in EVENTS}
        self._reached = {state: asyncio.Event() for state in NodeState}
        self._reached[NodeState.CREATED].set()

    def subscribe(self, event, callback):
        if event not in self._listeners:
            raise ValueError(f"Unknown event {event!r}")
        self._listeners[event].append(callback)

        def unsubscribe():
            try:
                self._listeners[event].remove(callback)
            except ValueError:
                pass
        return unsubscribe

    def emit(self, event, *args):
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                self.log.exception(f"Error in {event!r} listener.")

    def reached(self, state):
        if self.state == NodeState.DESTROYED:
            return state == NodeState.DESTROYED
        return self.state >= state

    async def wait_for(self, state):
        await self._reached[state].wait()
        return self.state

    def transition(self, new_state, *args):
        old_state = self.state
        if new_state not in TRANSITIONS[old_state]:
            raise InvalidTransition(old_state, new_state)

        self.state = new_state
        if new_state == NodeState.DESTROYED:
            for event in self._reached.values():
                event.set()
        else:
            for state in NodeState:
                if state <= new_state:
                    self._reached[state].set()

        self.log.debug(f"{old_state.name} -> {new_state.name}")
        event = STATE_EVENTS.get(new_state)
        if new_state == NodeState.PERSISTENT and old_state == NodeState.EPHEMERAL:
            event = "persistent"
        if event:
            self.emit(event, *args)
