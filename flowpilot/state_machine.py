"""
Serializable finite-state machine with guarded transitions, per-state
timeouts and a checkpoint hook.

Transition tables are behaviour, not data: they are registered once under
a stable name and supplied again on restore. Only id, state, context and
history are ever serialized.

    table = register_machine("door", {
        "closed": [Transition("open", "opened")],
        "opened": [Transition("close", "closed")],
    }, timeouts={"opened": StateTimeout(30, "close")})

    fsm = StateMachine.create("door-1", "closed", table, on_checkpoint=save)
    await fsm.send("open")
"""

import asyncio
import copy
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50

Guard = Callable[[dict, dict], bool]
Handler = Callable[..., Union[None, Awaitable[None]]]


# ── Table definitions ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Transition:
    event: str
    target: str
    guard: Optional[Guard] = None
    action: Optional[Handler] = None


@dataclass(frozen=True)
class StateTimeout:
    seconds: float
    event: str


@dataclass(frozen=True)
class MachineDefinition:
    name: str
    transitions: dict[str, list[Transition]]
    timeouts: dict[str, StateTimeout] = field(default_factory=dict)

    def candidates(self, state: str, event: str) -> list[Transition]:
        return [t for t in self.transitions.get(state, []) if t.event == event]


_REGISTRY: dict[str, MachineDefinition] = {}


def register_machine(
    name: str,
    transitions: dict[str, list[Transition]],
    timeouts: Optional[dict[str, StateTimeout]] = None,
) -> MachineDefinition:
    """Register (or replace) a transition table under a stable name."""
    definition = MachineDefinition(name=name, transitions=transitions, timeouts=timeouts or {})
    _REGISTRY[name] = definition
    return definition


def get_machine(name: str) -> MachineDefinition:
    try:
        return _REGISTRY[name]
    except KeyError:
        raise KeyError(f"No state machine registered as '{name}'") from None


# ── Results ──────────────────────────────────────────────────────────────────

@dataclass
class TransitionResult:
    changed: bool
    state: str
    previous: str
    event: str
    reason: str = ""


async def _call(handler: Optional[Callable], *args) -> None:
    if handler is None:
        return
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


# ── Instance ─────────────────────────────────────────────────────────────────

class StateMachine:
    """A live FSM instance. Build with create() or restore()."""

    def __init__(
        self,
        machine_id: str,
        state: str,
        definition: MachineDefinition,
        context: Optional[dict] = None,
        history: Optional[list[dict]] = None,
        on_transition: Optional[Handler] = None,
        on_checkpoint: Optional[Handler] = None,
    ):
        self.id = machine_id
        self.definition = definition
        self._state = state
        self.context: dict = context if context is not None else {}
        self.history: list[dict] = list(history or [])[-HISTORY_LIMIT:]
        self._on_transition = on_transition
        self._on_checkpoint = on_checkpoint
        self._timer: Optional[asyncio.TimerHandle] = None
        self._timeout_task: Optional[asyncio.Task] = None
        self._destroyed = False

    @classmethod
    def create(
        cls,
        machine_id: str,
        initial_state: str,
        definition: MachineDefinition,
        *,
        context: Optional[dict] = None,
        on_transition: Optional[Handler] = None,
        on_checkpoint: Optional[Handler] = None,
    ) -> "StateMachine":
        machine = cls(
            machine_id,
            initial_state,
            definition,
            context=context,
            on_transition=on_transition,
            on_checkpoint=on_checkpoint,
        )
        machine._arm_timeout()
        return machine

    @classmethod
    def restore(
        cls,
        snapshot: dict,
        definition: MachineDefinition,
        *,
        on_transition: Optional[Handler] = None,
        on_checkpoint: Optional[Handler] = None,
    ) -> "StateMachine":
        """Rehydrate from a serialized snapshot plus a freshly supplied table."""
        machine = cls(
            snapshot["id"],
            snapshot["state"],
            definition,
            context=copy.deepcopy(snapshot.get("context") or {}),
            history=copy.deepcopy(snapshot.get("history") or []),
            on_transition=on_transition,
            on_checkpoint=on_checkpoint,
        )
        machine._arm_timeout()
        return machine

    # ── Accessors ────────────────────────────────────────────────────────

    @property
    def state(self) -> str:
        return self._state

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def serialize(self) -> dict:
        return {
            "id": self.id,
            "machine": self.definition.name,
            "state": self._state,
            "context": copy.deepcopy(self.context),
            "history": copy.deepcopy(self.history),
        }

    def update_context(self, **values: Any) -> None:
        self.context.update(values)

    # ── Transitions ──────────────────────────────────────────────────────

    async def send(self, event: str, payload: Optional[dict] = None) -> TransitionResult:
        payload = payload or {}
        current = self._state

        if self._destroyed:
            logger.debug(f"FSM {self.id}: ignoring '{event}', instance destroyed")
            return TransitionResult(False, current, current, event, "destroyed")

        candidates = self.definition.candidates(current, event)
        if not candidates:
            logger.info(f"FSM {self.id}: no transition for '{event}' in state '{current}'")
            return TransitionResult(False, current, current, event, "no-transition")

        # Several transitions may share an event; the first accepting guard wins
        transition = next(
            (t for t in candidates if t.guard is None or t.guard(self.context, payload)),
            None,
        )
        if transition is None:
            logger.info(f"FSM {self.id}: guard rejected '{event}' in state '{current}'")
            return TransitionResult(False, current, current, event, "guard-rejected")

        self._clear_timeout()
        self._state = transition.target
        self.history.append({
            "from": current,
            "to": transition.target,
            "event": event,
            "at": time.time(),
        })
        if len(self.history) > HISTORY_LIMIT:
            self.history = self.history[-HISTORY_LIMIT:]

        try:
            await _call(transition.action, self.context, payload)
        except Exception as e:
            logger.warning(f"FSM {self.id}: action for '{event}' failed: {e}")

        try:
            await _call(self._on_transition, current, transition.target, event, payload)
        except Exception as e:
            logger.warning(f"FSM {self.id}: on_transition failed: {e}")

        try:
            await _call(self._on_checkpoint, self.serialize())
        except Exception as e:
            logger.warning(f"FSM {self.id}: checkpoint failed: {e}")

        self._arm_timeout()
        return TransitionResult(True, transition.target, current, event)

    def destroy(self) -> None:
        self._clear_timeout()
        self._destroyed = True

    # ── Timeouts ─────────────────────────────────────────────────────────

    def _arm_timeout(self) -> None:
        timeout = self.definition.timeouts.get(self._state)
        if timeout is None or self._destroyed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"FSM {self.id}: no running loop, timeout for '{self._state}' not armed")
            return
        armed_state = self._state
        self._timer = loop.call_later(timeout.seconds, self._fire_timeout, armed_state, timeout.event)

    def _fire_timeout(self, armed_state: str, event: str) -> None:
        self._timer = None
        if self._destroyed or self._state != armed_state:
            return
        logger.info(f"FSM {self.id}: state '{armed_state}' timed out, sending '{event}'")
        self._timeout_task = asyncio.ensure_future(self.send(event, {"reason": "timeout"}))

    def _clear_timeout(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
