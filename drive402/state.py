"""The drive state machine: status word decoding and control word transitions."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import IntEnum

_log = logging.getLogger(__name__)


class StatusWord(IntEnum):
    """Bit positions in the status word (object 0x6041)."""

    READY_TO_SWITCH_ON = 0
    SWITCHED_ON = 1
    OPERATION_ENABLED = 2
    FAULT = 3
    VOLTAGE_ENABLED = 4
    QUICK_STOP = 5
    SWITCH_ON_DISABLED = 6
    WARNING = 7
    MANUFACTURER_SPECIFIC0 = 8
    REMOTE = 9
    TARGET_REACHED = 10
    INTERNAL_LIMIT = 11
    OPERATION_MODE_SPECIFIC0 = 12
    OPERATION_MODE_SPECIFIC1 = 13
    MANUFACTURER_SPECIFIC1 = 14
    MANUFACTURER_SPECIFIC2 = 15


class ControlWord(IntEnum):
    """Bit positions in the control word (object 0x6040)."""

    SWITCH_ON = 0
    ENABLE_VOLTAGE = 1
    QUICK_STOP = 2
    ENABLE_OPERATION = 3
    OPERATION_MODE_SPECIFIC0 = 4
    OPERATION_MODE_SPECIFIC1 = 5
    OPERATION_MODE_SPECIFIC2 = 6
    FAULT_RESET = 7
    HALT = 8
    OPERATION_MODE_SPECIFIC3 = 9
    MANUFACTURER_SPECIFIC0 = 11
    MANUFACTURER_SPECIFIC1 = 12
    MANUFACTURER_SPECIFIC2 = 13
    MANUFACTURER_SPECIFIC3 = 14
    MANUFACTURER_SPECIFIC4 = 15


class InternalState(IntEnum):
    """States of the drive state machine."""

    UNKNOWN = 0
    START = 0
    NOT_READY_TO_SWITCH_ON = 1
    SWITCH_ON_DISABLED = 2
    READY_TO_SWITCH_ON = 3
    SWITCHED_ON = 4
    OPERATION_ENABLE = 5
    QUICK_STOP_ACTIVE = 6
    FAULT_REACTION_ACTIVE = 7
    FAULT = 8


class IllegalTransitionError(ValueError):
    """Raised when no control word sequence leads between two states."""


_R = 1 << StatusWord.READY_TO_SWITCH_ON
_S = 1 << StatusWord.SWITCHED_ON
_O = 1 << StatusWord.OPERATION_ENABLED
_F = 1 << StatusWord.FAULT
_Q = 1 << StatusWord.QUICK_STOP
_D = 1 << StatusWord.SWITCH_ON_DISABLED
_STATE_MASK = _D | _Q | _F | _O | _S | _R

_DECODE = {
    0: InternalState.NOT_READY_TO_SWITCH_ON,
    _Q: InternalState.NOT_READY_TO_SWITCH_ON,
    _D: InternalState.SWITCH_ON_DISABLED,
    _D | _Q: InternalState.SWITCH_ON_DISABLED,
    _Q | _R: InternalState.READY_TO_SWITCH_ON,
    _Q | _S | _R: InternalState.SWITCHED_ON,
    _Q | _O | _S | _R: InternalState.OPERATION_ENABLE,
    _O | _S | _R: InternalState.QUICK_STOP_ACTIVE,
    _F | _O | _S | _R: InternalState.FAULT_REACTION_ACTIVE,
    _Q | _F | _O | _S | _R: InternalState.FAULT_REACTION_ACTIVE,
    _F: InternalState.FAULT,
    _Q | _F: InternalState.FAULT,
}


class State402:
    """Tracks the drive state decoded from status words; thread safe."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._state = InternalState.UNKNOWN

    @property
    def state(self) -> InternalState:
        with self._cond:
            return self._state

    def read(self, sw: int) -> InternalState:
        """Decode a status word, update the state and wake any waiters."""
        bits = sw & _STATE_MASK
        new_state = _DECODE.get(bits)
        if new_state is None:
            _log.warning("Motor is currently in an unknown state: %x", bits)
            new_state = InternalState.UNKNOWN
        with self._cond:
            if new_state != self._state:
                self._state = new_state
                self._cond.notify_all()
            return self._state

    def wait_for_new_state(
        self, deadline: float, state: InternalState
    ) -> tuple[bool, InternalState]:
        """Wait until the state differs from ``state`` or ``deadline`` passes.

        ``deadline`` is a ``time.monotonic()`` value. Returns whether the state
        changed and the current state.
        """
        with self._cond:
            self._cond.wait_for(
                lambda: self._state != state,
                timeout=max(0.0, deadline - time.monotonic()),
            )
            return self._state != state, self._state


@dataclass(frozen=True)
class _Op:
    to_set: int
    to_reset: int

    def __call__(self, word: int) -> int:
        return (word & ~self.to_reset & 0xFFFF) | self.to_set


def _bits(*positions: ControlWord) -> int:
    value = 0
    for position in positions:
        value |= 1 << position
    return value


def _build_transitions() -> dict[tuple[InternalState, InternalState], _Op]:
    s = InternalState
    cw = ControlWord
    table: dict[tuple[InternalState, InternalState], _Op] = {}

    def add(frm: InternalState, to: InternalState, op: _Op) -> None:
        table.setdefault((frm, to), op)

    disable_voltage = _Op(0, _bits(cw.FAULT_RESET, cw.ENABLE_VOLTAGE))
    add(s.READY_TO_SWITCH_ON, s.SWITCH_ON_DISABLED, disable_voltage)
    add(s.OPERATION_ENABLE, s.SWITCH_ON_DISABLED, disable_voltage)
    add(s.SWITCHED_ON, s.SWITCH_ON_DISABLED, disable_voltage)
    add(s.QUICK_STOP_ACTIVE, s.SWITCH_ON_DISABLED, disable_voltage)

    automatic = _Op(0, 0)
    add(s.START, s.NOT_READY_TO_SWITCH_ON, automatic)
    add(s.NOT_READY_TO_SWITCH_ON, s.SWITCH_ON_DISABLED, automatic)
    add(s.FAULT_REACTION_ACTIVE, s.FAULT, automatic)

    shutdown = _Op(
        _bits(cw.QUICK_STOP, cw.ENABLE_VOLTAGE), _bits(cw.FAULT_RESET, cw.SWITCH_ON)
    )
    add(s.SWITCH_ON_DISABLED, s.READY_TO_SWITCH_ON, shutdown)
    add(s.SWITCHED_ON, s.READY_TO_SWITCH_ON, shutdown)
    add(s.OPERATION_ENABLE, s.READY_TO_SWITCH_ON, shutdown)

    switch_on = _Op(
        _bits(cw.QUICK_STOP, cw.ENABLE_VOLTAGE, cw.SWITCH_ON),
        _bits(cw.FAULT_RESET, cw.ENABLE_OPERATION),
    )
    add(s.READY_TO_SWITCH_ON, s.SWITCHED_ON, switch_on)
    add(s.OPERATION_ENABLE, s.SWITCHED_ON, switch_on)

    enable_operation = _Op(
        _bits(cw.QUICK_STOP, cw.ENABLE_VOLTAGE, cw.SWITCH_ON, cw.ENABLE_OPERATION),
        _bits(cw.FAULT_RESET),
    )
    add(s.SWITCHED_ON, s.OPERATION_ENABLE, enable_operation)
    add(s.QUICK_STOP_ACTIVE, s.OPERATION_ENABLE, enable_operation)

    quickstop = _Op(_bits(cw.ENABLE_VOLTAGE), _bits(cw.FAULT_RESET, cw.QUICK_STOP))
    add(s.READY_TO_SWITCH_ON, s.QUICK_STOP_ACTIVE, quickstop)
    add(s.SWITCHED_ON, s.QUICK_STOP_ACTIVE, quickstop)
    add(s.OPERATION_ENABLE, s.QUICK_STOP_ACTIVE, quickstop)

    add(s.FAULT, s.SWITCH_ON_DISABLED, _Op(_bits(cw.FAULT_RESET), 0))
    return table


class Command402:
    """Computes control words that drive the state machine between states."""

    _transitions = _build_transitions()

    @staticmethod
    def next_state_for_enabling(state: InternalState) -> InternalState:
        """The next hop on the way from ``state`` to OPERATION_ENABLE."""
        try:
            state = InternalState(state)
        except ValueError:
            raise ValueError("state value is illegal") from None
        s = InternalState
        if state == s.START:
            return s.NOT_READY_TO_SWITCH_ON
        if state in (s.FAULT, s.NOT_READY_TO_SWITCH_ON):
            return s.SWITCH_ON_DISABLED
        if state == s.SWITCH_ON_DISABLED:
            return s.READY_TO_SWITCH_ON
        if state == s.READY_TO_SWITCH_ON:
            return s.SWITCHED_ON
        if state in (s.SWITCHED_ON, s.QUICK_STOP_ACTIVE, s.OPERATION_ENABLE):
            return s.OPERATION_ENABLE
        return s.FAULT

    @classmethod
    def set_transition(
        cls,
        cw: int,
        from_state: InternalState,
        to_state: InternalState,
        want_next: bool = False,
    ) -> tuple[int, InternalState]:
        """Apply the transition ``from_state`` -> ``to_state`` to ``cw``.

        With ``want_next`` a request for OPERATION_ENABLE is routed through the
        next intermediate state. Returns the new control word and the state
        that the returned word leads to. Raises IllegalTransitionError.
        """
        if from_state == to_state:
            return cw, to_state
        hop = to_state
        try:
            if want_next and to_state == InternalState.OPERATION_ENABLE:
                hop = cls.next_state_for_enabling(from_state)
            op = cls._transitions[(from_state, hop)]
        except (KeyError, ValueError):
            raise IllegalTransitionError(
                f"illegal transition {int(from_state)} -> {int(to_state)}"
            ) from None
        return op(cw), hop