"""A motor layer that drives a device through its state machine and modes."""

from __future__ import annotations

import functools
import logging
import threading
import time
from abc import ABC, abstractmethod
from enum import IntEnum
from typing import Any, Callable, Mapping, Optional

from .modes import (
    CyclicSynchronousPositionMode,
    CyclicSynchronousTorqueMode,
    CyclicSynchronousVelocityMode,
    DefaultHomingMode,
    HomingMode,
    InterpolatedPositionMode,
    Mode,
    ProfiledPositionMode,
    ProfiledTorqueMode,
    ProfiledVelocityMode,
    VelocityMode,
    WordAccessor,
)
from .state import (
    Command402,
    ControlWord,
    IllegalTransitionError,
    InternalState,
    State402,
    StatusWord,
)
from .status import LayerReport, LayerState, LayerStatus, Level
from .storage import EntryError, ObjectStore

_log = logging.getLogger(__name__)

_HALT_BIT = 1 << ControlWord.HALT
_FAULT_RESET_BIT = 1 << ControlWord.FAULT_RESET
_INTERNAL_LIMIT_BIT = 1 << StatusWord.INTERNAL_LIMIT
_WARNING_BIT = 1 << StatusWord.WARNING


class OperationMode(IntEnum):
    """Operation modes as written to object 0x6060."""

    NO_MODE = 0
    PROFILED_POSITION = 1
    VELOCITY = 2
    PROFILED_VELOCITY = 3
    PROFILED_TORQUE = 4
    RESERVED = 5
    HOMING = 6
    INTERPOLATED_POSITION = 7
    CYCLIC_SYNCHRONOUS_POSITION = 8
    CYCLIC_SYNCHRONOUS_VELOCITY = 9
    CYCLIC_SYNCHRONOUS_TORQUE = 10


class MotorBase(ABC):
    """Common interface of motor layers."""

    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    def set_target(self, value: float) -> bool:
        """Hand a new target to the active mode."""

    @abstractmethod
    def enter_mode_and_wait(self, mode: int) -> bool:
        """Switch to ``mode`` and block until the device runs in it."""

    @abstractmethod
    def is_mode_supported(self, mode: int) -> bool:
        """True if ``mode`` can be entered."""

    @abstractmethod
    def get_mode(self) -> int:
        """The currently selected mode, or NO_MODE."""

    def register_default_modes(self, storage: ObjectStore) -> None:
        """Register the standard mode handlers; nothing by default."""


_DEFAULT_MODES: tuple[tuple[OperationMode, Callable[[ObjectStore], Mode]], ...] = (
    (OperationMode.PROFILED_POSITION, ProfiledPositionMode),
    (OperationMode.VELOCITY, VelocityMode),
    (OperationMode.PROFILED_VELOCITY, ProfiledVelocityMode),
    (OperationMode.PROFILED_TORQUE, ProfiledTorqueMode),
    (OperationMode.HOMING, DefaultHomingMode),
    (OperationMode.INTERPOLATED_POSITION, InterpolatedPositionMode),
    (OperationMode.CYCLIC_SYNCHRONOUS_POSITION, CyclicSynchronousPositionMode),
    (OperationMode.CYCLIC_SYNCHRONOUS_VELOCITY, CyclicSynchronousVelocityMode),
    (OperationMode.CYCLIC_SYNCHRONOUS_TORQUE, CyclicSynchronousTorqueMode),
)


class Motor402(MotorBase):
    """A drive controlled through its status word, control word and modes.

    Settings (all optional): ``switching_state`` (state to pass through while
    changing modes), ``monitor_mode`` (read the mode display on every cycle)
    and ``state_switch_timeout`` (seconds).
    """

    mode_switch_timeout = 5.0
    _poll_interval = 0.02

    def __init__(
        self,
        name: str,
        storage: ObjectStore,
        settings: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(name)
        settings = dict(settings or {})
        self._switching_state = InternalState(
            settings.get("switching_state", InternalState.OPERATION_ENABLE)
        )
        self._monitor_mode = bool(settings.get("monitor_mode", True))
        self._state_switch_timeout = float(settings.get("state_switch_timeout", 5))

        self._status_word = 0
        self._control_word = 0
        self._cw_lock = threading.RLock()
        self._start_fault_reset = False
        self._target_state = InternalState.UNKNOWN
        self._state_handler = State402()

        self._map_lock = threading.Lock()
        self._modes: dict[int, Mode] = {}
        self._mode_allocators: dict[int, Callable[[], None]] = {}

        self._selected_mode: Optional[Mode] = None
        self._mode_id = int(OperationMode.NO_MODE)
        self._mode_cond = threading.Condition()

        self._status_word_entry = storage.entry(0x6041)
        self._control_word_entry = storage.entry(0x6040)
        self._op_mode_display = storage.entry(0x6061)
        self._op_mode = storage.entry(0x6060)
        try:
            self._supported_drive_modes = storage.entry(0x6502)
        except EntryError:
            self._supported_drive_modes = None

    # public interface

    def set_target(self, value: float) -> bool:
        if self._state_handler.state == InternalState.OPERATION_ENABLE:
            with self._mode_cond:
                return bool(self._selected_mode and self._selected_mode.set_target(value))
        return False

    def is_mode_supported(self, mode: int) -> bool:
        return mode != OperationMode.HOMING and self._alloc_mode(mode) is not None

    def enter_mode_and_wait(self, mode: int) -> bool:
        status = LayerStatus()
        okay = mode != OperationMode.HOMING and self._switch_mode(status, mode)
        if not status.bounded(Level.OK):
            _log.error("Could not switch to mode %s, reason: %s", mode, status.reason)
        return okay

    def get_mode(self) -> int:
        with self._mode_cond:
            if self._selected_mode is not None:
                return self._selected_mode.mode_id
            return int(OperationMode.NO_MODE)

    def register_mode(self, mode: int, factory: Callable[[], Mode]) -> bool:
        """Register a factory for ``mode``; False if one is registered already.

        The factory is called on initialisation if the device supports the mode.
        """
        if mode in self._mode_allocators:
            return False

        def allocate() -> None:
            if self._is_mode_supported_by_device(mode):
                self._add_mode(mode, factory())

        self._mode_allocators[mode] = allocate
        return True

    def register_default_modes(self, storage: ObjectStore) -> None:
        for mode, handler in _DEFAULT_MODES:
            self.register_mode(mode, functools.partial(handler, storage))

    # mode bookkeeping

    def _is_mode_supported_by_device(self, mode: int) -> bool:
        if self._supported_drive_modes is None:
            raise RuntimeError("Supported drive modes (object 6502) is not valid")
        return 0 < mode <= 32 and bool(
            self._supported_drive_modes.get_cached() & (1 << (mode - 1))
        )

    def _add_mode(self, mode_id: int, mode: Optional[Mode]) -> None:
        with self._map_lock:
            if mode is not None and mode.mode_id == mode_id:
                self._modes.setdefault(mode_id, mode)

    def _alloc_mode(self, mode: int) -> Optional[Mode]:
        if self._is_mode_supported_by_device(mode):
            with self._map_lock:
                return self._modes.get(mode)
        return None

    def _switch_mode(self, status: LayerStatus, mode: int) -> bool:
        if mode == OperationMode.NO_MODE:
            with self._mode_cond:
                self._selected_mode = None
                try:
                    self._op_mode.set(mode)
                except Exception:
                    pass
            return True

        next_mode = self._alloc_mode(mode)
        if next_mode is None:
            status.error("Mode is not supported.")
            return False
        if not next_mode.start():
            status.error("Could not start mode.")
            return False

        with self._mode_cond:
            if (
                self._mode_id == mode
                and self._selected_mode is not None
                and self._selected_mode.mode_id == mode
            ):
                return True
            self._selected_mode = None

        if not self._switch_state(status, self._switching_state):
            return False

        self._op_mode.set(mode)

        deadline = time.monotonic() + self.mode_switch_timeout
        if self._monitor_mode:
            with self._mode_cond:
                self._mode_cond.wait_for(
                    lambda: self._mode_id == mode, timeout=self.mode_switch_timeout
                )
        else:
            while True:
                with self._mode_cond:
                    if self._mode_id == mode:
                        break
                if time.monotonic() >= deadline:
                    break
                self._op_mode_display.get()
                time.sleep(self._poll_interval)

        okay = False
        with self._mode_cond:
            if self._mode_id == mode:
                self._selected_mode = next_mode
                okay = True
            else:
                status.error("Mode switch timed out.")
                self._op_mode.set(self._mode_id)

        if not self._switch_state(status, InternalState.OPERATION_ENABLE):
            return False
        return okay

    def _switch_state(self, status: LayerStatus, target: InternalState) -> bool:
        deadline = time.monotonic() + self._state_switch_timeout
        state = self._state_handler.state
        self._target_state = target
        while state != self._target_state:
            with self._cw_lock:
                try:
                    self._control_word, next_state = Command402.set_transition(
                        self._control_word, state, self._target_state, True
                    )
                except IllegalTransitionError as exc:
                    _log.warning("%s", exc)
                    status.error("Could not set transition")
                    return False
            if state != next_state:
                changed, state = self._state_handler.wait_for_new_state(deadline, state)
                if not changed:
                    status.error("Transition timeout")
                    return False
        return state == target

    def _read_state(self, status: LayerStatus, current_state: LayerState) -> bool:
        sw = self._status_word_entry.get()
        old_sw, self._status_word = self._status_word, sw

        self._state_handler.read(sw)

        with self._mode_cond:
            if self._monitor_mode:
                new_mode = self._op_mode_display.get()
            else:
                new_mode = self._op_mode_display.get_cached()
            selected = self._selected_mode
            if selected is not None and selected.mode_id == new_mode:
                if not selected.read(sw):
                    status.error("Mode handler has error")
            if new_mode != self._mode_id:
                self._mode_id = new_mode
                self._mode_cond.notify_all()
            if selected is not None and selected.mode_id != new_mode:
                status.warn("mode does not match")

        if sw & _INTERNAL_LIMIT_BIT:
            if old_sw & _INTERNAL_LIMIT_BIT or current_state != LayerState.READY:
                status.warn("Internal limit active")
            else:
                status.error("Internal limit active")
        return True

    # layer handlers

    def handle_read(self, status: LayerStatus, current_state: LayerState) -> None:
        if current_state > LayerState.OFF:
            self._read_state(status, current_state)

    def handle_write(self, status: LayerStatus, current_state: LayerState) -> None:
        if current_state <= LayerState.OFF:
            return
        with self._cw_lock:
            self._control_word |= _HALT_BIT
            if self._state_handler.state == InternalState.OPERATION_ENABLE:
                with self._mode_cond:
                    accessor = WordAccessor(self._control_word)
                    okay = False
                    selected = self._selected_mode
                    if selected is not None and selected.mode_id == self._mode_id:
                        okay = selected.write(accessor)
                    else:
                        accessor.assign(0)
                    self._control_word = accessor.word
                    if okay:
                        self._control_word &= ~_HALT_BIT & 0xFFFF
            if self._start_fault_reset:
                self._start_fault_reset = False
                self._control_word_entry.set_cached(
                    self._control_word & ~_FAULT_RESET_BIT & 0xFFFF
                )
            else:
                self._control_word_entry.set_cached(self._control_word)

    def handle_diag(self, report: LayerReport) -> None:
        sw = self._status_word
        state = self._state_handler.state
        s = InternalState

        if state in (
            s.NOT_READY_TO_SWITCH_ON,
            s.SWITCH_ON_DISABLED,
            s.READY_TO_SWITCH_ON,
            s.SWITCHED_ON,
        ):
            report.warn("Motor operation is not enabled")
        elif state == s.QUICK_STOP_ACTIVE:
            report.error("Quick stop is active")
        elif state in (s.FAULT, s.FAULT_REACTION_ACTIVE):
            report.error("Motor has fault")
        elif state == s.UNKNOWN:
            report.error("State is unknown")
            report.add("status_word", sw)

        if sw & _WARNING_BIT:
            report.warn("Warning bit is set")
        if sw & _INTERNAL_LIMIT_BIT:
            report.error("Internal limit active")

    def handle_init(self, status: LayerStatus) -> None:
        for allocate in list(self._mode_allocators.values()):
            allocate()

        if not self._read_state(status, LayerState.INIT):
            status.error("Could not read motor state")
            return
        with self._cw_lock:
            self._control_word = 0
            self._start_fault_reset = True
        if not self._switch_state(status, InternalState.OPERATION_ENABLE):
            status.error("Could not enable motor")
            return

        homing = self._alloc_mode(OperationMode.HOMING)
        if homing is None:
            return
        if not isinstance(homing, HomingMode):
            status.error("Homing mode has incorrect handler")
            return
        if not self._switch_mode(status, OperationMode.HOMING):
            status.error("Could not enter homing mode")
            return
        if not homing.execute_homing(status):
            status.error("Homing failed")
            return
        self._switch_mode(status, OperationMode.NO_MODE)

    def handle_shutdown(self, status: LayerStatus) -> None:
        self._switch_mode(status, OperationMode.NO_MODE)
        self._switch_state(status, InternalState.SWITCH_ON_DISABLED)

    def handle_halt(self, status: LayerStatus) -> None:
        state = self._state_handler.state
        with self._cw_lock:
            if state in (InternalState.FAULT_REACTION_ACTIVE, InternalState.FAULT):
                return
            if state != InternalState.OPERATION_ENABLE:
                self._target_state = state
                return
            self._target_state = InternalState.QUICK_STOP_ACTIVE
            try:
                self._control_word, _ = Command402.set_transition(
                    self._control_word, state, InternalState.QUICK_STOP_ACTIVE
                )
            except IllegalTransitionError as exc:
                _log.warning("%s", exc)
                status.warn("Could not quick stop")

    def handle_recover(self, status: LayerStatus) -> None:
        self._start_fault_reset = True
        with self._mode_cond:
            if self._selected_mode is not None and not self._selected_mode.start():
                status.error("Could not restart mode.")
                return
        if not self._switch_state(status, InternalState.OPERATION_ENABLE):
            status.error("Could not enable motor")