"""Operation mode handlers that translate targets into drive objects."""

from __future__ import annotations

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable

from .state import ControlWord, StatusWord
from .status import LayerStatus
from .storage import ObjectStore

_log = logging.getLogger(__name__)

_PROFILED_POSITION = 1
_VELOCITY = 2
_PROFILED_VELOCITY = 3
_PROFILED_TORQUE = 4
_HOMING = 6
_INTERPOLATED_POSITION = 7
_CYCLIC_SYNCHRONOUS_POSITION = 8
_CYCLIC_SYNCHRONOUS_VELOCITY = 9
_CYCLIC_SYNCHRONOUS_TORQUE = 10

OP_MODE_MASK = (
    (1 << ControlWord.OPERATION_MODE_SPECIFIC0)
    | (1 << ControlWord.OPERATION_MODE_SPECIFIC1)
    | (1 << ControlWord.OPERATION_MODE_SPECIFIC2)
    | (1 << ControlWord.OPERATION_MODE_SPECIFIC3)
)


class IntType(Enum):
    """Fixed-width integer types that a target may be stored as."""

    UINT8 = (8, False)
    INT8 = (8, True)
    UINT16 = (16, False)
    INT16 = (16, True)
    UINT32 = (32, False)
    INT32 = (32, True)
    UINT64 = (64, False)
    INT64 = (64, True)

    @property
    def bits(self) -> int:
        return self.value[0]

    @property
    def signed(self) -> bool:
        return self.value[1]

    @property
    def min_value(self) -> int:
        return -(1 << (self.bits - 1)) if self.signed else 0

    @property
    def max_value(self) -> int:
        return (1 << (self.bits - 1)) - 1 if self.signed else (1 << self.bits) - 1


class WordAccessor:
    """Access to the bits of a 16-bit word that lie inside ``mask``."""

    def __init__(self, word: int = 0, mask: int = OP_MODE_MASK) -> None:
        self.word = word & 0xFFFF
        self.mask = mask & 0xFFFF

    @property
    def masked(self) -> int:
        """The bits of the word that the mask lets through."""
        return self.word & self.mask

    def set(self, bit: int) -> bool:
        """Set a bit if the mask allows it; True if it did."""
        value = self.mask & (1 << bit)
        self.word |= value
        return bool(value)

    def reset(self, bit: int) -> bool:
        """Clear a bit if the mask allows it; True if it did."""
        value = self.mask & (1 << bit)
        self.word &= ~value & 0xFFFF
        return bool(value)

    def get_bit(self, bit: int) -> bool:
        return bool(self.word & (1 << bit))

    def assign(self, value: int) -> None:
        """Replace the masked bits with those of ``value``."""
        self.word = (self.word & ~self.mask & 0xFFFF) | (value & self.mask)


class Mode(ABC):
    """Handler for one operation mode."""

    def __init__(self, mode_id: int) -> None:
        self.mode_id = mode_id

    @abstractmethod
    def start(self) -> bool:
        """Prepare the mode; False if it cannot run."""

    @abstractmethod
    def read(self, sw: int) -> bool:
        """Take in a status word; False on a mode error."""

    @abstractmethod
    def write(self, cw: WordAccessor) -> bool:
        """Fill in the mode bits of the control word; True if active."""

    def set_target(self, value: float) -> bool:
        _log.error("Mode.set_target not implemented")
        return False


class ModeTargetHelper(Mode):
    """A mode holding a target clamped into a fixed integer type."""

    def __init__(self, mode_id: int, int_type: IntType) -> None:
        super().__init__(mode_id)
        self.int_type = int_type
        self._lock = threading.Lock()
        self._target = 0
        self._has_target = False

    def has_target(self) -> bool:
        return self._has_target

    def get_target(self) -> int:
        with self._lock:
            return self._target

    def set_target(self, value: float) -> bool:
        try:
            number = float(value)
        except (TypeError, ValueError):
            _log.error("Was not able to cast command %r", value)
            return False
        if math.isnan(number):
            _log.error("target command is not a number")
            return False
        low, high = self.int_type.min_value, self.int_type.max_value
        truncated = number if math.isinf(number) else math.trunc(number)
        if truncated > high:
            _log.warning(
                "Command %s does not fit into target, clamping to max limit", value
            )
            target = high
        elif truncated < low:
            _log.warning(
                "Command %s does not fit into target, clamping to min limit", value
            )
            target = low
        else:
            target = int(truncated)
        with self._lock:
            self._target = target
            self._has_target = True
        return True

    def start(self) -> bool:
        self._has_target = False
        return True


class ModeForwardHelper(ModeTargetHelper):
    """A mode that forwards its target to one object of the dictionary."""

    def __init__(
        self,
        mode_id: int,
        int_type: IntType,
        storage: ObjectStore,
        index: int,
        subindex: int = 0,
        cw_mask: int = 0,
    ) -> None:
        super().__init__(mode_id, int_type)
        self.cw_mask = cw_mask
        self._target_entry = storage.entry(index, subindex)

    def read(self, sw: int) -> bool:
        return True

    def write(self, cw: WordAccessor) -> bool:
        if self.has_target():
            cw.assign(cw.masked | self.cw_mask)
            self._target_entry.set(self.get_target())
            return True
        cw.assign(cw.masked & ~self.cw_mask)
        return False


class ProfiledVelocityMode(ModeForwardHelper):
    def __init__(self, storage: ObjectStore) -> None:
        super().__init__(_PROFILED_VELOCITY, IntType.INT32, storage, 0x60FF)


class ProfiledTorqueMode(ModeForwardHelper):
    def __init__(self, storage: ObjectStore) -> None:
        super().__init__(_PROFILED_TORQUE, IntType.INT16, storage, 0x6071)


class CyclicSynchronousPositionMode(ModeForwardHelper):
    def __init__(self, storage: ObjectStore) -> None:
        super().__init__(_CYCLIC_SYNCHRONOUS_POSITION, IntType.INT32, storage, 0x607A)


class CyclicSynchronousVelocityMode(ModeForwardHelper):
    def __init__(self, storage: ObjectStore) -> None:
        super().__init__(_CYCLIC_SYNCHRONOUS_VELOCITY, IntType.INT32, storage, 0x60FF)


class CyclicSynchronousTorqueMode(ModeForwardHelper):
    def __init__(self, storage: ObjectStore) -> None:
        super().__init__(_CYCLIC_SYNCHRONOUS_TORQUE, IntType.INT16, storage, 0x6071)


class VelocityMode(ModeForwardHelper):
    def __init__(self, storage: ObjectStore) -> None:
        super().__init__(
            _VELOCITY,
            IntType.INT16,
            storage,
            0x6042,
            0,
            (1 << ControlWord.OPERATION_MODE_SPECIFIC0)
            | (1 << ControlWord.OPERATION_MODE_SPECIFIC1)
            | (1 << ControlWord.OPERATION_MODE_SPECIFIC2),
        )


class InterpolatedPositionMode(ModeForwardHelper):
    def __init__(self, storage: ObjectStore) -> None:
        super().__init__(
            _INTERPOLATED_POSITION,
            IntType.INT32,
            storage,
            0x60C1,
            0x01,
            1 << ControlWord.OPERATION_MODE_SPECIFIC0,
        )


class ProfiledPositionMode(ModeTargetHelper):
    """Profiled position with new-set-point handshaking."""

    MASK_REACHED = 1 << StatusWord.TARGET_REACHED
    MASK_ACKNOWLEDGED = 1 << StatusWord.OPERATION_MODE_SPECIFIC0
    MASK_ERROR = 1 << StatusWord.OPERATION_MODE_SPECIFIC1
    CW_NEW_POINT = ControlWord.OPERATION_MODE_SPECIFIC0
    CW_IMMEDIATE = ControlWord.OPERATION_MODE_SPECIFIC1
    CW_BLENDING = ControlWord.OPERATION_MODE_SPECIFIC3

    def __init__(self, storage: ObjectStore) -> None:
        super().__init__(_PROFILED_POSITION, IntType.INT32)
        self._target_position = storage.entry(0x607A)
        self._last_target = math.nan
        self._sw = 0

    def start(self) -> bool:
        self._sw = 0
        self._last_target = math.nan
        return super().start()

    def read(self, sw: int) -> bool:
        self._sw = sw
        return (sw & self.MASK_ERROR) == 0

    def write(self, cw: WordAccessor) -> bool:
        cw.set(self.CW_IMMEDIATE)
        if not self.has_target():
            return False
        target = self.get_target()
        if not self._sw & self.MASK_ACKNOWLEDGED and target != self._last_target:
            if cw.get_bit(self.CW_NEW_POINT):
                cw.reset(self.CW_NEW_POINT)
            else:
                self._target_position.set(target)
                cw.set(self.CW_NEW_POINT)
                self._last_target = target
        elif self._sw & self.MASK_ACKNOWLEDGED:
            cw.reset(self.CW_NEW_POINT)
        return True


class HomingMode(Mode):
    """A mode that can run a homing procedure."""

    SW_ATTAINED = StatusWord.OPERATION_MODE_SPECIFIC0
    SW_ERROR = StatusWord.OPERATION_MODE_SPECIFIC1
    CW_START_HOMING = ControlWord.OPERATION_MODE_SPECIFIC0

    def __init__(self) -> None:
        super().__init__(_HOMING)

    @abstractmethod
    def execute_homing(self, status: LayerStatus) -> bool:
        """Run homing to completion; record failures in ``status``."""


class DefaultHomingMode(HomingMode):
    """Homing using the method in object 0x6098 and the standard handshake."""

    MASK_REACHED = 1 << StatusWord.TARGET_REACHED
    MASK_ATTAINED = 1 << HomingMode.SW_ATTAINED
    MASK_ERROR = 1 << HomingMode.SW_ERROR

    prepare_timeout = 1.0
    finish_timeout = 10.0

    def __init__(self, storage: ObjectStore) -> None:
        super().__init__()
        self._homing_method = storage.entry(0x6098)
        self._execute = False
        self._cond = threading.Condition()
        self._status = 0

    def _error(self, status: LayerStatus, message: str) -> bool:
        self._execute = False
        status.error(message)
        return False

    def start(self) -> bool:
        self._execute = False
        return self.read(0)

    def read(self, sw: int) -> bool:
        with self._cond:
            old = self._status
            self._status = sw & (self.MASK_REACHED | self.MASK_ATTAINED | self.MASK_ERROR)
            if old != self._status:
                self._cond.notify_all()
        return True

    def write(self, cw: WordAccessor) -> bool:
        cw.assign(0)
        if self._execute:
            cw.set(self.CW_START_HOMING)
            return True
        return False

    def _wait(self, deadline: float, predicate: Callable[[], bool]) -> bool:
        return self._cond.wait_for(
            predicate, timeout=max(0.0, deadline - time.monotonic())
        )

    def _masked_not_equal(self, mask: int, value: int) -> Callable[[], bool]:
        return lambda: (self._status & mask) != value

    def execute_homing(self, status: LayerStatus) -> bool:
        if self._homing_method.get_cached() == 0:
            return True

        reached, attained, error = self.MASK_REACHED, self.MASK_ATTAINED, self.MASK_ERROR
        prepare_deadline = time.monotonic() + self.prepare_timeout
        with self._cond:
            if not self._wait(prepare_deadline, self._masked_not_equal(error | reached, 0)):
                return self._error(status, "could not prepare homing")
            if self._status & error:
                return self._error(status, "homing error before start")

            self._execute = True

            if not self._wait(
                prepare_deadline,
                self._masked_not_equal(error | attained | reached, reached),
            ):
                return self._error(status, "homing did not start")
            if self._status & error:
                return self._error(status, "homing error at start")

            finish_deadline = time.monotonic() + self.finish_timeout

            if not self._wait(finish_deadline, self._masked_not_equal(error | attained, 0)):
                return self._error(status, "homing not attained")
            if self._status & error:
                return self._error(status, "homing error during process")

            if not self._wait(finish_deadline, self._masked_not_equal(error | reached, 0)):
                return self._error(status, "homing did not stop")
            if self._status & error:
                return self._error(status, "homing error during stop")

            if self._status & reached and self._status & attained:
                self._execute = False
                return True

        return self._error(status, "something went wrong while homing")