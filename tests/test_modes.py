import math
import threading
import time

import pytest

from drive402.modes import (
    OP_MODE_MASK,
    CyclicSynchronousTorqueMode,
    DefaultHomingMode,
    InterpolatedPositionMode,
    IntType,
    ModeTargetHelper,
    ProfiledPositionMode,
    ProfiledVelocityMode,
    VelocityMode,
    WordAccessor,
)
from drive402.state import ControlWord
from drive402.status import LayerStatus, Level
from drive402.storage import ObjectStore


class _TargetHelper(ModeTargetHelper):
    def read(self, sw):
        return False

    def write(self, cw):
        return False


ALL_TYPES = list(IntType)


def _set(mode, value):
    return ModeTargetHelper.set_target(mode, value)


def _get(mode):
    return ModeTargetHelper.get_target(mode)


@pytest.mark.parametrize("int_type", ALL_TYPES)
def test_check_nan(int_type):
    mode = _TargetHelper(0, int_type)
    assert ModeTargetHelper.set_target(mode, math.nan) is False


@pytest.mark.parametrize("int_type", ALL_TYPES)
def test_check_zero(int_type):
    mode = _TargetHelper(0, int_type)
    assert ModeTargetHelper.set_target(mode, 0.0) is True
    assert ModeTargetHelper.get_target(mode) == 0


@pytest.mark.parametrize("int_type", ALL_TYPES)
def test_check_one(int_type):
    mode = _TargetHelper(0, int_type)
    assert ModeTargetHelper.set_target(mode, 1.0) is True
    assert ModeTargetHelper.get_target(mode) == 1


@pytest.mark.parametrize("int_type", ALL_TYPES)
def test_check_max(int_type):
    mode = _TargetHelper(0, int_type)
    top = float(int_type.max_value)

    assert ModeTargetHelper.set_target(mode, top)
    assert float(ModeTargetHelper.get_target(mode)) == top

    assert ModeTargetHelper.set_target(mode, top - 1)
    assert float(ModeTargetHelper.get_target(mode)) == top - 1

    assert ModeTargetHelper.set_target(mode, top + 1)
    assert float(ModeTargetHelper.get_target(mode)) == top


@pytest.mark.parametrize("int_type", ALL_TYPES)
def test_check_min(int_type):
    mode = _TargetHelper(0, int_type)
    bottom = float(int_type.min_value)

    assert ModeTargetHelper.set_target(mode, bottom)
    assert float(ModeTargetHelper.get_target(mode)) == bottom

    assert ModeTargetHelper.set_target(mode, bottom - 1)
    assert float(ModeTargetHelper.get_target(mode)) == bottom

    assert ModeTargetHelper.set_target(mode, bottom + 1)
    assert float(ModeTargetHelper.get_target(mode)) == bottom + 1


def test_start_clears_target_flag():
    mode = _TargetHelper(0, IntType.INT32)
    assert ModeTargetHelper.set_target(mode, 3.7)
    assert ModeTargetHelper.has_target(mode)
    assert ModeTargetHelper.get_target(mode) == 3
    assert ModeTargetHelper.start(mode)
    assert not ModeTargetHelper.has_target(mode)


def test_non_number_target_rejected():
    mode = _TargetHelper(0, IntType.INT16)
    assert ModeTargetHelper.set_target(mode, "fast") is False
    assert ModeTargetHelper.has_target(mode) is False


def test_word_accessor_respects_mask():
    cw = WordAccessor(0, OP_MODE_MASK)
    assert cw.set(ControlWord.OPERATION_MODE_SPECIFIC0)
    assert not cw.set(ControlWord.SWITCH_ON)
    assert cw.word == 1 << ControlWord.OPERATION_MODE_SPECIFIC0
    assert cw.get_bit(ControlWord.OPERATION_MODE_SPECIFIC0)
    assert cw.reset(ControlWord.OPERATION_MODE_SPECIFIC0)
    assert cw.word == 0


def test_word_accessor_assign_keeps_unmasked_bits():
    cw = WordAccessor(0x000F, OP_MODE_MASK)
    cw.assign(0xFFFF)
    assert cw.word == 0x000F | OP_MODE_MASK
    assert cw.masked == OP_MODE_MASK
    cw.assign(0)
    assert cw.word == 0x000F


def _store(*indices):
    store = ObjectStore()
    written = {}
    for index, subindex in indices:
        store.add(
            index,
            subindex,
            0,
            writer=lambda value, key=(index, subindex): written.__setitem__(key, value),
        )
    return store, written


def test_forward_mode_writes_target():
    store, written = _store((0x60FF, 0))
    mode = ProfiledVelocityMode(store)
    assert mode.start()
    cw = WordAccessor(0x000F)
    assert not mode.write(cw)
    assert (0x60FF, 0) not in written
    assert mode.set_target(250.0)
    assert mode.write(cw)
    assert written[(0x60FF, 0)] == 250
    assert cw.word == 0x000F


def test_velocity_mode_sets_and_clears_mask_bits():
    store, written = _store((0x6042, 0))
    mode = VelocityMode(store)
    mode.start()
    cw = WordAccessor(OP_MODE_MASK)
    assert not mode.write(cw)
    assert cw.masked & mode.cw_mask == 0
    mode.set_target(-40000.0)
    assert mode.write(cw)
    assert cw.masked & mode.cw_mask == mode.cw_mask
    assert written[(0x6042, 0)] == IntType.INT16.min_value


def test_interpolated_uses_subindex():
    store, written = _store((0x60C1, 1))
    mode = InterpolatedPositionMode(store)
    mode.start()
    mode.set_target(12.0)
    assert mode.write(WordAccessor())
    assert written[(0x60C1, 1)] == 12


def test_torque_mode_clamps_to_int16():
    store, written = _store((0x6071, 0))
    mode = CyclicSynchronousTorqueMode(store)
    mode.start()
    mode.set_target(1e9)
    mode.write(WordAccessor())
    assert written[(0x6071, 0)] == IntType.INT16.max_value


def test_forward_mode_missing_object_raises():
    with pytest.raises(KeyError):
        ProfiledVelocityMode(ObjectStore())


def test_profiled_position_handshake():
    store, written = _store((0x607A, 0))
    mode = ProfiledPositionMode(store)
    mode.start()
    cw = WordAccessor()
    assert not mode.write(cw)
    assert cw.get_bit(ProfiledPositionMode.CW_IMMEDIATE)

    mode.set_target(100.0)
    assert mode.write(cw)
    assert written[(0x607A, 0)] == 100
    assert cw.get_bit(ProfiledPositionMode.CW_NEW_POINT)

    assert mode.read(ProfiledPositionMode.MASK_ACKNOWLEDGED)
    assert mode.write(cw)
    assert not cw.get_bit(ProfiledPositionMode.CW_NEW_POINT)

    mode.read(0)
    mode.set_target(200.0)
    mode.write(cw)
    assert written[(0x607A, 0)] == 200
    assert cw.get_bit(ProfiledPositionMode.CW_NEW_POINT)


def test_profiled_position_error_bit():
    store, _ = _store((0x607A, 0))
    mode = ProfiledPositionMode(store)
    assert not mode.read(ProfiledPositionMode.MASK_ERROR)


def _homing(method=1):
    store = ObjectStore()
    store.add(0x6098, 0, method)
    return DefaultHomingMode(store)


def test_homing_method_zero_skips():
    mode = _homing(0)
    status = LayerStatus()
    assert mode.execute_homing(status)
    assert status.equals(Level.OK)


def test_homing_error_before_start():
    mode = _homing()
    mode.start()
    mode.read(DefaultHomingMode.MASK_ERROR)
    status = LayerStatus()
    assert not mode.execute_homing(status)
    assert "homing error before start" in status.reason
    assert not mode.write(WordAccessor())


def test_homing_prepare_timeout():
    mode = _homing()
    mode.prepare_timeout = 0.05
    mode.start()
    status = LayerStatus()
    assert not mode.execute_homing(status)
    assert status.equals(Level.ERROR)
    assert "could not prepare homing" in status.reason


def test_homing_success():
    mode = _homing()
    mode.start()
    reached = DefaultHomingMode.MASK_REACHED
    attained = DefaultHomingMode.MASK_ATTAINED
    started = []

    def drive():
        mode.read(reached)
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            cw = WordAccessor()
            if mode.write(cw):
                started.append(cw.get_bit(DefaultHomingMode.CW_START_HOMING))
                break
            time.sleep(0.005)
        mode.read(0)
        mode.read(attained)
        mode.read(attained | reached)

    worker = threading.Thread(target=drive)
    worker.start()
    status = LayerStatus()
    ok = mode.execute_homing(status)
    worker.join()
    assert ok
    assert status.equals(Level.OK)
    assert started == [True]
    assert not mode.write(WordAccessor())