# drive402

Building blocks for controlling motor drives that follow the CiA 402 device
profile: the drive state machine, the operation mode handlers and a motor
layer that ties them together. The package has no dependencies outside the
standard library.

## Modules

- `drive402.state`
  - `State402` decodes a status word (`read(sw)`) into an `InternalState`
    and lets other threads block until the state changes
    (`wait_for_new_state(deadline, state)`, with a `time.monotonic()`
    deadline; it returns `(changed, current_state)`).
  - `Command402.set_transition(cw, from_state, to_state, want_next)` returns
    the new control word and the state it leads to. With `want_next`, a
    request for `OPERATION_ENABLE` is routed through the next intermediate
    state (`Command402.next_state_for_enabling`). Transitions the profile
    does not allow raise `IllegalTransitionError`.
  - `StatusWord` and `ControlWord` name the bit positions of both words.
- `drive402.modes` – mode handlers: `ProfiledPositionMode`, `VelocityMode`,
  `ProfiledVelocityMode`, `ProfiledTorqueMode`, `InterpolatedPositionMode`,
  `CyclicSynchronousPositionMode`, `CyclicSynchronousVelocityMode`,
  `CyclicSynchronousTorqueMode` and `DefaultHomingMode`. Targets given to
  `set_target` are truncated and clamped to the range of the object's
  integer type (`IntType`); NaN is refused. `WordAccessor` gives a mode
  access to the mode-specific bits of the control word only.
- `drive402.motor` – `Motor402`, which enables the drive, switches
  operation modes, forwards targets and reports diagnostics.
  `OperationMode` lists the mode numbers written to object 0x6060.
- `drive402.storage` – `ObjectStore` and `Entry`, a small stand-in for the
  device's object dictionary. `Entry.get` and `Entry.set` go through reader
  and writer callables you supply; `get_cached` and `set_cached` touch only
  the cached value. A missing object raises `EntryError`.
- `drive402.status` – `LayerStatus` and `LayerReport` collect the worst
  `Level` seen, the reasons for it and, for reports, diagnostic values.
  `LayerState` is the lifecycle state passed to the motor's handlers.

## State machine example

```python
from drive402.state import Command402, InternalState, State402

handler = State402()
state = handler.read(0x0021)          # READY_TO_SWITCH_ON

cw, hop = Command402.set_transition(0, state, InternalState.OPERATION_ENABLE, True)
# hop is SWITCHED_ON, the next state on the way to OPERATION_ENABLE;
# cw is the control word that requests it.
```

## Motor example

`Motor402` needs the status word (0x6041), control word (0x6040), modes of
operation (0x6060) and mode display (0x6061) in its store. Supported drive
modes (0x6502) may be left out, but then any question about modes raises
`RuntimeError`. Each mode handler also needs its own target object (for
example 0x607A for profiled position, 0x6098 for homing).

```python
from drive402.motor import Motor402
from drive402.status import LayerReport, LayerState, LayerStatus, Level
from drive402.storage import ObjectStore

store = ObjectStore()
store.add(0x6041, value=0x0027)       # status word: operation enabled
store.add(0x6040)
store.add(0x6060)
store.add(0x6061)

motor = Motor402("axis", store, {"state_switch_timeout": 2})
motor.handle_read(LayerStatus(), LayerState.READY)

report = LayerReport()
motor.handle_diag(report)
assert report.bounded(Level.OK)
```

Settings for `Motor402` (all optional): `switching_state` (the state the
drive passes through while changing modes, `OPERATION_ENABLE` by default),
`monitor_mode` (read the mode display on every `handle_read`, `True` by
default) and `state_switch_timeout` (seconds, 5 by default). The mode switch
timeout is the class attribute `Motor402.mode_switch_timeout`; homing
timeouts are `DefaultHomingMode.prepare_timeout` and `finish_timeout`.

`register_default_modes(storage)` registers factories for the standard
modes; `handle_init` creates the handlers for the modes the device reports
as supported, enables the drive and runs homing if a homing handler exists.
After that, call `handle_read` and `handle_write` every cycle, and use
`set_target`, `enter_mode_and_wait`, `get_mode`, `handle_halt`,
`handle_recover` and `handle_shutdown` as needed.

## What it does not do

The package does not talk to a CAN bus. It has no SDO or PDO transport, no
sync or heartbeat handling, no object dictionary file parser and no loop
that calls the motor's handlers: the caller supplies reader and writer
callables for the entries, and calls `handle_read` and `handle_write` on its
own schedule. There is no command-line program.

## Tests

Install with the `test` extra and run `pytest`.