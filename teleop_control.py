"""teleop_control.py - differential drive commands from keyboard and gamepad.

Arrow keys set discrete directions, the gamepad's first two axes give a
continuous bias. Both are mixed into left/right wheel power in [-100, 100]
and sent over the robot's data channel as

    {"control": {"left": <int>, "right": <int>}}

whenever the input changes: on every key edge, on gamepad connect and
disconnect, and on every analog sample (10 Hz by default) while a gamepad
is attached.
"""

import asyncio
import json
import math
from dataclasses import dataclass, field

DIRECTIONS = ("up", "down", "left", "right")
DEADZONE = 0.1
POWER = 100
SAMPLE_PERIOD = 0.1  # seconds

AXIS_X = 0
AXIS_Y = 1


def log(msg):
    print(f"[control] {msg}", flush=True)


@dataclass
class InputState:
    directions: set = field(default_factory=set)
    axis_x: float = 0.0
    axis_y: float = 0.0


@dataclass(frozen=True)
class DriveCommand:
    left: int
    right: int

    def to_json(self):
        return json.dumps({"control": {"left": self.left, "right": self.right}})


def clamp(value, low=-1.0, high=1.0):
    return max(low, min(high, value))


def apply_deadzone(value, threshold=DEADZONE):
    return value if abs(value) >= threshold else 0.0


def round_half_up(value):
    return int(math.floor(value + 0.5))


def compute_drive(state: InputState) -> DriveCommand:
    """Mix the current input state into wheel powers.

    Up/down add to both wheels. Left/right are clamped toward zero on the
    inside wheel, so a turn can stop that wheel but never reverse it
    relative to the forward/backward term.
    """
    x = apply_deadzone(clamp(state.axis_x))
    y = apply_deadzone(clamp(state.axis_y))

    left = -y + x
    right = -y - x

    if "up" in state.directions:
        left += 1.0
        right += 1.0
    if "down" in state.directions:
        left -= 1.0
        right -= 1.0
    if "left" in state.directions:
        left = min(left - 1.0, 0.0)
        right = max(right + 1.0, 0.0)
    if "right" in state.directions:
        left = max(left + 1.0, 0.0)
        right = min(right - 1.0, 0.0)

    return DriveCommand(
        round_half_up(clamp(left) * POWER),
        round_half_up(clamp(right) * POWER),
    )


class ControlAggregator:
    """Owns the shared InputState and the transmission sink.

    The sink is any object with an `is_open` attribute and a `send(text)`
    method, normally the robot's data channel. Writes while there is no sink,
    or while it is not open, are dropped.
    """

    def __init__(self, sample_period=SAMPLE_PERIOD):
        self.state = InputState()
        self.sample_period = sample_period
        self.sink = None
        self.gamepad = None
        self._sampler = None

    def set_sink(self, sink):
        self.sink = sink

    def clear_sink(self, sink=None):
        if sink is None or sink is self.sink:
            self.sink = None

    # -- discrete input --

    def press(self, direction):
        if direction not in DIRECTIONS or direction in self.state.directions:
            return None  # key auto-repeat is not an edge
        self.state.directions.add(direction)
        return self.update()

    def release(self, direction):
        if direction not in DIRECTIONS:
            return None
        self.state.directions.discard(direction)
        return self.update()

    # -- analog input --

    def gamepad_connected(self, gamepad):
        """Track `gamepad` (a pygame Joystick) and start sampling it."""
        log(f"Gamepad: {gamepad.get_name()}")
        self._stop_sampler()
        self.gamepad = gamepad
        self._sampler = asyncio.ensure_future(self._sample_loop(gamepad))

    def gamepad_disconnected(self, instance_id):
        if self.gamepad is None or self.gamepad.get_instance_id() != instance_id:
            return
        log("Gamepad disconnected")
        self._stop_sampler()
        self.gamepad = None
        self.state.axis_x = 0.0
        self.state.axis_y = 0.0
        self.update()

    def sample(self, gamepad):
        axes = gamepad.get_numaxes()
        self.state.axis_x = clamp(gamepad.get_axis(AXIS_X)) if axes > AXIS_X else 0.0
        self.state.axis_y = clamp(gamepad.get_axis(AXIS_Y)) if axes > AXIS_Y else 0.0
        return self.update()

    async def _sample_loop(self, gamepad):
        while True:
            self.sample(gamepad)
            await asyncio.sleep(self.sample_period)

    def _stop_sampler(self):
        if self._sampler is not None:
            self._sampler.cancel()
            self._sampler = None

    # -- output --

    def update(self):
        command = compute_drive(self.state)
        self.transmit(command)
        return command

    def transmit(self, command):
        sink = self.sink
        if sink is None or not sink.is_open:
            return False
        sink.send(command.to_json())
        return True

    def stop(self):
        self._stop_sampler()
        self.gamepad = None
