"""
Shared fixtures for the CHIP-8 interpreter tests.

Programs are written as lists of 16-bit opcodes and loaded at 0x200; the
interpreter runs against a recording host and a hand-driven clock so every
test is deterministic.
"""

import random

import pytest

from chip8 import C8Computer, C8Host


class RecordingHost(C8Host):
    def __init__(self):
        self.frames = []
        self.halts = []
        self.loads = []

    def publish_framebuffer(self, grid):
        self.frames.append(grid)

    def notify_halt(self, fault):
        self.halts.append(fault)

    def notify_rom_loaded(self, length):
        self.loads.append(length)


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def assemble(*opcodes):
    return b"".join(op.to_bytes(2, "big") for op in opcodes)


@pytest.fixture
def host():
    return RecordingHost()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_c8(host, clock):
    """Build a running computer with the given opcodes loaded at 0x200."""
    def _make(*opcodes, **kwargs):
        kwargs.setdefault("rng", random.Random(1234))
        c8 = C8Computer(host=host, clock=clock, **kwargs)
        c8.load_rom(assemble(*opcodes))
        return c8
    return _make


def run(c8, count):
    for i in range(count):
        c8.step()
