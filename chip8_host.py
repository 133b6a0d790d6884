import argparse
import logging
import sys
import time
from pathlib import Path

import pygame

from chip8 import (C8Computer, C8Host, DISPLAY_HEIGHT, DISPLAY_WIDTH, INCREMENT_I_FX55_FX65,
                   INSTRUCTIONS_PER_TICK, RESET_VF_8XY1_8XY3, SHIFT_VY_8XY6_8XYE)

logger = logging.getLogger(__name__)

SCALE_FACTOR = 8
PIXEL_OFF = (0, 0, 0)
PIXEL_ON = (255, 255, 255)
# The host loop runs at display rate; the interpreter keeps its own 60Hz cadence regardless
FRAMES_PER_SECOND = 60
DEBUG_DUMP_FILE = "debug.txt"


# The keyboard layout for the CHIP-8 assumes:
#   1 2 3 C
#   4 5 6 D
#   7 8 9 E
#   A 0 B F
#
# We map this to the following keys on our keyboard:
#   1 2 3 4
#   Q W E R
#   A S D F
#   Z X C V

KEYMAPPING = {
    pygame.K_1: 0x01,
    pygame.K_2: 0x02,
    pygame.K_3: 0x03,
    pygame.K_4: 0x0C,
    pygame.K_q: 0x04,
    pygame.K_w: 0x05,
    pygame.K_e: 0x06,
    pygame.K_r: 0x0D,
    pygame.K_a: 0x07,
    pygame.K_s: 0x08,
    pygame.K_d: 0x09,
    pygame.K_f: 0x0E,
    pygame.K_z: 0x0A,
    pygame.K_x: 0x00,
    pygame.K_c: 0x0B,
    pygame.K_v: 0x0F
}


class C8Display(C8Host):
    '''
    Renders published framebuffers onto a pygame surface.  Publishing only records the grid;
    draw() paints it, at most once per host frame.
    '''

    def __init__(self, window, scale=SCALE_FACTOR):
        self.window = window
        self.scale = scale
        self.grid = None
        self.needs_draw = False
        self.halted = None
        self.num_renders = 0
        self.render_time_ps = 0

    def publish_framebuffer(self, grid):
        self.grid = grid
        self.needs_draw = True

    def notify_halt(self, fault):
        self.halted = fault

    def notify_rom_loaded(self, length):
        self.halted = None
        logger.debug("display ready for a %d byte ROM", length)

    def draw(self):
        if not self.needs_draw or self.grid is None:
            return False
        start_time = time.perf_counter()
        self.window.fill(PIXEL_OFF)
        for y, row in enumerate(self.grid):
            for x, lit in enumerate(row):
                if lit:
                    self.window.fill(PIXEL_ON, pygame.Rect(x * self.scale, y * self.scale,
                                                           self.scale, self.scale))
        self.needs_draw = False
        self.num_renders += 1
        self.render_time_ps += time.perf_counter() - start_time
        return True


def read_rom(rom_file):
    path = Path(rom_file)
    rom = path.read_bytes()
    logger.info("Read %d bytes from %s", len(rom), path)
    return rom


def write_debug_dump(c8, dump_file=DEBUG_DUMP_FILE):
    with open(dump_file, "w") as outfile:
        c8.debug_dump(outfile)
    logger.info("Wrote interpreter state to %s", dump_file)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 interpreter")
    parser.add_argument("rom", help="path to a CHIP-8 ROM image")
    parser.add_argument("--scale", type=int, default=SCALE_FACTOR,
                        help="window pixels per CHIP-8 pixel (default: %(default)s)")
    parser.add_argument("--ipt", type=int, default=INSTRUCTIONS_PER_TICK,
                        help="instructions executed per 60Hz tick (default: %(default)s)")
    parser.add_argument("--shift-vy", action="store_true", default=SHIFT_VY_8XY6_8XYE,
                        help="8XY6/8XYE copy VY into VX before shifting")
    parser.add_argument("--increment-i", action="store_true", default=INCREMENT_I_FX55_FX65,
                        help="FX55/FX65 leave I advanced past the last register")
    parser.add_argument("--reset-vf", action="store_true", default=RESET_VF_8XY1_8XY3,
                        help="8XY1/8XY2/8XY3 clear VF")
    parser.add_argument("--debug", action="store_true",
                        help="verbose logging, and dump interpreter state to %s on exit" % DEBUG_DUMP_FILE)
    return parser.parse_args(argv)


def handle_event(c8, event):
    '''
    Apply one pygame event to the interpreter.  Returns False when the user asked to quit.
    '''
    if event.type == pygame.QUIT:
        return False
    if event.type == pygame.KEYDOWN:
        if event.key == pygame.K_ESCAPE:
            return False
        if event.key in KEYMAPPING:
            c8.set_key(KEYMAPPING[event.key], True)
    elif event.type == pygame.KEYUP:
        if event.key in KEYMAPPING:
            c8.set_key(KEYMAPPING[event.key], False)
    return True


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO,
                        format="[%(levelname)s]:  %(message)s", stream=sys.stdout)

    try:
        rom = read_rom(args.rom)
    except OSError as e:
        logger.error("Could not read ROM: %s", e)
        return 2

    pygame.init()
    window = pygame.display.set_mode((DISPLAY_WIDTH * args.scale, DISPLAY_HEIGHT * args.scale))
    pygame.display.set_caption("CHIP-8: {}".format(Path(args.rom).name))
    window.fill(PIXEL_OFF)

    display = C8Display(window, args.scale)
    c8 = C8Computer(host=display, shift_vy=args.shift_vy, increment_i=args.increment_i,
                    reset_vf=args.reset_vf, instructions_per_tick=args.ipt)
    c8.load_rom(rom)

    clock = pygame.time.Clock()
    start_time = time.perf_counter()
    caption_shows_halt = False
    run = True

    while run:
        for event in pygame.event.get():
            if not handle_event(c8, event):
                run = False

        c8.advance(clock.tick(FRAMES_PER_SECOND) / 1000.0)
        if display.draw():
            pygame.display.flip()

        if display.halted is not None and not caption_shows_halt:
            pygame.display.set_caption("CHIP-8: halted - {}".format(display.halted))
            caption_shows_halt = True
            write_debug_dump(c8)

    duration = time.perf_counter() - start_time
    logger.info("Duration: %.1f sec.", duration)
    logger.info("Screen num renders: %d", display.num_renders)
    if display.num_renders:
        logger.info("Average microseconds per render: %.0f",
                    (1000000 * display.render_time_ps) / display.num_renders)
    if args.debug and c8.last_fault is None:
        write_debug_dump(c8)

    pygame.quit()
    return 0 if c8.last_fault is None else 1


if __name__ == "__main__":
    sys.exit(main())
