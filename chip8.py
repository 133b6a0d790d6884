import logging
import math
import random
import time
from array import array
from collections import deque

logger = logging.getLogger(__name__)

MEMORY_SIZE = 4096
# (512) start of most CHIP-8 programs; everything below is reserved for the interpreter
PROGRAM_OFFSET = 0x200
FONT_OFFSET = 0x050
FONT_GLYPH_SIZE = 5
DISPLAY_WIDTH = 64
DISPLAY_HEIGHT = 32
NUM_KEYS = 16

# One 60Hz period, in seconds.  Timers decrement once per period.
TIMER_PERIOD = 1.0 / 60.0
# Host frame times summed in floating point can land a few ulps short of a whole period
TIMER_PERIOD_EPSILON = 1e-9

# Config options to cover differences between modern CHIP-8 interpreters and the original.
# These are defaults only; each C8Computer takes its own values as keyword arguments.
SHIFT_VY_8XY6_8XYE = False  # False is the modern way; True matches original
INCREMENT_I_FX55_FX65 = False  # False is the modern way; True matches original
RESET_VF_8XY1_8XY3 = False  # False is the modern way; True matches original
# 11 instructions per 60Hz tick is ~660 instructions per second
INSTRUCTIONS_PER_TICK = 11

FONT = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
        0x20, 0x60, 0x20, 0x20, 0x70,  # 1
        0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
        0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
        0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
        0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
        0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
        0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
        0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
        0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
        0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
        0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
        0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
        0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
        0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
        0xF0, 0x80, 0xF0, 0x80, 0x80]  # F


class C8Fault(Exception):
    '''
    A condition the interpreter cannot continue past.  The scheduler turns these into a halt.
    '''

    def __init__(self, opcode, pc, message):
        super().__init__("{} [{:04X}] at 0x{:03X}".format(message, opcode, pc))
        self.opcode = opcode
        self.pc = pc


class InvalidOpCodeException(C8Fault):
    def __init__(self, opcode, pc):
        super().__init__(opcode, pc, "unhandled instruction")


class StackUnderflowException(C8Fault):
    def __init__(self, opcode, pc):
        super().__init__(opcode, pc, "return from subroutine with empty stack")


class C8Host:
    '''
    The capabilities the interpreter needs from whatever embeds it.  Every method is a no-op
    here, so a headless host only overrides the ones it cares about.
    '''

    def publish_framebuffer(self, grid):
        # grid is a DISPLAY_HEIGHT-tuple of DISPLAY_WIDTH-tuples of bool, indexed grid[y][x]
        pass

    def notify_halt(self, fault):
        pass

    def notify_rom_loaded(self, length):
        pass


class C8Screen:
    '''
    The 64x32 monochrome framebuffer.  Only clear() and xor8px() change it.
    '''

    def __init__(self, xsize=DISPLAY_WIDTH, ysize=DISPLAY_HEIGHT):
        self.xsize = xsize
        self.ysize = ysize
        self.vram = array('B', [0 for i in range(self.xsize * self.ysize)])

    def clear(self):
        for i in range(self.xsize * self.ysize):
            self.vram[i] = 0

    def getpx(self, x, y):
        return self.vram[(y * self.xsize) + x] == 1

    def xor8px(self, x, y, val):
        assert 0 <= val <= 0xFF
        assert 0 <= x
        assert 0 <= y

        # xors the 8 cells from (x,y) to (x+7,y) with the bits in val.  Pixels past the right
        # or bottom edge are clipped, not wrapped.
        if y >= self.ysize:
            return False
        numpx = max(0, min(8, self.xsize - x))
        vramcell = (y * self.xsize) + x

        collision = False
        for i in range(numpx):
            if (val << i) & 0x80:
                # 0 means do nothing, so only treat the 1 case
                if self.vram[vramcell] == 1:
                    collision = True
                    self.vram[vramcell] = 0
                else:
                    self.vram[vramcell] = 1
            vramcell += 1
        return collision

    def lit_count(self):
        return sum(self.vram)

    def snapshot(self):
        return tuple(
            tuple(self.vram[row + x] == 1 for x in range(self.xsize))
            for row in range(0, self.xsize * self.ysize, self.xsize)
        )


class C8Keypad:
    '''
    The 16-key hex keypad latch: one bool per key 0..F, set by the host, read by the interpreter.
    '''

    def __init__(self):
        self.keys = [False for i in range(NUM_KEYS)]

    def set_key(self, index, pressed):
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < NUM_KEYS:
            logger.warning("unsupported key input: %r", index)
            return False
        self.keys[index] = bool(pressed)
        return True

    def is_pressed(self, index):
        return self.keys[index & 0xF]

    def first_pressed(self):
        for i, pressed in enumerate(self.keys):
            if pressed:
                return i
        return None


class C8Computer:

    def __init__(self, host=None, rng=None, clock=time.perf_counter,
                 shift_vy=SHIFT_VY_8XY6_8XYE, increment_i=INCREMENT_I_FX55_FX65,
                 reset_vf=RESET_VF_8XY1_8XY3, instructions_per_tick=INSTRUCTIONS_PER_TICK):
        # 4096 Bytes of RAM
        self.RAM = array('B', [0 for i in range(MEMORY_SIZE)])
        # The 16 registers are named V0..VF
        self.V = array('B', [0 for i in range(16)])
        # Special-purpose 16-bit register; low 12 are used for an address
        self.I = 0
        self.delay_register = 0
        self.sound_register = 0
        # Program Counter
        self.PC = PROGRAM_OFFSET
        # One could use RAM for the stack and use a stack pointer but a python List is simpler.
        self.stack = []
        self.screen = C8Screen()
        self.keypad = C8Keypad()
        # key events posted from other threads, applied at the start of advance()
        self.pending_keys = deque()
        self.blocking_on_fx0a = False

        self.host = host if host is not None else C8Host()
        self.rng = rng if rng is not None else random.Random()
        self.clock = clock
        self.shift_vy = shift_vy
        self.increment_i = increment_i
        self.reset_vf = reset_vf
        self.instructions_per_tick = instructions_per_tick

        self.time_accumulator = 0.0
        self.last_advance_time = None
        self.running = False
        self.last_fault = None
        self.rom_length = 0

        self.load_font_sprites()

        # Using a list of functions to speed the lookup, vs. doing a big nested
        # if/else.  There is one instruction for each of the high-order nibbles
        # 1, 2, 3, 4, 5, 6, 7, 9, A, B, C, and D.  The others (0, 8, E, F) have
        # multiple.
        self.operation_list = [
            self._0_opcodes, self._1nnn, self._2nnn, self._3xkk, self._4xkk, self._5xy0,
            self._6xkk, self._7xkk, self._8_opcodes, self._9xy0, self._Annn, self._Bnnn,
            self._Cxkk, self._Dxyn, self._E_opcodes, self._F_opcodes
        ]

        # opcodes beginning with 8 can be determined based on the least-significant
        # nibble (0..7 and E)
        self._8_operations = [
            self._8xy0, self._8xy1, self._8xy2, self._8xy3, self._8xy4, self._8xy5,
            self._8xy6, self._8xy7, self.invalid_op, self.invalid_op,
            self.invalid_op, self.invalid_op, self.invalid_op, self.invalid_op,
            self._8xyE, self.invalid_op
        ]

        # opcodes beginning with F can be determined based on the least_significant
        # byte (07, 0A, 15, 18, 1E, 29, 33, 55, and 65).  Since this is sparse,
        # will use a dictionary.
        self._F_operations = {
            0x07: self._Fx07,
            0x0A: self._Fx0A,
            0x15: self._Fx15,
            0x18: self._Fx18,
            0x1E: self._Fx1E,
            0x29: self._Fx29,
            0x33: self._Fx33,
            0x55: self._Fx55,
            0x65: self._Fx65
        }

    def debug_dump(self, outfile):
        outfile.write("running: {}\n".format(self.running))
        if self.last_fault is not None:
            outfile.write("fault: {}\n".format(self.last_fault))
        outfile.write("PC: 0x{:03X}\n".format(self.PC))
        outfile.write("Next instr.: 0x{:04X}\n".format(self.fetch()))
        outfile.write("I: 0x{:03X}\n".format(self.I))
        for i in range(16):
            outfile.write("V{:X}: 0x{:02X}".format(i, self.V[i]))
            if i % 4 == 3:
                outfile.write('\n')
            else:
                outfile.write('\t')
        outfile.write("delay register: 0x{:02X}\n".format(self.delay_register))
        outfile.write("sound register: 0x{:02X}\n".format(self.sound_register))
        outfile.write("stack: [{}]\n".format(", ".join("0x{:03X}".format(a) for a in self.stack)))
        outfile.write("keys: {}\n".format("".join("1" if k else "0" for k in self.keypad.keys)))
        outfile.write("waiting for key: {}\n".format(self.blocking_on_fx0a))
        outfile.write("\n\nRAM:\n")
        for i in range(MEMORY_SIZE):
            if i % 32 == 0:
                outfile.write("0x{:03X} - 0x{:03X}:  ".format(i, i + 31))
            outfile.write("{:02X}".format(self.RAM[i]))
            if i % 32 == 31:
                outfile.write("\n")

    def load_font_sprites(self):
        '''
        Video in the CHIP-8 is sprite-driven.  Each sprite is 8 pixels wide, and from 1-15 pixels high.
        A font representing 0..9 + A..F is required for proper operation.  Example for the character 2:

                   ****....
                   ...*....
                   ****....
                   *.......
                   ****....

        The font has to live in the reserved region below 0x200.  It starts at FONT_OFFSET, five
        bytes per glyph.
        '''
        for i in range(len(FONT)):
            self.RAM[FONT_OFFSET + i] = FONT[i]

    def load_rom(self, rom):
        '''
        Copy a ROM image into program memory and reset the machine to run it.  Returns the
        number of bytes loaded, which is less than len(rom) if the image does not fit.
        '''
        capacity = MEMORY_SIZE - PROGRAM_OFFSET
        rom = bytes(rom)
        if len(rom) > capacity:
            logger.warning("ROM is %d bytes; truncating to the %d that fit in memory", len(rom), capacity)
            rom = rom[:capacity]

        for i in range(PROGRAM_OFFSET, MEMORY_SIZE):
            self.RAM[i] = 0
        for i, byte in enumerate(rom):
            self.RAM[PROGRAM_OFFSET + i] = byte
        self.rom_length = len(rom)

        for i in range(16):
            self.V[i] = 0
        self.I = 0
        self.PC = PROGRAM_OFFSET
        self.stack = []
        self.delay_register = 0
        self.sound_register = 0
        self.blocking_on_fx0a = False
        self.last_fault = None
        self.time_accumulator = 0.0
        self.last_advance_time = self.clock()
        self.load_font_sprites()
        self.screen.clear()
        self.publish_framebuffer()

        self.running = True
        logger.info("Loaded %d bytes of ROM into memory", self.rom_length)
        self.host.notify_rom_loaded(self.rom_length)
        return self.rom_length

    def set_key(self, index, pressed):
        return self.keypad.set_key(index, pressed)

    def post_key(self, index, pressed):
        # Safe to call from any thread; deque.append is atomic
        self.pending_keys.append((index, pressed))

    def apply_pending_keys(self):
        while self.pending_keys:
            index, pressed = self.pending_keys.popleft()
            self.keypad.set_key(index, pressed)

    def framebuffer_snapshot(self):
        return self.screen.snapshot()

    def publish_framebuffer(self):
        self.host.publish_framebuffer(self.screen.snapshot())

    def key_states(self):
        return tuple(self.keypad.keys)

    def memory_window(self, start, length):
        start = max(0, min(start, MEMORY_SIZE))
        end = max(start, min(start + length, MEMORY_SIZE))
        return bytes(self.RAM[start:end])

    def fetch(self):
        # Addresses wrap at the 4K boundary
        return self.RAM[self.PC & 0xFFF] << 8 | self.RAM[(self.PC + 1) & 0xFFF]

    def decrement_sound_delay_registers(self):
        if self.delay_register > 0:
            self.delay_register -= 1
        if self.sound_register > 0:
            self.sound_register -= 1

    def halt(self, fault):
        self.running = False
        self.last_fault = fault
        self.time_accumulator = 0.0
        logger.error("%s; halting", fault)
        self.host.notify_halt(fault)

    def _0_opcodes(self, opcode, vx, vy, n, kk, nnn):
        if opcode == 0x00E0:
            # 00E0 - CLS
            # clear the screen
            self.screen.clear()
            self.publish_framebuffer()
        elif opcode == 0x00EE:
            # 00EE - RET
            # Return from a subroutine.  The popped address is the CALL itself, so the
            # normal advance moves past it.
            if not self.stack:
                raise StackUnderflowException(opcode, self.PC)
            self.PC = self.stack.pop()
        else:
            # 0nnn - SYS addr is only meaningful on the original hardware
            raise InvalidOpCodeException(opcode, self.PC)
        return True

    def _1nnn(self, opcode, vx, vy, n, kk, nnn):
        # 1nnn - JP addr
        # Jump to location nnn
        self.PC = nnn
        return False

    def _2nnn(self, opcode, vx, vy, n, kk, nnn):
        # 2nnn - CALL addr
        # Call subroutine at nnn
        self.stack.append(self.PC)
        self.PC = nnn
        return False

    def _3xkk(self, opcode, vx, vy, n, kk, nnn):
        # 3xkk - SE Vx, byte
        # Skip next instruction if Vx == kk
        if self.V[vx] == kk:
            self.PC += 2
        return True

    def _4xkk(self, opcode, vx, vy, n, kk, nnn):
        # 4xkk - SNE Vx, byte
        # Skip next instruction if Vx != kk
        if self.V[vx] != kk:
            self.PC += 2
        return True

    def _5xy0(self, opcode, vx, vy, n, kk, nnn):
        # 5xy0 - SE Vx, Vy
        # Skip next instruction if Vx == Vy
        if n != 0:
            raise InvalidOpCodeException(opcode, self.PC)
        if self.V[vx] == self.V[vy]:
            self.PC += 2
        return True

    def _6xkk(self, opcode, vx, vy, n, kk, nnn):
        # 6xkk - LD Vx, byte
        # Set Vx = kk
        self.V[vx] = kk
        return True

    def _7xkk(self, opcode, vx, vy, n, kk, nnn):
        # 7xkk - ADD Vx, byte
        # Add value in kk to vx, stores result in vx, does NOT set overflow flag
        self.V[vx] = (self.V[vx] + kk) & 0xFF
        return True

    def invalid_op(self, opcode, vx, vy):
        raise InvalidOpCodeException(opcode, self.PC)

    def _8xy0(self, opcode, vx, vy):
        # 8xy0 - LD Vx, Vy
        # Set Vx = Vy
        self.V[vx] = self.V[vy]
        return True

    def _8xy1(self, opcode, vx, vy):
        # 8xy1 - OR Vx, Vy
        # Set Vx = Vx OR Vy.
        self.V[vx] = self.V[vx] | self.V[vy]
        if self.reset_vf:
            self.V[0xF] = 0
        return True

    def _8xy2(self, opcode, vx, vy):
        # 8xy2 - AND Vx, Vy
        # Set Vx = Vx AND Vy
        self.V[vx] = self.V[vx] & self.V[vy]
        if self.reset_vf:
            self.V[0xF] = 0
        return True

    def _8xy3(self, opcode, vx, vy):
        # 8xy3 - XOR Vx, Vy
        # Set Vx = Vx XOR Vy
        self.V[vx] = self.V[vx] ^ self.V[vy]
        if self.reset_vf:
            self.V[0xF] = 0
        return True

    def _8xy4(self, opcode, vx, vy):
        # 8xy4 - ADD Vx, Vy
        # Set Vx = Vx + Vy, set VF = carry.  Must be done in this order so VF wins when x is F.
        total = self.V[vx] + self.V[vy]
        self.V[vx] = total & 0xFF
        if total > 255:
            self.V[0xF] = 1
        else:
            self.V[0xF] = 0
        return True

    def _8xy5(self, opcode, vx, vy):
        # 8xy5 - SUB Vx, Vy
        # Set Vx = Vx - Vy.  Set VF = NOT borrow (VF = 1 if Vx > Vy)
        if self.V[vx] > self.V[vy]:
            notborrow = 1
        else:
            notborrow = 0
        self.V[vx] = (self.V[vx] - self.V[vy]) & 0xFF
        self.V[0xF] = notborrow
        return True

    def _8xy6(self, opcode, vx, vy):
        # 8xy6 - SHR Vx, Vy
        # ORIGINAL IMPLEMENTATION: copy Vy into Vx, then shift Vx right by 1.
        # MODERN IMPLEMENTATION: shift Vx right by 1 in place
        # In both, VF is set to the least significant bit of Vx before the shift
        # See: https://tobiasvl.github.io/blog/write-a-chip-8-emulator/#8xy6-and-8xye-shift
        if self.shift_vy:
            self.V[vx] = self.V[vy]
        lsb = self.V[vx] & 0x1
        self.V[vx] = self.V[vx] >> 1
        self.V[0xF] = lsb
        return True

    def _8xy7(self, opcode, vx, vy):
        # 8xy7 - SUBN Vx, Vy
        # Set Vx = Vy - Vx.  Set VF = NOT borrow (VF = 1 if Vy > Vx)
        if self.V[vy] > self.V[vx]:
            notborrow = 1
        else:
            notborrow = 0
        self.V[vx] = (self.V[vy] - self.V[vx]) & 0xFF
        self.V[0xF] = notborrow
        return True

    def _8xyE(self, opcode, vx, vy):
        # 8xyE - SHL Vx, Vy
        # ORIGINAL IMPLEMENTATION: copy Vy into Vx, then shift Vx left by 1.
        # MODERN IMPLEMENTATION: shift Vx left by 1 in place.
        # In both, VF is set to the most significant bit of Vx before the shift
        if self.shift_vy:
            self.V[vx] = self.V[vy]
        msb = self.V[vx] >> 7
        self.V[vx] = (self.V[vx] << 1) & 0xFF
        self.V[0xF] = msb
        return True

    def _8_opcodes(self, opcode, vx, vy, n, kk, nnn):
        return self._8_operations[n](opcode, vx, vy)

    def _9xy0(self, opcode, vx, vy, n, kk, nnn):
        # 9xy0 - SNE Vx, Vy
        # Skip next instruction if Vx != Vy
        if n != 0:
            raise InvalidOpCodeException(opcode, self.PC)
        if self.V[vx] != self.V[vy]:
            self.PC += 2
        return True

    def _Annn(self, opcode, vx, vy, n, kk, nnn):
        # Annn - LD I, addr
        # The value of register I is set to nnn
        self.I = nnn
        return True

    def _Bnnn(self, opcode, vx, vy, n, kk, nnn):
        # Bnnn - JP V0, addr
        # The program counter is set to nnn plus the value of V0
        self.PC = nnn + self.V[0]
        return False

    def _Cxkk(self, opcode, vx, vy, n, kk, nnn):
        # Cxkk - RND Vx, byte
        # Set Vx = random byte AND kk
        self.V[vx] = self.rng.getrandbits(8) & kk
        return True

    def _Dxyn(self, opcode, vx, vy, n, kk, nnn):
        # Dxyn - DRW Vx, Vy, nibble
        # The starting position wraps, the sprite itself is clipped at the edges.
        x = self.V[vx] & 0x3F
        y = self.V[vy] & 0x3F
        collision = 0
        for row in range(n):
            if self.screen.xor8px(x, y + row, self.RAM[(self.I + row) & 0xFFF]):
                collision = 1
        self.V[0xF] = collision
        self.publish_framebuffer()
        return True

    def _E_opcodes(self, opcode, vx, vy, n, kk, nnn):
        if kk == 0x9E:
            # Ex9E - SKP Vx
            # Skip next instruction if key with value of Vx is pressed
            if self.keypad.is_pressed(self.V[vx]):
                self.PC += 2
        elif kk == 0xA1:
            # ExA1 - SKNP Vx
            # Skip next instruction if key with value of Vx is NOT pressed
            if not self.keypad.is_pressed(self.V[vx]):
                self.PC += 2
        else:
            raise InvalidOpCodeException(opcode, self.PC)
        return True

    def _Fx07(self, vx):
        # Fx07 - LD Vx, DT
        # The value of the Delay Timer is placed into Vx.
        self.V[vx] = self.delay_register
        return True

    def _Fx0A(self, vx):
        # Fx0A - LD, Vx, Key
        # Wait for a key press, store the value of the key in Vx.  Waiting means not advancing
        # PC, so this instruction runs again on the next cycle until some key is down.
        key = self.keypad.first_pressed()
        if key is None:
            self.blocking_on_fx0a = True
            return False
        self.blocking_on_fx0a = False
        self.V[vx] = key
        return True

    def _Fx15(self, vx):
        # Fx15 - LD DT, Vx
        # Set Delay Timer = Vx
        self.delay_register = self.V[vx]
        return True

    def _Fx18(self, vx):
        # Fx18 - LD ST, Vx
        # Set Sound Timer = Vx
        self.sound_register = self.V[vx]
        return True

    def _Fx1E(self, vx):
        # Fx1E - Set I = I + Vx - do not set the overflow flag
        self.I = (self.I + self.V[vx]) & 0xFFFF
        return True

    def _Fx29(self, vx):
        # Fx29 - LD F, Vx
        # Set I = location of sprite for digit Vx ("F" = Font), using the low nibble only
        self.I = FONT_OFFSET + FONT_GLYPH_SIZE * (self.V[vx] & 0xF)
        return True

    def _Fx33(self, vx):
        # Fx33 - LD B, Fx
        # Store binary coded decimal value of Vx in memory locations I, I+1, I+2
        val = self.V[vx]
        self.RAM[self.I & 0xFFF] = val // 100
        self.RAM[(self.I + 1) & 0xFFF] = (val // 10) % 10
        self.RAM[(self.I + 2) & 0xFFF] = val % 10
        return True

    def _Fx55(self, vx):
        # Fx55 - LD[I], Vx
        # Store registers V0 through Vx in memory starting at location I
        # Note that in the original CHIP-8 on the COSMAC VIP, I was incremented during this
        # loop.  See: https://laurencescotford.com/chip-8-on-the-cosmac-vip-loading-and-saving-variables/
        # However, modern interpreters do not increment I.
        for i in range(vx + 1):
            self.RAM[(self.I + i) & 0xFFF] = self.V[i]
        if self.increment_i:
            self.I = (self.I + vx + 1) & 0xFFFF
        return True

    def _Fx65(self, vx):
        # Fx65 - LD Vx, [I]
        # Read values from memory starting at location I into registers V0 through Vx
        for i in range(vx + 1):
            self.V[i] = self.RAM[(self.I + i) & 0xFFF]
        if self.increment_i:
            self.I = (self.I + vx + 1) & 0xFFFF
        return True

    def _F_opcodes(self, opcode, vx, vy, n, kk, nnn):
        if kk in self._F_operations:
            return self._F_operations[kk](vx)
        else:
            raise InvalidOpCodeException(opcode, self.PC)

    def cycle(self):
        '''
        Fetch, decode and execute one instruction.  Raises a C8Fault if it cannot.

        Instructions have one of 6 patterns:
        All 4 nibbles fixed:
            00E0, 00EE
        Operation + nnn (address)
            1nnn, 2nnn, Annn, Bnnn
        Operation + Vx + kk (byte)
            3xkk, 4xkk, 6xkk, 7xkk, Cxkk
        Operation + Vx + Vy + nibble-type
            5xy0, 8xy0, 8xy1, 8xy2, 8xy3,
            8xy4, 8xy5, 8xy6, 8xy7, 8xye, 9xy0
        Operation + Vx + Vy + n (nibble)
            Dxyn
        Operation + Vx + byte-type
            Ex9E, ExA1, Fx07, Fx0A, Fx15,
            Fx18, Fx1E, Fx29, Fx33, Fx55,
            Fx65

        To minimize redundant code, calculate all the possible ways
        to parse the opcode and then later use only the ones that are needed
        '''
        if not self.running:
            return
        opcode = self.fetch()
        operation = opcode >> 12
        vx = opcode >> 8 & 0xF
        vy = opcode >> 4 & 0xF
        n = opcode & 0xF
        nnn = opcode & 0xFFF
        kk = opcode & 0xFF
        increment_pc = self.operation_list[operation](opcode, vx, vy, n, kk, nnn)
        if increment_pc:
            self.PC = (self.PC + 2) & 0xFFFF

    def step(self):
        '''
        Execute one instruction, halting on a fault.  Returns False if nothing ran.
        '''
        if not self.running:
            return False
        try:
            self.cycle()
        except C8Fault as fault:
            self.halt(fault)
            return False
        return True

    def advance(self, elapsed=None):
        '''
        Run the machine forward by elapsed seconds of wall-clock time.  The host calls this once
        per frame of its own loop; it never blocks.

        Time accumulates, and for each whole 60Hz period in the accumulator a batch of
        instructions runs followed by one timer decrement.  Pending periods are all drained,
        so a long pause catches up rather than dropping ticks.  With elapsed omitted, the time
        since the previous call is read from the clock.
        '''
        now = self.clock()
        if elapsed is None:
            elapsed = 0.0 if self.last_advance_time is None else now - self.last_advance_time
        self.last_advance_time = now

        self.apply_pending_keys()
        if not self.running:
            return
        if not math.isfinite(elapsed) or elapsed < 0:
            logger.warning("ignoring negative or non-finite elapsed time: %r", elapsed)
            return

        self.time_accumulator += elapsed
        while self.time_accumulator >= TIMER_PERIOD - TIMER_PERIOD_EPSILON:
            for i in range(self.instructions_per_tick):
                if not self.step():
                    return
            self.decrement_sound_delay_registers()
            self.time_accumulator -= TIMER_PERIOD
