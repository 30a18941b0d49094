# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# COMPATIBILITY QUIRKS TABLE
# https://games.gulrak.net/cadmium/chip8-opcode-table.html#quirk6
#
# MASTERING CHIP-8
# https://github.com/mattmikolay/chip-8/wiki/Mastering-CHIP%E2%80%908
#
# TEST SUITE
# https://github.com/Timendus/chip8-test-suite
#
# This module is the interpreter core only, it has no I/O dependencies.
# The pygame front end lives in chip8_host.py


import os
import random
from functools import wraps


# ******************** STATIC SECTION
C8_FONTS = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
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

FONT_CHAR_SIZE = 5              # each character font is made of 5 bytes
MEMORY_SIZE = 4096
ADDRESS_MASK = 0x0FFF           # addresses are 12 bits wide
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = MEMORY_SIZE - ROM_START_ADDRESS
STACK_SIZE = 16
REGISTERS_COUNT = 16
KEYS_COUNT = 16
DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64

# the random byte instruction needs an unpredictable source, SystemRandom reads from os.urandom
_rng = random.SystemRandom()


class RomLoadError(ValueError):
    """the program image does not fit in the memory available from ROM_START_ADDRESS on"""


# ******************** UTILITIES SECTION
def operands(opcode):
    """split an opcode in the fields used by the instructions"""
    return {
        'opcode': opcode,
        'x': (opcode & 0x0F00) >> 8,
        'y': (opcode & 0x00F0) >> 4,
        'n': opcode & 0x000F,
        'nn': opcode & 0x00FF,
        'nnn': opcode & 0x0FFF,
    }

def asm(msg):
    """decorator to print out the ASM of the instruction being called"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(*args, **kwargs):
            chip, opcode = args[0], args[1]     # args[0] equals self of the decorated method
            if DEBUG:
                print(f"mem_addr: 0x{chip.pc:04x}    instruction: " + msg.format(**operands(opcode)))
            fn(*args, **kwargs)
        wrapper_fn.mnemonic = msg
        return wrapper_fn
    return decorator


# ******************** I/O SECTION
class Display:
    """64x32 monochrome framebuffer, cells are 0 (OFF) or 1 (ON)"""

    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.buffer = [0] * h * w

    def read_pixel(self, x, y):
        """return 1 if pixel is ON, return 0 if pixel is OFF"""
        return self.buffer[y * self.w + x]

    def write_pixel(self, x, y, value):
        self.buffer[y * self.w + x] = value

    def clear(self):
        self.buffer = [0] * self.h * self.w

    def rows(self):
        """yield the framebuffer one row at a time, top to bottom"""
        for y in range(self.h):
            yield self.buffer[y * self.w:(y + 1) * self.w]

    def blit(self, x, y, sprite):
        """
        XOR the sprite bytes onto the framebuffer starting at (x, y)
        coordinates wrap around both horizontally and vertically
        return True if any pixel has been turned OFF by the blit
        """
        x, y = x % self.w, y % self.h
        collision = False
        # step through each sprite byte
        for i, sprite_byte in enumerate(sprite):
            sprite_byte = bin(sprite_byte)[2:].zfill(8)     # remove '0b' from the front and pad with 0 till it's a byte
            y_coordinate = (y + i) % self.h
            for j, bit in enumerate(sprite_byte):           # step through each byte's bits, MSB first
                x_coordinate = (x + j) % self.w
                pixel_state = self.read_pixel(x_coordinate, y_coordinate)
                # the only case when a pixel gets erased is when it was ON and is turned ON again
                if pixel_state == 1 and int(bit) == 1:
                    collision = True
                self.write_pixel(x_coordinate, y_coordinate, pixel_state ^ int(bit))
        return collision

class Keypad:
    """state of the 16 keys of the pad, indexed by their hex value"""

    def __init__(self):
        self.keys = [False] * KEYS_COUNT

    @staticmethod
    def _check(key):
        if not 0x0 <= key <= 0xF:
            raise ValueError(f"Pad index must be in [0x0, 0xF], got {key!r}")

    def __getitem__(self, key):
        return self.keys[key & 0xF]

    def press(self, key):
        self._check(key)
        self.keys[key] = True

    def release(self, key):
        self._check(key)
        self.keys[key] = False

class Timers:
    """delay and sound timers, decremented by the host at 60Hz"""

    def __init__(self):
        self.dt = 0     # delay timer, active when non-zero
        self.st = 0     # sound timer, active when non-zero

    def tick(self):
        if self.dt > 0:
            self.dt -= 1
        if self.st > 0:
            self.st -= 1

    @property
    def sounding(self):
        return self.st > 0


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT A STACK OF 16 ADDRESSES
# the pointer is pre-incremented on push and post-decremented on pop, so slot 0 is never written
# running past either end is a hard fault instead of a silent wrap
class Stack:
    def __init__(self):
        self.addr_list = [0] * STACK_SIZE
        self.sp = 0

    def append(self, address):
        if self.sp >= STACK_SIZE - 1:
            raise IndexError("The CHIP-8 stack pointer can not go past 15. Limit exceeded")
        self.sp += 1
        self.addr_list[self.sp] = address

    def pop(self):
        if self.sp == 0:
            raise IndexError("Return with an empty CHIP-8 stack")
        address = self.addr_list[self.sp]
        self.sp -= 1
        return address

    def __len__(self):
        return self.sp

    def __str__(self):
        return str([f"0x{a:03x}" for a in self.addr_list[1:self.sp + 1]])

# ********** WRAPS A LIST TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
# every address is masked to 12 bits
class Memory:
    def __init__(self):
        self.inner = [0] * MEMORY_SIZE
        self.inner[0x00:0x00+len(C8_FONTS)] = C8_FONTS

    def __setitem__(self, key, value):
        self.inner[key & ADDRESS_MASK] = value & 0xFF

    def __getitem__(self, index):
        return self.inner[index & ADDRESS_MASK]

    def read(self, address, length):
        """return length bytes starting at address, wrapping at the end of memory"""
        return [self[address + i] for i in range(length)]

    def load_rom(self, rom):
        """copy the ROM bytes starting at ROM_START_ADDRESS, raise RomLoadError if they don't fit"""
        if len(rom) > MAX_ROM_SIZE:
            raise RomLoadError(f"ROM is {len(rom)} bytes long, at most {MAX_ROM_SIZE} bytes fit in memory")
        self.inner[ROM_START_ADDRESS:ROM_START_ADDRESS+len(rom)] = list(rom)
        if DEBUG: print(f"A ROM of {len(rom)} bytes has been loaded successfully")


# ******************** CPU SECTION
class Chip8:
    def __init__(self, rom=None):
        self.reset()
        self.instructions = {
            0x1: self._jump,
            0x2: self._call_addr,
            0x3: self._skip_if_eq,
            0x4: self._skip_if_not_eq,
            0x5: self._skip_if_eq_regs,
            0x6: self._set_vk,
            0x7: self._add_to_vk,
            0x9: self._skip_if_not_eq_regs,
            0xA: self._set_idx,
            0xB: self._jump_plus,
            0xC: self._random_byte_and,
            0xD: self._to_screen,
        }
        # families with a second level of decoding: (mask, table)
        # every value the mask can produce has an entry, unknown ones are no-ops
        system = dict.fromkeys(range(0x1000), self._nop)
        system.update({
            0x0E0: self._clear_screen,
            0x0EE: self._return,
        })
        arithmetic = dict.fromkeys(range(0x10), self._nop)
        arithmetic.update({
            0x0: self._set_vx_to_vy,
            0x1: self._set_vx_or_vy,
            0x2: self._set_vx_and_vy,
            0x3: self._set_vx_xor_vy,
            0x4: self._add_vx_vy,
            0x5: self._sub_vx_vy,
            0x6: self._shr,
            0x7: self._subn_vx_vy,
            0xE: self._shl,
        })
        keys = dict.fromkeys(range(0x100), self._nop)
        keys.update({
            0x9E: self._skip_if_pressed,
            0xA1: self._skip_if_not_pressed,
        })
        misc = dict.fromkeys(range(0x100), self._nop)
        misc.update({
            0x07: self._set_vx_dt,
            0x0A: self._wait_keypress,
            0x15: self._set_dt_vx,
            0x18: self._set_st,
            0x1E: self._add_to_idx,
            0x29: self._select_char,
            0x33: self._bcd_repr,
            0x55: self._store_vregs,
            0x65: self._load_vregs,
        })
        self.groups = {
            0x0: (0x0FFF, system),
            0x8: (0x000F, arithmetic),
            0xE: (0x00FF, keys),
            0xF: (0x00FF, misc),
        }
        if rom is not None:
            self.load_rom(rom)

    def reset(self):
        """power-on state: font in memory, PC at the ROM start, everything else zeroed"""
        self.mem = Memory()
        self.stack = Stack()
        self.display = Display()
        self.keypad = Keypad()
        self.timers = Timers()
        self.v_regs = [0] * REGISTERS_COUNT
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # specify where the sprites reside in memory
        self.waiting_for = None     # index of the register latched by LD Vx, K
        self.draw = False
        self.jumped = False

    def load_rom(self, rom):
        self.reset()
        self.mem.load_rom(rom)

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:03x} | IDX_REGISTER:0x{self.idx:03x} | VARIABLE_REGISTERS:{self.v_regs}"
        stack = f"SP:{self.stack.sp} | STACK:{self.stack}"
        timers = f"DT:{self.timers.dt} | ST:{self.timers.st}"
        flags = f"DRAW: {self.draw} | WAITING_FOR: {self.waiting_for}"
        return f"{registers}\n{stack}\n{timers}\n{flags}"

    # ********** HOST INTERFACE
    @property
    def waiting(self):
        return self.waiting_for is not None

    @property
    def sound_on(self):
        return self.timers.sounding

    def tick_timers(self):
        self.timers.tick()

    def press_key(self, key):
        self.keypad.press(key)
        if DEBUG: print(f"Key pressed: {key:x}")

    def release_key(self, key):
        """release a key, resolving a pending LD Vx, K with it"""
        self.keypad.release(key)
        if DEBUG: print(f"Key released: {key:x}")
        if self.waiting_for is not None:
            self.v_regs[self.waiting_for] = key
            self.waiting_for = None

    # ********** INSTRUCTIONS
    @asm("SKP V{x:X}")
    def _skip_if_pressed(self, opcode):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is pressed"""
        x = (opcode & 0x0F00) >> 8
        key = self.v_regs[x]
        if self.keypad[key]:
            self._goto_next_instruction()

    @asm("SKNP V{x:X}")
    def _skip_if_not_pressed(self, opcode):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is NOT pressed"""
        x = (opcode & 0x0F00) >> 8
        key = self.v_regs[x]
        if not self.keypad[key]:
            self._goto_next_instruction()

    @asm("LD V{x:X}, K")
    def _wait_keypress(self, opcode):
        """suspend execution until a key is released, its value will be stored in Vx"""
        self.waiting_for = (opcode & 0x0F00) >> 8

    @asm("LD V{x:X}, DT")
    def _set_vx_dt(self, opcode):
        """set Vx = DT (delay timer) value"""
        x = (opcode & 0x0F00) >> 8
        self.v_regs[x] = self.timers.dt

    @asm("LD DT, V{x:X}")
    def _set_dt_vx(self, opcode):
        """set DT (delay timer) = Vx"""
        x = (opcode & 0x0F00) >> 8
        self.timers.dt = self.v_regs[x]

    @asm("LD ST, V{x:X}")
    def _set_st(self, opcode):
        """set ST = Vx"""
        register = (opcode & 0x0F00) >> 8
        self.timers.st = self.v_regs[register]

    @asm("CLS")
    def _clear_screen(self, opcode):
        self.display.clear()
        self.draw = True

    @asm("RET")
    def _return(self, opcode):
        """return from a subroutine, the call site is then skipped by the usual advance"""
        self.pc = self.stack.pop()

    @asm("DW 0x{opcode:04x}")
    def _nop(self, opcode):
        """unknown opcodes inside a known family are tolerated and do nothing"""

    @asm("JP 0x{nnn:03x}")
    def _jump(self, opcode):
        self.pc = opcode & 0x0FFF
        self.jumped = True

    @asm("CALL 0x{nnn:03x}")
    def _call_addr(self, opcode):
        self.stack.append(self.pc)
        self.pc = opcode & 0x0FFF
        self.jumped = True

    @asm("SE V{x:X}, {nn}")
    def _skip_if_eq(self, opcode):
        x = (opcode & 0x0F00) >> 8
        comparison_value = opcode & 0x00FF
        if self.v_regs[x] == comparison_value:
            self._goto_next_instruction()

    @asm("SNE V{x:X}, {nn}")
    def _skip_if_not_eq(self, opcode):
        x = (opcode & 0x0F00) >> 8
        comparison_value = opcode & 0x00FF
        if self.v_regs[x] != comparison_value:
            self._goto_next_instruction()

    @asm("SE V{x:X}, V{y:X}")
    def _skip_if_eq_regs(self, opcode):
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        if self.v_regs[x] == self.v_regs[y]:
            self._goto_next_instruction()

    @asm("SNE V{x:X}, V{y:X}")
    def _skip_if_not_eq_regs(self, opcode):
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        if self.v_regs[x] != self.v_regs[y]:
            self._goto_next_instruction()

    @asm("LD V{x:X}, {nn}")
    def _set_vk(self, opcode):
        """set the value of one of the 16 variable registers, Vx"""
        x, value = (opcode & 0x0F00) >> 8, opcode & 0x00FF
        self.v_regs[x] = value

    @asm("ADD V{x:X}, {nn}")
    def _add_to_vk(self, opcode):
        """add to the value already present in one of the variable registers, VF is untouched"""
        x, value = (opcode & 0x0F00) >> 8, opcode & 0x00FF
        self.v_regs[x] = (self.v_regs[x] + value) & 0xFF    # keep only the lowest 8 bits from the result and store them in Vx

    @asm("LD V{x:X}, V{y:X}")
    def _set_vx_to_vy(self, opcode):
        """set the value of Vx equal to that of Vy"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] = self.v_regs[y]

    @asm("OR V{x:X}, V{y:X}")
    def _set_vx_or_vy(self, opcode):
        """set the value of Vx to Vx OR Vy"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] |= self.v_regs[y]
        self.v_regs[0xF] = 0            # compatibility quirk 1

    @asm("AND V{x:X}, V{y:X}")
    def _set_vx_and_vy(self, opcode):
        """set the value of Vx to Vx AND Vy"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] &= self.v_regs[y]
        self.v_regs[0xF] = 0            # compatibility quirk 1

    @asm("XOR V{x:X}, V{y:X}")
    def _set_vx_xor_vy(self, opcode):
        """set the value of Vx to Vx XOR Vy"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] ^= self.v_regs[y]
        self.v_regs[0xF] = 0            # compatibility quirk 1

    @asm("ADD V{x:X}, V{y:X}")
    def _add_vx_vy(self, opcode):
        """set the value of Vx to Vx + Vy, VF = carry"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        total = self.v_regs[x] + self.v_regs[y]
        self.v_regs[x] = total & 0xFF   # keep only the lowest 8 bits from the result and store them in Vx
        self.v_regs[0xF] = 1 if total > 0xFF else 0

    @asm("SUB V{x:X}, V{y:X}")
    def _sub_vx_vy(self, opcode):
        """set the value of Vx to Vx - Vy, VF = NOT borrow"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        left, right = self.v_regs[x], self.v_regs[y]
        self.v_regs[x] = (left - right) & 0xFF
        self.v_regs[0xF] = 1 if left >= right else 0

    @asm("SHR V{x:X}, V{y:X}")
    def _shr(self, opcode):
        """set Vx equal to Vy SHR 1, VF = shifted out bit"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] = self.v_regs[y]     # compatibility quirk 2
        LSB = self.v_regs[x] & 0x1
        self.v_regs[x] = (self.v_regs[x] >> 1) & 0xFF   # divide by 2 and keep only the lowest 8 bits from the result
        self.v_regs[0xF] = LSB

    @asm("SUBN V{x:X}, V{y:X}")
    def _subn_vx_vy(self, opcode):
        """set the value of Vx to Vy - Vx, VF = NOT borrow"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        left, right = self.v_regs[x], self.v_regs[y]
        self.v_regs[x] = (right - left) & 0xFF
        self.v_regs[0xF] = 1 if right >= left else 0

    @asm("SHL V{x:X}, V{y:X}")
    def _shl(self, opcode):
        """set Vx equal to Vy SHL 1, VF = shifted out bit"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        self.v_regs[x] = self.v_regs[y]     # compatibility quirk 2
        MSB = (self.v_regs[x] & 0x80) >> 7
        self.v_regs[x] = (self.v_regs[x] << 1) & 0xFF   # multiply by 2 and keep only the lowest 8 bits from the result
        self.v_regs[0xF] = MSB

    @asm("LD I, 0x{nnn:03x}")
    def _set_idx(self, opcode):
        """set the value of the I register"""
        self.idx = opcode & 0x0FFF

    @asm("JP V0, 0x{nnn:03x}")
    def _jump_plus(self, opcode):
        address = opcode & 0x0FFF
        v0 = self.v_regs[0x0]
        self.pc = (address + v0) & ADDRESS_MASK
        self.jumped = True

    @asm("RND V{x:X}, 0x{nn:02x}")
    def _random_byte_and(self, opcode):
        x, kk = (opcode & 0x0F00) >> 8, opcode & 0x00FF
        rnd = _rng.randint(0, 255)
        self.v_regs[x] = rnd & kk

    @asm("ADD I, V{x:X}")
    def _add_to_idx(self, opcode):
        """set I = I + Vx"""
        register = (opcode & 0x0F00) >> 8
        self.idx = (self.idx + self.v_regs[register]) & ADDRESS_MASK

    @asm("LD F, V{x:X}")
    def _select_char(self, opcode):
        """set I to location of sprite for the digit in the low nibble of Vx"""
        register = (opcode & 0x0F00) >> 8
        self.idx = (self.v_regs[register] & 0xF) * FONT_CHAR_SIZE

    @asm("LD [I], V{x:X}")
    def _store_vregs(self, opcode):
        """store registers V0 through Vx (included) in memory starting at location I"""
        x = (opcode & 0x0F00) >> 8
        for i in range(x + 1):
            self.mem[self.idx + i] = self.v_regs[i]
        self.idx = (self.idx + x + 1) & ADDRESS_MASK      # compatibility quirk 6

    @asm("LD V{x:X}, [I]")
    def _load_vregs(self, opcode):
        """read registers V0 through Vx (included) from memory starting at location I"""
        x = (opcode & 0x0F00) >> 8
        self.v_regs[:x+1] = self.mem.read(self.idx, x + 1)
        self.idx = (self.idx + x + 1) & ADDRESS_MASK      # compatibility quirk 6

    @asm("LD B, V{x:X}")
    def _bcd_repr(self, opcode):
        """takes the decimal value of Vx and the hundreds digit in memory at I, the tens digit at I+1, the ones digit at I+2"""
        x = (opcode & 0x0F00) >> 8
        value = self.v_regs[x]
        hundreds, tens, ones = value // 100, (value // 10) % 10, value % 10
        self.mem[self.idx], self.mem[self.idx+1], self.mem[self.idx+2] = hundreds, tens, ones

    @asm("DRW V{x:X}, V{y:X}, {n}")
    def _to_screen(self, opcode):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        x, y = (opcode & 0x0F00) >> 8, (opcode & 0x00F0) >> 4
        n_bytes = opcode & 0x000F
        sprite = self.mem.read(self.idx, n_bytes)
        collision = self.display.blit(self.v_regs[x], self.v_regs[y], sprite)
        # sprites are XORed onto the existing screen and if this
        # causes any pixel to be erased then VF=1, otherwise VF=0
        self.v_regs[0xF] = 1 if collision else 0
        self.draw = True

    # ********** FETCH / DECODE / EXECUTE
    def _goto_next_instruction(self):
        self.pc = (self.pc + 0x2) & ADDRESS_MASK

    def fetch(self):
        """each instruction is two bytes long, big endian"""
        return self.mem[self.pc] << 8 | self.mem[self.pc + 1]

    def decode(self, opcode):
        """decode opcodes by their high nibble, then by their low nibble/byte for the grouped families"""
        family = (opcode & 0xF000) >> 12
        if family in self.groups:
            mask, table = self.groups[family]
            return table[opcode & mask]
        return self.instructions[family]

    def disassemble(self, opcode):
        return self.decode(opcode).mnemonic.format(**operands(opcode))

    def step(self):
        """
        emulate one machine cycle (fetch opcode, decode opcode, execute opcode)
        nothing is executed while waiting for a key, return True if an instruction ran
        """
        if self.waiting:
            return False
        self.draw = False
        self.jumped = False
        opcode = self.fetch()
        instruction = self.decode(opcode)
        instruction(opcode)
        # jumps and calls already point to the next instruction
        if not self.jumped:
            self._goto_next_instruction()
        return True
