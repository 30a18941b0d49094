import argparse
import sys
from array import array

import os
os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_1, K_2, K_3, K_4,
    K_q, K_w, K_e, K_r,
    K_a, K_s, K_d, K_f,
    K_z, K_x, K_c, K_v,
)

from chip8 import Chip8, RomLoadError, DEBUG, SCREEN_HEIGHT, SCREEN_WIDTH


# ******************** STATIC SECTION
# 1 2 3 C
# 4 5 6 D
# 7 8 9 E
# A 0 B F
KEY_MAPPINGS = {
    K_1: 0x1, K_2: 0x2, K_3: 0x3, K_4: 0xC,
    K_q: 0x4, K_w: 0x5, K_e: 0x6, K_r: 0xD,
    K_a: 0x7, K_s: 0x8, K_d: 0x9, K_f: 0xE,
    K_z: 0xA, K_x: 0x0, K_c: 0xB, K_v: 0xF,
}

SCALE = 15
BLUE = pygame.Color(80,69,155,255)
LIGHT_BLUE = pygame.Color(136,126,203,255)
CPU_HZ = 600                            # instructions per second
TIMER_HZ = 60
TIMER_PERIOD_MS = 1000 / TIMER_HZ
TONE_HZ = 440
MIXER_RATE = 44100
MIXER_SIZE = -16                        # signed 16 bits samples
MIXER_CHANNELS = 1
MIXER_BUFFER = 1024


# ******************** UTILITIES SECTION
def get_rom_arg():
    parser = argparse.ArgumentParser(description="CHIP-8 interpreter")
    parser.add_argument("rom", help="input rom file")
    args = parser.parse_args()
    return args.rom

def load_rom_file(path):
    """read the whole ROM file, exit with a message if it can't be read"""
    try:
        with open(path, mode='rb') as f:
            rom = f.read()
    except OSError as e:
        sys.exit(f"Unable to read the ROM at path {path}: {e}")
    if DEBUG: print(f"The ROM at path {path} has been read successfully")
    return rom

def init_pygame():
    """the mixer settings must be given before pygame.init() starts it"""
    pygame.mixer.pre_init(MIXER_RATE, MIXER_SIZE, MIXER_CHANNELS, MIXER_BUFFER)
    pygame.init()


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLUE, fg_color=LIGHT_BLUE):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )
        self.surface.fill(self.background)

    def write_pixel(self, x, y, color):
        """
        set a pixel on the screen, being it a foreground pixel or a background one
        the change won't be immediatly visible because it'll require a call to the static method refresh
        """
        pygame.draw.rect(
            self.surface,
            self.background if color==0 else self.foreground,
            (x * self.scale, y * self.scale, self.scale, self.scale)
        )

    @staticmethod
    def refresh():
        pygame.display.flip()

    def render(self, display):
        """copy the whole chip framebuffer on the surface and show it"""
        self.surface.fill(self.background)
        for y, row in enumerate(display.rows()):
            for x, pixel in enumerate(row):
                if pixel:
                    self.write_pixel(x, y, pixel)
        self.refresh()

def square_wave(sample_rate, size, channels, freq=TONE_HZ):
    """one period of a square wave, every frame repeated for each mixer channel"""
    period = int(round(sample_rate / freq))
    amplitude = 2 ** (abs(size) - 1) - 1
    samples = array("h")
    for t in range(period):
        samples.extend([amplitude if t < period / 2 else -amplitude] * channels)
    return samples

class Beeper:
    """square wave tone, looped while the sound timer is active"""

    def __init__(self, freq=TONE_HZ):
        self.playing = False
        self.tone = None
        try:
            pygame.mixer.init()     # no-op if pygame.init() already started it
        except pygame.error as e:
            print(f"Audio disabled: {e}")
            return
        mixer_settings = pygame.mixer.get_init()
        if mixer_settings is None:
            print("Audio disabled: mixer not available")
            return
        sample_rate, size, channels = mixer_settings
        samples = square_wave(sample_rate, size, channels, freq)
        self.tone = pygame.mixer.Sound(buffer=samples.tobytes())
        self.tone.set_volume(0.2)

    def update(self, sound_on):
        if self.tone is None or sound_on == self.playing:
            return
        if sound_on:
            self.tone.play(loops=-1)
        else:
            self.tone.stop()
        self.playing = sound_on


# ******************** ENTRY POINT SECTION
def main(*args, **kwargs):
    rom_name = get_rom_arg()
    rom = load_rom_file(rom_name)
    # CPU
    chip = Chip8()
    try:
        chip.load_rom(rom)
    except RomLoadError as rle:
        sys.exit(f"Unable to load the ROM at path {rom_name}: {rle}")
    # pygame initialization
    init_pygame()
    clock = pygame.time.Clock()
    pygame.display.set_caption(os.path.basename(rom_name))
    # IO
    s = Screen()
    b = Beeper()
    # emulation loop
    redraw = True
    timer_ms = 0
    run = True
    while run:
        if redraw:
            s.render(chip.display)
            redraw = False
        # frames per second
        timer_ms += clock.tick(CPU_HZ)
        try:
            chip.step()     # emulate one machine cycle (fetch opcode, decode opcode, execute opcode)
        except IndexError:
            sys.exit(f"********** THE EMULATOR CRASHED WITH THE FOLLOWING STATE\n{chip}")
        redraw = redraw or chip.draw
        # delay/sound timers (dt/st), once per 60Hz boundary elapsed
        while timer_ms >= TIMER_PERIOD_MS:
            chip.tick_timers()
            timer_ms -= TIMER_PERIOD_MS
        b.update(chip.sound_on)
        # process user input
        # loop throught the event queue
        for event in pygame.event.get():
            if event.type == pygame.KEYDOWN:
                if event.key == pygame.K_ESCAPE:
                    run = False
                elif event.key in KEY_MAPPINGS:
                    chip.press_key(KEY_MAPPINGS[event.key])
            elif event.type == pygame.KEYUP:
                if event.key in KEY_MAPPINGS:
                    chip.release_key(KEY_MAPPINGS[event.key])     # a release also resolves LD Vx, K
            elif event.type == pygame.QUIT:
                run = False
    pygame.quit()


if __name__ == "__main__":
    main()
