"""teleop_console.py - pygame operator window for the teleop client.

Shows the robot's video, turns arrow keys and gamepad hot-plug events into
ControlAggregator calls, and carries the status line (window caption) used
for operator notices such as "Telebot is offline.".

pygame events must be handled on the main thread, so the window is pumped
from the asyncio loop rather than from a thread of its own.
"""

import asyncio

import pygame

WINDOW_WIDTH = 1280
WINDOW_HEIGHT = 720
FRAME_INTERVAL = 1 / 60  # seconds between event/render passes

KEY_DIRECTIONS = {
    pygame.K_UP: "up",
    pygame.K_DOWN: "down",
    pygame.K_LEFT: "left",
    pygame.K_RIGHT: "right",
}


def log(msg):
    print(f"[console] {msg}", flush=True)


class OperatorConsole:
    def __init__(self, controls, title="Telebot"):
        self.controls = controls
        self.title = title
        self.screen = None
        self.video = None
        self.running = False

    def open(self):
        pygame.init()
        pygame.joystick.init()
        self.screen = pygame.display.set_mode((WINDOW_WIDTH, WINDOW_HEIGHT), pygame.RESIZABLE)
        self.running = True
        self.set_status("Connecting...")

    def set_status(self, text):
        if self.screen is not None:
            pygame.display.set_caption(f"{self.title} - {text}")

    def attach_video(self, video):
        """Render frames from `video` (anything with pull_frame())."""
        self.video = video

    def handle_event(self, event):
        if event.type == pygame.QUIT:
            self.running = False

        elif event.type == pygame.KEYDOWN:
            direction = KEY_DIRECTIONS.get(event.key)
            if direction:
                self.controls.press(direction)

        elif event.type == pygame.KEYUP:
            direction = KEY_DIRECTIONS.get(event.key)
            if direction:
                self.controls.release(direction)

        elif event.type == pygame.JOYDEVICEADDED:
            self.controls.gamepad_connected(pygame.joystick.Joystick(event.device_index))

        elif event.type == pygame.JOYDEVICEREMOVED:
            self.controls.gamepad_disconnected(event.instance_id)

    def render(self):
        frame = self.video.pull_frame()
        if frame is None:
            return
        width, height, data = frame
        surface = pygame.image.frombuffer(data, (width, height), "RGBX")
        win_size = self.screen.get_size()
        if win_size != (width, height):
            surface = pygame.transform.scale(surface, win_size)
        self.screen.blit(surface, (0, 0))
        pygame.display.flip()

    async def run(self):
        """Pump window events and video until the window is closed."""
        while self.running:
            for event in pygame.event.get():
                try:
                    self.handle_event(event)
                except Exception as e:
                    log(f"Input error: {e}")

            if self.video is not None and self.screen is not None:
                try:
                    self.render()
                except Exception as e:
                    log(f"Render error: {e}")

            await asyncio.sleep(FRAME_INTERVAL)

    def close(self):
        self.controls.stop()
        self.video = None
        self.screen = None
        pygame.quit()
