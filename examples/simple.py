"""
Simple Rollcam example - record ten seconds of the screen with ffmpeg.

This is the smallest possible use of the library to verify the system works.

Run with:
    python examples/simple.py
"""

import time

from rollcam import DirectCaptureBackend, RecordingConfiguration, setup_logging

setup_logging("INFO")

config = RecordingConfiguration.default().replace(record_system_audio=False)

with DirectCaptureBackend() as backend:
    backend.add_listener(lambda event: print(f"{event.state.value:<12} {event.message}"))
    backend.start(config)
    time.sleep(10)
    backend.stop()

print("Saved:", ", ".join(str(p) for p in backend.outputs))
