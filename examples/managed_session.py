"""
Managed engine example - provision the engine, record, pause and stop.

Installs the engine on first run (a large download), launches it headless,
and drives it over its control channel. Work runs on the backend's own
thread; this script only waits on the returned futures.

Run with:
    python examples/managed_session.py
"""

import time

from rollcam import ManagedEngineBackend, RecordingConfiguration, Settings, setup_logging
from rollcam.core import QHD_2K

setup_logging("INFO")

settings = Settings.from_env()
config = RecordingConfiguration.default().replace(resolution=QHD_2K, record_microphone=True)

with ManagedEngineBackend(settings.engine) as backend:
    backend.add_listener(lambda event: print(f"{event.state.value:<12} {event.message}"))

    backend.submit(backend.initialize).result()
    backend.submit(backend.start, config).result()
    time.sleep(5)

    backend.submit(backend.toggle_pause).result()
    time.sleep(2)
    backend.submit(backend.toggle_pause).result()
    time.sleep(5)

    output = backend.submit(backend.stop).result()
    print("Saved:", output)
