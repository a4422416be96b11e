#!/usr/bin/env python3
"""Live door sensor monitor for the console.

This script watches the door sensors listed in the configuration and
prints the aggregate every time a door opens or closes or a device
goes on- or offline:

  1. Load ``config/defaults.yaml`` merged with ``config/local.yaml``.
  2. Report the network as available, which starts one event stream
     per device.
  3. Print "N of M open" plus the per-device status on every change.
  4. Run until interrupted, then deactivate and release the session.

Run from the project root::

    DOOR_SENSORS_ACCESS_TOKEN=... python examples/door_monitor.py
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

# ---------------------------------------------------------------------------
# Ensure the package is importable when running from the repo root.
# ---------------------------------------------------------------------------
_project_root = Path(__file__).resolve().parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

from pyDoorSensors import (  # noqa: E402
    AggregateView,
    ConfigurationError,
    ConnectivityManager,
    DeviceStatus,
    load_config,
)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

#: Checked-in device list and defaults.
DEFAULTS_FILE = _project_root / "config" / "defaults.yaml"

#: Optional local override holding the access token.
LOCAL_FILE = _project_root / "config" / "local.yaml"

# ---------------------------------------------------------------------------
# Logging — colourful, timestamped, to stdout
# ---------------------------------------------------------------------------

BOLD = "\033[1m"
GREEN = "\033[32m"
CYAN = "\033[36m"
YELLOW = "\033[33m"
RED = "\033[31m"
RESET = "\033[0m"


class ColourFormatter(logging.Formatter):
    LEVEL_COLOURS = {
        logging.DEBUG: CYAN,
        logging.INFO: GREEN,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: RED + BOLD,
    }

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLOURS.get(record.levelno, "")
        ts = self.formatTime(record, "%H:%M:%S")
        return (
            f"{BOLD}{ts}{RESET} "
            f"{colour}{record.levelname:<8s}{RESET} "
            f"{record.name}: {record.getMessage()}"
        )


def setup_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColourFormatter())
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------

STATUS_COLOURS = {
    DeviceStatus.DISCONNECTED: YELLOW,
    DeviceStatus.OPEN: RED,
    DeviceStatus.CLOSED: GREEN,
}


def show(view: AggregateView) -> None:
    """Print the aggregate and one line per device."""
    colour = RED if view.count else GREEN
    print(f"{BOLD}{colour}{view.summary()}{RESET}")
    for name, status in view.status_list():
        print(f"  {name:<16s} {STATUS_COLOURS[status]}{status.value}{RESET}")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

async def main() -> None:
    setup_logging()
    logger = logging.getLogger("demo")

    try:
        config = load_config(DEFAULTS_FILE, LOCAL_FILE)
        config.validate()
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        return

    logger.info("Watching %d device(s):", len(config.devices))
    for device_id, name in config.devices.items():
        logger.info("  %-16s %s", name, device_id)

    async with ConnectivityManager(config, sink=show) as manager:
        # A console process has no connectivity signal of its own.
        await manager.set_network_available(True)
        try:
            await asyncio.Event().wait()
        finally:
            logger.info("Shutting down...")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print(f"\n{YELLOW}Interrupted by user.{RESET}")
