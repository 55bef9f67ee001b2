#!/usr/bin/env python3
# services/trademind/main.py

import asyncio
import sys
from pathlib import Path

# ------------------------------------------------------------
# 1) Ensure repo root is on sys.path
# ------------------------------------------------------------
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# ------------------------------------------------------------
# 2) Imports
# ------------------------------------------------------------
from shared.logutil import LogUtil
from shared.setup_base import SetupBase

from services.trademind.intel.orchestrator import run as orchestrator_run

SERVICE_NAME = "trademind"


async def main():
    # -------------------------------------------------
    # Phase 1: bootstrap logger
    # -------------------------------------------------
    logger = LogUtil(SERVICE_NAME)
    logger.info("starting setup()", emoji="⚙️")

    # -------------------------------------------------
    # Load configuration
    # -------------------------------------------------
    setup = SetupBase(SERVICE_NAME, logger)
    config = await setup.load()

    # Promote logger (config-driven)
    logger.configure_from_config(config)
    logger.ok("configuration loaded", emoji="📄")

    # -------------------------------------------------
    # Start orchestrator (async)
    # -------------------------------------------------
    orch_task = asyncio.create_task(
        orchestrator_run(config, logger),
        name=f"{SERVICE_NAME}-orchestrator",
    )

    await orch_task
    logger.warn("orchestrator exited unexpectedly", emoji="⚠️")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("Shutting down gracefully…")
