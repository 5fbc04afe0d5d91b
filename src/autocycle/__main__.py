"""Allow `python -m autocycle` to launch the scheduler."""

import asyncio
import sys

from autocycle.main import main

sys.exit(asyncio.run(main()))
