"""Test package for chat service unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
