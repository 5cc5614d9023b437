"""RQ job entrypoints; each wraps an async service call in ``asyncio.run``."""
