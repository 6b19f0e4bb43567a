"""An asyncio task scheduler with durable task definitions."""
