"""
Runs the alert worker: a saved-search match pass followed by one email
queue drain every WORKER_INTERVAL_SECONDS, until SIGINT/SIGTERM.

For one-off operator tasks use `python -m worker.cli`.
"""
import asyncio

from worker.main import main as worker_main


if __name__ == "__main__":
    asyncio.run(worker_main())
