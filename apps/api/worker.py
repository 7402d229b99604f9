"""Standalone bulk job worker process.

Runs the same polling loop the API starts in-process; deploy with
JOB_WORKER_ENABLED=false on the API when using this entrypoint.
"""

import asyncio
import logging
import signal

from services.job_worker import BulkJobWorker


async def _run() -> None:
    worker = BulkJobWorker()
    recovered = await worker.recover_stalled_jobs()
    if recovered:
        print(f"♻️ Recovered {recovered} stalled bulk jobs before polling.")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    print("🛠️ Bulk job worker polling for queued jobs...")
    await worker.run(stop_event)
    print("👋 Bulk job worker stopped.")


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(_run())


if __name__ == "__main__":
    main()
