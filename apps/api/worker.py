"""
Self-hosted transcription worker entrypoint.

`python worker.py` runs one time-boxed invocation (same as the scheduled trigger);
`python worker.py --loop` keeps running invocations back to back, for hosts that
allow a long-lived process.
"""

import argparse
import asyncio
import logging

from config import settings
from services.transcription_worker import run_transcription_worker

logger = logging.getLogger(__name__)


async def _run(loop: bool, idle_seconds: float) -> None:
    while True:
        summary = await run_transcription_worker()
        print(
            f"🎙️ Transcription run: processed={summary.processed_count} "
            f"failed={summary.failed_count} reclaimed={summary.reclaimed_count} "
            f"drained={summary.drained} timed_out={summary.timed_out}"
        )
        if not loop:
            return
        if summary.drained:
            await asyncio.sleep(idle_seconds)


def main():
    parser = argparse.ArgumentParser(description="Run the video transcription worker")
    parser.add_argument("--loop", action="store_true", help="keep polling the queue instead of exiting")
    parser.add_argument("--idle-seconds", type=float, default=30.0, help="pause between runs when the queue is empty")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger.info("Starting transcription worker (queue=%s)", settings.TRANSCRIPTION_QUEUE_NAME)
    asyncio.run(_run(args.loop, args.idle_seconds))


if __name__ == "__main__":
    main()
