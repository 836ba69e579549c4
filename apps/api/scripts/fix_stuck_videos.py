"""Mark videos stuck in `processing` for too long as failed so they can be retried."""

import argparse
import asyncio
import os
import sys

# Add parent dir to path to find services
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import engine  # noqa: E402
from services.transcription_records import fail_stuck_transcriptions  # noqa: E402


async def fix_stuck_videos(max_age_minutes: int) -> int:
    try:
        fixed = await fail_stuck_transcriptions(max_age_minutes)
    finally:
        await engine.dispose()
    print(f"Found {fixed} stuck video(s) older than {max_age_minutes} minutes")
    print("✅ Done!")
    return fixed


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--max-age-minutes", type=int, default=10)
    args = parser.parse_args()
    asyncio.run(fix_stuck_videos(args.max_age_minutes))


if __name__ == "__main__":
    main()
