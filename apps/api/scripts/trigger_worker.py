"""Manually trigger one transcription worker run through the HTTP endpoint."""

import argparse
import os
import sys

import httpx

# Add parent dir to path to find config
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import settings  # noqa: E402


def trigger(base_url: str, secret: str, timeout: float) -> int:
    url = f"{base_url.rstrip('/')}/api/workers/transcription"
    print("🚀 Manually triggering transcription worker...")
    print(f"URL: {url}")
    try:
        response = httpx.get(url, headers={"Authorization": f"Bearer {secret}"}, timeout=timeout)
    except httpx.HTTPError as exc:
        print(f"❌ Request failed: {exc}")
        return 1

    print(f"Status: {response.status_code}")
    print(response.text)
    if response.status_code != 200:
        print("❌ Worker trigger failed")
        return 1
    payload = response.json()
    print(f"✅ Done! Processed {payload.get('processedCount', 0)} job(s).")
    return 0


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--url", default=os.getenv("WORKER_BASE_URL", f"http://localhost:{settings.API_PORT}"))
    parser.add_argument("--secret", default=settings.CRON_SECRET)
    # The runner may hold the request for its whole budget plus grace.
    parser.add_argument(
        "--timeout",
        type=float,
        default=settings.TRANSCRIPTION_RUNNER_MAX_SECONDS + settings.TRANSCRIPTION_RUNNER_GRACE_SECONDS + 30,
    )
    args = parser.parse_args()
    sys.exit(trigger(args.url, args.secret, args.timeout))


if __name__ == "__main__":
    main()
