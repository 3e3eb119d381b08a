"""
Bulk ingestion helper.

Reads one URL per line from a file, submits each to a running ingestion
server and polls it to completion before moving to the next.

Usage:
    python scripts/scrape_urls.py urls_to_scrape [--base-url http://localhost:5060]
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

load_dotenv()

from client.poller import DEFAULT_INTERVAL, DEFAULT_MAX_ATTEMPTS, JobPoller, SubmitRejected


async def main(path: str, base_url: str, interval: float, max_attempts: int) -> int:
    urls = [ln.strip() for ln in Path(path).read_text().splitlines() if ln.strip()]
    failures = 0

    async with JobPoller(base_url, interval=interval, max_attempts=max_attempts) as poller:
        for url in urls:
            print(f"Scraping URL: {url}")
            try:
                job_id = await poller.submit(url)
            except SubmitRejected as exc:
                print(f"Rejected: {exc}")
                failures += 1
                continue

            print(f"Job submitted with ID: {job_id}")
            result = await poller.wait(job_id)
            if result.gave_up:
                print(f"Still {result.status} after {result.attempts} polls, moving on")
            elif result.succeeded:
                print(f"Done: video {result.response['video_id']}")
            else:
                print(f"Failed: {result.error}")
                failures += 1
            print("-----------------------------------")

    print(f"All URLs processed ({failures} failed)")
    return 1 if failures else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("file")
    parser.add_argument("--base-url", default="http://localhost:5060")
    parser.add_argument("--interval", type=float, default=DEFAULT_INTERVAL)
    parser.add_argument("--max-attempts", type=int, default=DEFAULT_MAX_ATTEMPTS)
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.file, args.base_url, args.interval, args.max_attempts)))
