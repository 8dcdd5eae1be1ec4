"""Process pending chat messages once (cron entry point).

Usage:
    python -m scripts.run_batch [--stream STREAM_ID]
"""

import argparse
import asyncio
import logging

from backend.docpipe.batch.service import build_processor


async def run(stream_id: str | None) -> int:
    processor = build_processor()
    return await processor.process_batch(stream_id)


def main() -> None:
    """Run one batch pass and report the number of processed messages."""
    parser = argparse.ArgumentParser(description="Process pending chat messages")
    parser.add_argument("--stream", dest="stream_id", default=None, help="Only this stream")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    processed = asyncio.run(run(args.stream_id))
    print(f"Processed {processed} messages")


if __name__ == "__main__":
    main()
