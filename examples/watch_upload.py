#!/usr/bin/env python3
"""
Example: upload a video to ClipGuard and follow it to completion.

Uploads through POST /v1/jobs, then watches the job with ProgressConsumer,
which combines the WebSocket channel with status polling.

    python examples/watch_upload.py path/to/video.mp4 --org acme
"""
import argparse
import asyncio
import sys
from pathlib import Path

import httpx

from clipguard.client.consumer import ProgressConsumer

API_URL = "http://localhost:8000"


def upload(video_path: str, organization: str) -> dict:
    print(f"\n📹 Uploading video: {video_path}")
    print("=" * 60)
    with open(video_path, "rb") as fh:
        response = httpx.post(
            f"{API_URL}/v1/jobs",
            headers={"X-Organization": organization},
            files={"file": (Path(video_path).name, fh, "video/mp4")},
            timeout=300,
        )
    if response.status_code != 201:
        print(f"❌ Error: {response.status_code}")
        print(response.text)
        sys.exit(1)
    return response.json()


def print_update(job):
    frames = f" frame {job.current_frame}/{job.total_frames}" if job.current_frame else ""
    print(f"  [{job.progress:3d}%] {job.phase.value:<12}{frames}  {job.display_status or ''}")


async def watch(job_id: str, organization: str):
    async with ProgressConsumer(API_URL, organization) as consumer:
        consumer.on_update(print_update)
        await consumer.subscribe(job_id)
        job = await consumer.wait_terminal(job_id)
        # Terminal push events carry no verdict; one more poll fetches it
        job = await consumer.poll_once(job_id)

    print("\n" + "=" * 60)
    print(f"Result: {job.phase.value.upper()}")
    if job.verdict:
        print(f"Sensitivity: {job.verdict['status']} (confidence {job.verdict['confidence']:.2f})")
        for reason in job.verdict.get("reasons", []):
            print(f"  - {reason}")
    if job.derived_path:
        print(f"Streaming rendition: {job.derived_path}")


def main():
    parser = argparse.ArgumentParser(description="Upload a video and watch its progress")
    parser.add_argument("video", help="Path to the video file")
    parser.add_argument("--org", default="demo", help="Organization to upload as")
    args = parser.parse_args()

    job = upload(args.video, args.org)
    print(f"Job {job['id']} created ({job['metadata']['duration']:.1f}s, {job['metadata']['codec']})")
    asyncio.run(watch(job["id"], args.org))


if __name__ == "__main__":
    main()
