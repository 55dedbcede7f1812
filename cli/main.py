#!/usr/bin/env python3
"""
videocmprs CLI - submit videos for conversion and inspect requests.
"""

import argparse
import asyncio
import functools
import json
import os
import re
import sys
from pathlib import Path
from typing import Tuple

import httpx
from rich.progress import (
    BarColumn,
    FileSizeColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TotalFileSizeColumn,
    TransferSpeedColumn,
)

from api.errors import truncate_error
from config import (
    API_URL,
    DATABASE_URL,
    ERROR_DETAIL_MAX_LENGTH,
    ERROR_SUMMARY_MAX_LENGTH,
    MAX_UPLOAD_SIZE,
    SUPPORTED_VIDEO_EXTENSIONS,
    OrchestratorConfig,
)

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("VCMPRS_API_TIMEOUT", "30"))

# Upload timeout in seconds (default 2 hours)
UPLOAD_TIMEOUT = int(os.getenv("VCMPRS_UPLOAD_TIMEOUT", "7200"))

API_BASE = API_URL.rstrip("/") + "/api/v1"

_PAIR_PATTERN = re.compile(r"^\s*(\d+)\s*[x:]\s*(\d+)\s*$", re.IGNORECASE)


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def int_pair(value: str) -> Tuple[int, int]:
    """Argparse type for "800x600" or "4:3"."""
    match = _PAIR_PATTERN.match(value)
    if not match:
        raise argparse.ArgumentTypeError(f"expected WxH or X:Y, got '{value}'")
    first, second = int(match.group(1)), int(match.group(2))
    if first <= 0 or second <= 0:
        raise argparse.ArgumentTypeError(f"both parts must be positive, got '{value}'")
    return first, second


class ProgressFileWrapper:
    """Wrapper for file objects that reports upload progress."""

    def __init__(self, file, progress, task_id):
        self.file = file
        self.progress = progress
        self.task_id = task_id

    def read(self, size=-1):
        data = self.file.read(size)
        if data:
            self.progress.update(self.task_id, advance=len(data))
        return data

    def seek(self, *args, **kwargs):
        return self.file.seek(*args, **kwargs)

    def tell(self):
        return self.file.tell()


def safe_json_response(response, default_error="Request failed"):
    """
    Parse a JSON response, turning HTTP and decoding errors into CLIError.

    Args:
        response: httpx.Response object
        default_error: Message used when the error response has no body
    """
    if not response.is_success:
        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, httpx.ResponseNotRead):
            detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}")


def validate_file(file_path: Path) -> int:
    """
    Validate the file to upload.

    Returns:
        int: File size in bytes

    Raises:
        CLIError: If the file is missing, unreadable, empty, too large or not a video
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")
    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")
    if not os.access(file_path, os.R_OK):
        raise CLIError(f"File is not readable: {file_path}")
    if file_path.suffix.lower() not in SUPPORTED_VIDEO_EXTENSIONS:
        raise CLIError(f"Unsupported file type: {file_path.suffix or '(none)'}")

    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")
    if file_size > MAX_UPLOAD_SIZE:
        max_size_gb = MAX_UPLOAD_SIZE / (1024 * 1024 * 1024)
        file_size_gb = file_size / (1024 * 1024 * 1024)
        raise CLIError(f"File too large ({file_size_gb:.2f} GB). Maximum upload size is {max_size_gb:.0f} GB")

    return file_size


def owner_headers(owner_id: int) -> dict:
    return {"X-Owner-ID": str(owner_id)}


def build_form(args) -> dict:
    """Form fields for the conversion parameters given on the command line."""
    if not (args.bitrate or args.resolution or args.ratio):
        raise CLIError("Give at least one of --bitrate, --resolution or --ratio")
    data = {"bitrate": str(args.bitrate or 0)}
    if args.resolution:
        data["resolution_x"], data["resolution_y"] = (str(v) for v in args.resolution)
    if args.ratio:
        data["ratio_x"], data["ratio_y"] = (str(v) for v in args.ratio)
    return data


def print_request(result: dict) -> None:
    print(f"  ID: {result['id']}")
    print(f"  Status: {result['status']}")
    if result.get("details"):
        print(f"  Details: {result['details']}")
    if result.get("original_video_id"):
        print(f"  Original video: {result['original_video_id']}")
    if result.get("converted_video_id"):
        print(f"  Converted video: {result['converted_video_id']}")


def api_command(func):
    """Report connection, timeout and CLIError failures and exit with status 1."""

    @functools.wraps(func)
    def wrapper(args):
        try:
            return func(args)
        except httpx.ConnectError:
            print(f"Error: Could not connect to API at {API_BASE}")
        except httpx.TimeoutException:
            print("Error: Request to the API timed out")
        except CLIError as e:
            print(f"Error: {e}")
        sys.exit(1)

    return wrapper


def api_get(path: str, owner_id: int, **params):
    return httpx.get(
        f"{API_BASE}{path}",
        params=params or None,
        headers=owner_headers(owner_id),
        timeout=DEFAULT_API_TIMEOUT,
    )


@api_command
def cmd_submit(args):
    """Upload a video and request its conversion."""
    file_path = Path(args.file)
    file_size = validate_file(file_path)
    data = build_form(args)

    print(f"Uploading: {file_path.name}")

    columns = (
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        FileSizeColumn(),
        TextColumn("/"),
        TotalFileSizeColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
    )
    with Progress(*columns) as progress, open(file_path, "rb") as f:
        task_id = progress.add_task("Uploading...", total=file_size)
        files = {"video": (file_path.name, ProgressFileWrapper(f, progress, task_id))}
        with httpx.Client(timeout=httpx.Timeout(UPLOAD_TIMEOUT)) as client:
            response = client.post(f"{API_BASE}/requests", files=files, data=data, headers=owner_headers(args.owner))

    if response.status_code == 502:
        # The request was recorded as failed; show it
        body = response.json()
        print(f"Submission failed: {body.get('detail')}")
        if body.get("request"):
            print_request(body["request"])
        sys.exit(1)

    result = safe_json_response(response)
    print("Success! Video queued for conversion.")
    print_request(result)


@api_command
def cmd_status(args):
    """Show a conversion request."""
    result = safe_json_response(api_get(f"/requests/{args.request_id}", args.owner))
    print(f"Request {result['id']} ({result['video_name']}):")
    print_request(result)


@api_command
def cmd_list(args):
    """List the owner's conversion requests."""
    result = safe_json_response(api_get("/requests", args.owner, limit=args.limit, offset=args.offset))
    rows = result.get("requests", [])
    if not rows:
        print("No requests found.")
        return

    print(f"{'ID':<6} {'Status':<10} {'Video':<40} {'Details':<30}")
    print("-" * 90)
    for r in rows:
        name = r["video_name"][:38] + ".." if len(r["video_name"]) > 40 else r["video_name"]
        details = (r.get("details") or "")[:30]
        print(f"{r['id']:<6} {r['status']:<10} {name:<40} {details:<30}")


@api_command
def cmd_video(args):
    """Show video metadata."""
    print(json.dumps(safe_json_response(api_get(f"/videos/{args.video_id}", args.owner)), indent=2))


def cmd_init_db(args):
    """Create the database tables."""
    from api.database import create_tables

    create_tables(args.database_url)
    print("Database tables created successfully!")


def cmd_consume(args):
    """Run the result consumer in the foreground."""
    from worker.completion_consumer import main as consumer_main

    consumer_main()


def cmd_queue_stats(args):
    """Print broker stream statistics."""
    from api.job_queue import RedisJobQueue
    from api.redis_client import RedisClient

    async def collect():
        try:
            return await RedisJobQueue(OrchestratorConfig.from_env()).get_stats()
        finally:
            await RedisClient.reset_instance()

    stats = asyncio.run(collect())
    if not stats.get("available"):
        print("Error: Redis is unavailable")
        sys.exit(1)
    print(json.dumps(stats, indent=2))


def main():
    parser = argparse.ArgumentParser(prog="videocmprs", description="videocmprs CLI - video conversion requests")
    subparsers = parser.add_subparsers(dest="command", required=True)

    owner_parent = argparse.ArgumentParser(add_help=False)
    owner_parent.add_argument(
        "-o",
        "--owner",
        type=positive_int,
        default=int(os.getenv("VCMPRS_OWNER_ID", "1")),
        help="User ID to act as (default: VCMPRS_OWNER_ID or 1)",
    )

    submit_parser = subparsers.add_parser("submit", parents=[owner_parent], help="Upload a video for conversion")
    submit_parser.add_argument("file", help="Video file to upload")
    submit_parser.add_argument("-b", "--bitrate", type=positive_int, help="Target bitrate (bits/s)")
    submit_parser.add_argument("-r", "--resolution", type=int_pair, help="Target resolution, e.g. 800x600")
    submit_parser.add_argument("-a", "--ratio", type=int_pair, help="Target aspect ratio, e.g. 4:3")
    submit_parser.set_defaults(func=cmd_submit)

    status_parser = subparsers.add_parser("status", parents=[owner_parent], help="Show a conversion request")
    status_parser.add_argument("request_id", type=positive_int, help="Request ID")
    status_parser.set_defaults(func=cmd_status)

    list_parser = subparsers.add_parser("list", parents=[owner_parent], help="List conversion requests")
    list_parser.add_argument("--limit", type=positive_int, default=10)
    list_parser.add_argument("--offset", type=int, default=0)
    list_parser.set_defaults(func=cmd_list)

    video_parser = subparsers.add_parser("video", parents=[owner_parent], help="Show video metadata")
    video_parser.add_argument("video_id", type=positive_int, help="Video ID")
    video_parser.set_defaults(func=cmd_video)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.add_argument("--database-url", default=DATABASE_URL, help="Database URL (default: VCMPRS_DATABASE_URL)")
    init_parser.set_defaults(func=cmd_init_db)

    consume_parser = subparsers.add_parser("consume", help="Run the worker result consumer")
    consume_parser.set_defaults(func=cmd_consume)

    stats_parser = subparsers.add_parser("queue-stats", help="Show job and result stream statistics")
    stats_parser.set_defaults(func=cmd_queue_stats)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
