"""Command-line entrypoint: run a PDF through the pipeline or serve the API."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path
from urllib.error import URLError
from urllib.request import urlopen

import aiohttp

from .config import Settings, configure_logging
from .errors import PollingTimeout
from .models import BatchStatusView
from .status import poll_status

DEFAULT_PREFECT_API_URL = "http://localhost:4200/api"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Split and extract multi-invoice PDFs")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Process one PDF unattended")
    run.add_argument("pdf", type=Path, help="Path to PDF file to process")
    run.add_argument("--json", action="store_true", help="Print the final batch as JSON")
    run.add_argument("--split-only", action="store_true", help="Stop after splitting (no extraction)")
    run.add_argument("--artifact-dir", type=Path, help="Where split PDFs are written")
    run.add_argument(
        "--api-url",
        help=(
            "Prefect API to send runs to. Defaults to auto-detecting "
            f"{DEFAULT_PREFECT_API_URL} if reachable; otherwise a temporary "
            "local server is used."
        ),
    )

    serve = subparsers.add_parser("serve", help="Serve the HTTP API")
    serve.add_argument("--host", help="Bind address")
    serve.add_argument("--port", type=int, help="Bind port")

    watch = subparsers.add_parser("watch", help="Poll a served batch until it needs input or finishes")
    watch.add_argument("batch_id", help="Batch to watch")
    watch.add_argument("--server", help="Base URL of the served API (default: http://localhost:<API_PORT>)")

    return parser.parse_args(argv)


def ensure_prefect_api(api_url: str | None) -> None:
    """Wire the CLI to the long-running Prefect server when available."""

    if api_url:
        os.environ["PREFECT_API_URL"] = api_url
        return

    if os.environ.get("PREFECT_API_URL"):
        return

    try:
        urlopen(f"{DEFAULT_PREFECT_API_URL}/health", timeout=2)
    except (URLError, OSError):
        return

    os.environ["PREFECT_API_URL"] = DEFAULT_PREFECT_API_URL


def run_command(args: argparse.Namespace, settings: Settings) -> None:
    from .flow import BatchRunInput, invoice_batch_flow

    ensure_prefect_api(args.api_url)
    updates = {}
    if args.split_only:
        updates["extraction_enabled"] = False
    if args.artifact_dir:
        updates["artifact_dir"] = args.artifact_dir
    settings = settings.model_copy(update=updates)

    run = BatchRunInput(pdf_filename=args.pdf.name, pdf_bytes=args.pdf.read_bytes())
    batch = asyncio.run(invoice_batch_flow(run, settings))

    if args.json:
        print(json.dumps(batch.summary(), indent=2))
        return
    print(f"Batch {batch.id}: {batch.status.value}")
    for idx, split in enumerate(batch.validated_splits):
        print(f"  Invoice {idx + 1}: pages {split.start_page}-{split.end_page} -> {split.file_ref}")


def serve_command(args: argparse.Namespace, settings: Settings) -> None:
    import uvicorn

    uvicorn.run(
        "invoice_batch.api:get_app",
        factory=True,
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        reload=False,
    )


async def fetch_status(session: aiohttp.ClientSession, server: str, batch_id: str) -> BatchStatusView:
    async with session.get(f"{server}/api/batches/{batch_id}/status") as response:
        response.raise_for_status()
        body = await response.json()
    return BatchStatusView.model_validate(body["data"])


async def watch_batch(server: str, batch_id: str, settings: Settings) -> BatchStatusView:
    """Poll one batch over a single HTTP session until it settles."""

    def report(view: BatchStatusView) -> None:
        print(f"{view.status.value} (next: {view.next_action or 'none'})")

    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
        return await poll_status(
            lambda: fetch_status(session, server, batch_id),
            interval=settings.poll_interval_seconds,
            max_attempts=settings.max_poll_attempts,
            initial_delay=settings.initial_poll_delay_seconds,
            on_status=report,
        )


def watch_command(args: argparse.Namespace, settings: Settings) -> int:
    server = (args.server or f"http://localhost:{settings.api_port}").rstrip("/")

    try:
        view = asyncio.run(watch_batch(server, args.batch_id, settings))
    except PollingTimeout as exc:
        print(exc.detail)
        return 1
    except aiohttp.ClientResponseError as exc:
        print(f"Status request failed: {exc.status} {exc.message}")
        return 1
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        print(f"Cannot reach {server}: {exc}")
        return 1

    if view.error is not None:
        print(f"Failed during {view.error.stage.value if view.error.stage else 'unknown stage'}: {view.error.detail}")
    return 0


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    if args.command == "run":
        run_command(args, settings)
    elif args.command == "watch":
        raise SystemExit(watch_command(args, settings))
    else:
        serve_command(args, settings)


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
