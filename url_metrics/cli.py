"""CLI entry point for URL Metrics collection."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qsl, urlparse

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from url_metrics.detection.detector import DetectionOutcome, detect_when_ready
from url_metrics.grouping.media_query import generate_media_query
from url_metrics.models.config import HMAC_SECRET_ENV_REFERENCE, DetectiveConfig
from url_metrics.models.detect_args import DetectArgs
from url_metrics.server.endpoint import StoreEndpoint, StoreRequest, StoreRequestError
from url_metrics.server.optimization import OptimizationContext
from url_metrics.storage.store import JSONFileURLMetricStore

console = Console()
logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "url-metrics.json"


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _load_config(config: str) -> DetectiveConfig:
    try:
        return DetectiveConfig.load_or_default(config)
    except ValueError as e:
        console.print(f"[red]Invalid config {config}: {e}[/red]")
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Real-user URL Metrics sampling and detection"""
    setup_logging(verbose)


@cli.command()
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def init(config: str) -> None:
    """Create a default configuration file."""
    config_path = Path(config)
    if config_path.exists():
        if not click.confirm(f"{config_path} already exists. Overwrite?"):
            return

    DetectiveConfig().save(config_path, hmac_secret=HMAC_SECRET_ENV_REFERENCE)
    console.print(f"[green]Created {config_path}[/green]")
    console.print("\nSet the HMAC secret, then start the endpoint:")
    console.print("  [blue]export URL_METRICS_HMAC_SECRET=...[/blue]")
    console.print("  [blue]url-metrics serve[/blue]")


@cli.command()
@click.option("--url", "-u", required=True, help="Page URL")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def status(url: str, config: str) -> None:
    """Show which viewport groups still need URL Metrics for a page."""
    cfg = _load_config(config)
    store = JSONFileURLMetricStore(Path(cfg.store_path))
    context = OptimizationContext(url, cfg, store)

    table = Table(title=f"URL Metric groups for {url}")
    table.add_column("Viewport", style="bold")
    table.add_column("Media query")
    table.add_column("Samples", justify="right")
    table.add_column("Fresh", justify="right")
    table.add_column("Status")
    table.add_column("LCP element")
    colors = {"complete": "green", "populated": "yellow", "empty": "red"}
    for group in context.collection:
        upper = "∞" if group.maximum_viewport_width is None else str(group.maximum_viewport_width)
        group_status = group.describe_status()
        table.add_row(
            f"({group.minimum_viewport_width}, {upper}]",
            group.media_query or "-",
            str(len(group)),
            f"{group.count_fresh_current()}/{group.sample_size}",
            f"[{colors[group_status]}]{group_status}[/{colors[group_status]}]",
            group.get_lcp_element() or "-",
        )
    console.print(table)
    console.print(f"Slug: {context.slug}")
    console.print(f"ETag: {context.current_etag}")
    console.print(f"Needs detection: {'yes' if context.needs_detection else 'no'}")


@cli.command()
@click.argument("url")
@click.option("--width", "-w", default=1280, help="Viewport width")
@click.option("--height", "-h", "height", default=800, help="Viewport height")
@click.option("--dwell", default=3.0, help="Seconds on the page before it is hidden")
@click.option("--timeout", default=30.0, help="Seconds to wait for detection to finish")
@click.option("--annotate/--no-annotate", default=True, help="Add xpath attributes to unannotated pages")
@click.option("--remote", is_flag=True, help="POST to rest_api_endpoint instead of storing in-process")
@click.option("--headed", is_flag=True, help="Show the browser window")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def detect(
    url: str, width: int, height: int, dwell: float, timeout: float,
    annotate: bool, remote: bool, headed: bool, config: str,
) -> None:
    """Visit URL in Chromium and submit a URL Metric for the viewport."""
    cfg = _load_config(config)
    store = JSONFileURLMetricStore(Path(cfg.store_path))
    try:
        context = OptimizationContext(url, cfg, store)
        args = context.build_detect_args()
    except EnvironmentError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    endpoint = None if remote else StoreEndpoint(cfg, store)
    outcome = asyncio.run(_run_detection(
        url, args, width, height, dwell, timeout, annotate, headed, endpoint,
    ))

    if outcome is None:
        console.print("[red]Detection timed out[/red]")
        sys.exit(1)
    if outcome.submitted:
        console.print(
            f"[green]URL Metric submitted:[/green] {outcome.payload_size:,} bytes"
            f"{' (gzip)' if outcome.gzipped else ''}"
        )
    else:
        console.print(f"[yellow]Detection aborted:[/yellow] {outcome.reason}")


async def _run_detection(
    url: str,
    args: DetectArgs,
    width: int,
    height: int,
    dwell: float,
    timeout: float,
    annotate: bool,
    headed: bool,
    endpoint: Optional[StoreEndpoint],
) -> Optional[DetectionOutcome]:
    from playwright.async_api import async_playwright

    from url_metrics.detection.browser import (
        PlaywrightPageEnvironment,
        create_context,
        launch_browser,
    )

    sender = None
    if endpoint is not None:
        async def sender(submission_url: str, body: bytes, headers: dict[str, str]) -> dict:
            store_request = StoreRequest(
                query=dict(parse_qsl(urlparse(submission_url).query)),
                body=body,
                content_encoding=headers.get("Content-Encoding"),
                requester_address="127.0.0.1",
            )
            try:
                return endpoint.handle(store_request)
            except StoreRequestError as e:
                logger.warning("URL Metric rejected: %s (%s)", e.code, e.message)
                return e.to_dict()

    async with async_playwright() as p:
        browser = await launch_browser(p, headless=not headed)
        try:
            browser_context = await create_context(browser, {"width": width, "height": height})
            page = await browser_context.new_page()
            env = await PlaywrightPageEnvironment.attach(page, sender=sender, annotate=annotate)
            await page.goto(url, wait_until="domcontentloaded")

            task = asyncio.create_task(detect_when_ready(env, args))
            await asyncio.sleep(dwell)
            env.hide()
            try:
                outcome = await asyncio.wait_for(task, timeout)
            except asyncio.TimeoutError:
                logger.error("Detection did not finish within %.1fs", timeout)
                return None
            await env.drain()
            return outcome
        finally:
            await browser.close()


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, help="Bind port")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def serve(host: str, port: int, config: str) -> None:
    """Run the URL Metrics store endpoint."""
    from url_metrics.server.app import create_app

    cfg = _load_config(config)
    try:
        cfg.require_hmac_secret()
    except EnvironmentError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    app = create_app(cfg)
    console.print(f"Storing URL Metrics in [blue]{cfg.store_path}[/blue]")
    app.run(host=host, port=port)


@cli.command("media-query")
@click.argument("minimum", type=int)
@click.argument("maximum", type=int, required=False)
def media_query(minimum: int, maximum: Optional[int]) -> None:
    """Print the media query for a viewport width range."""
    try:
        query = generate_media_query(minimum, maximum)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    console.print(query or "[yellow]No media query needed (all widths)[/yellow]")


if __name__ == "__main__":
    cli()
