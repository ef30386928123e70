"""Command-line entry point: fetch a ticket and write its data to a file or stdout.

The command is a thin wrapper around :class:`htsget_stream.client.HtsgetDownloader`.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

import click

from .client import HtsgetDownloader
from .errors import QueryParseError, TicketFetchError
from .settings import load_settings_from_env, resolve_secret
from .ticket import GenomicQuery

FORMATS = ("BAM", "CRAM", "VCF", "BCF")


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_region(
    ctx: click.Context, param: click.Parameter, value: str | None
) -> GenomicQuery | None:
    if value is None:
        return None
    try:
        return GenomicQuery.parse(value)
    except QueryParseError as error:
        raise click.BadParameter(str(error), ctx=ctx, param=param) from error


@click.command()
@click.version_option(package_name="htsget-stream")
@click.option("--endpoint-url", help="Ticket endpoint URL to query.")
@click.option("--dataset-id", required=True, help="Dataset or file id to request.")
@click.option("--reference-name", default="", help="Reference sequence name.")
@click.option(
    "--alignment-start", type=click.IntRange(min=0), default=0, help="Region start."
)
@click.option(
    "--alignment-stop",
    type=click.IntRange(min=0),
    default=0,
    help="Region end (0 for unbounded).",
)
@click.option(
    "--region",
    callback=_parse_region,
    help="Region as SEQUENCE:START-END; overrides the three options above.",
)
@click.option(
    "--format",
    "fmt",
    type=click.Choice(FORMATS, case_sensitive=False),
    default="BAM",
    show_default=True,
    help="Requested data format.",
)
@click.option(
    "--output-file",
    type=click.Path(dir_okay=False, writable=True, path_type=Path),
    help="File to write the data to; omit for stdout.",
)
@click.option("--print-ticket", is_flag=True, help="Print the ticket before downloading.")
@click.option("--buffer-size", type=click.IntRange(min=1), help="Read buffer size in bytes.")
@click.option("--retries", type=click.IntRange(min=0), help="Extra attempts per ticket URL.")
@click.option(
    "--oauth-token",
    help="OAuth2 bearer token; use file://PATH to read it from a file.",
)
@click.option("--proxy", help="HTTP(S) proxy URL for all requests.")
@click.option("--debug", is_flag=True, help="Log debugging information.")
def cli(
    endpoint_url: str | None,
    dataset_id: str,
    reference_name: str,
    alignment_start: int,
    alignment_stop: int,
    region: GenomicQuery | None,
    fmt: str,
    output_file: Path | None,
    print_ticket: bool,
    buffer_size: int | None,
    retries: int | None,
    oauth_token: str | None,
    proxy: str | None,
    debug: bool,
) -> None:
    """Stream genomic data from an htsget ticket server."""
    _configure_logging(debug)

    overrides: dict[str, Any] = {
        "endpoint_url": endpoint_url,
        "buffer_size": buffer_size,
        "retries": retries,
        "proxy": proxy,
        "oauth_token": resolve_secret(oauth_token),
    }
    settings = load_settings_from_env().model_copy(
        update={key: value for key, value in overrides.items() if value is not None}
    )
    query = region or GenomicQuery(reference_name, alignment_start, alignment_stop)
    fmt = fmt.upper()

    with HtsgetDownloader(settings) as downloader:
        try:
            ticket = downloader.fetch_ticket(dataset_id, query, fmt)
        except TicketFetchError as error:
            click.echo(f"Error: {error}", err=True)
            raise SystemExit(1) from error
        if print_ticket:
            click.echo(ticket.model_dump_json(indent=2, by_alias=True), err=True)

        if output_file is None:
            summary = downloader.download(ticket, click.get_binary_stream("stdout"))
        else:
            with output_file.open("wb") as sink:
                summary = downloader.download(ticket, sink)

    click.echo(f"Total bytes written: {summary.total_bytes}", err=True)
    for outcome in summary.failed:
        click.echo(
            f"Failed entry {outcome.index} ({outcome.url}): {outcome.error}", err=True
        )
    if not summary.ok:
        raise SystemExit(1)


def main() -> None:
    cli()
