#!/usr/bin/env python3
"""
SEPM duplicate client cleanup - command line entry.

Dry run is the default; pass --execute to actually delete.
"""
import sys
import getpass
import logging

import click

from sepm_dedup.dedup import DEFAULT_DELETE_DELAY_SECONDS, DEFAULT_THRESHOLD, RETAINED, WOULD_DELETE, DELETED, FAILED
from sepm_dedup.dedup_handler import DedupSettings, DEFAULT_PAGE_SIZE, DEFAULT_PORT, build_client, run_dedup
from sepm_dedup.errors import DedupError

logger = logging.getLogger("sepm_dedup.cli")

_LABELS = {
    RETAINED: "KEEP",
    WOULD_DELETE: "WOULD DELETE",
    DELETED: "DELETED",
    FAILED: "FAILED",
}


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    for name in ("sepm_dedup", "sepm_dedup.api_client", "sepm_dedup.dedup", "sepm_dedup.dedup_handler"):
        logging.getLogger(name).setLevel(level)


def print_report(result) -> None:
    for outcome in result.outcomes:
        rec = outcome.record
        if outcome.action == RETAINED:
            click.echo(f"\n[{rec.name}]")
        line = f"  {_LABELS[outcome.action]:<13} {rec.describe()}"
        if outcome.error:
            line += f" error={outcome.error}"
        click.echo(line)
    mode = "dry run" if result.dry_run else "live"
    if result.dry_run:
        done = f"would delete: {len(result.by_action(WOULD_DELETE))}"
    else:
        done = f"deleted: {result.deleted}"
    click.echo(f"\nDuplicate groups: {result.groups_found}  {done}  ({mode})")


@click.command()
@click.option('--host', envvar='SEPM_HOST', required=True, help='SEPM server address')
@click.option('--port', envvar='SEPM_PORT', type=int, default=DEFAULT_PORT, show_default=True, help='SEPM REST API port')
@click.option('--username', '-u', envvar='SEPM_USERNAME', default=None, help='Login name (defaults to the current OS user)')
@click.option('--password', envvar='SEPM_PASSWORD', default=None, help='Password; prompted for when omitted')
@click.option('--domain', envvar='SEPM_DOMAIN', default='', help='SEPM login domain')
@click.option('--dry-run/--execute', 'dry_run', envvar='SEPM_DRY_RUN', default=True, show_default=True,
              help='Only report duplicates (default) or actually delete them')
@click.option('--threshold', envvar='SEPM_DUP_THRESHOLD', type=click.IntRange(min=0), default=DEFAULT_THRESHOLD,
              show_default=True, help='Act only on groups with MORE than this many members')
@click.option('--key', 'key_field', envvar='SEPM_DUP_KEY', type=click.Choice(['name', 'hardware']), default='name',
              show_default=True, help='Field that identifies duplicates')
@click.option('--page-size', envvar='SEPM_PAGE_SIZE', type=click.IntRange(min=1), default=DEFAULT_PAGE_SIZE,
              show_default=True, help='Records per inventory page')
@click.option('--delete-delay', envvar='SEPM_DELETE_DELAY_SECONDS', type=float, default=DEFAULT_DELETE_DELAY_SECONDS,
              show_default=True, help='Pause after each deletion (seconds)')
@click.option('--ca-bundle', envvar='SEPM_CA_BUNDLE', type=click.Path(exists=True, dir_okay=False), default=None,
              help='CA bundle used to verify the server certificate')
@click.option('--insecure', envvar='SEPM_INSECURE', is_flag=True, help='Skip TLS certificate verification')
@click.option('--timeout', 'request_timeout', envvar='SEPM_REQUEST_TIMEOUT', type=click.IntRange(min=1), default=30,
              show_default=True, help='Per-request timeout (seconds)')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose/debug output')
def main(host, port, username, password, domain, dry_run, threshold, key_field, page_size,
         delete_delay, ca_bundle, insecure, request_timeout, verbose):
    """Remove duplicate SEPM client records, keeping the most recent check-in.

    \b
    Examples:
      sepm-dedup --host sepm.example.com                 # Report only
      sepm-dedup --host sepm.example.com --execute       # Delete duplicates
      sepm-dedup --host sepm.example.com --key hardware  # Group by hardware key
    """
    setup_logging(verbose)
    username = username or getpass.getuser()
    if not password:
        password = click.prompt(f"Password for {username}", hide_input=True)

    settings = DedupSettings(
        host=host,
        port=port,
        username=username,
        password=password,
        domain=domain,
        dry_run=dry_run,
        threshold=threshold,
        key_field=key_field,
        page_size=page_size,
        delete_delay_seconds=delete_delay,
        verify_tls=not insecure,
        ca_bundle=ca_bundle,
        request_timeout=request_timeout,
    )
    if not dry_run:
        logger.warning("[run] LIVE mode: duplicate records will be deleted")
    try:
        result = run_dedup(build_client(settings), settings)
    except DedupError as e:
        click.echo(f"ERROR ({e.stage}): {e}", err=True)
        sys.exit(1)
    print_report(result)


if __name__ == "__main__":
    main()
