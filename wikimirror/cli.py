import json
from dataclasses import asdict
from datetime import datetime, timezone

import click

from .config import DEFAULT_CONFIG_PATH, VALID_SOURCES, get_logger
from .sync.config import create_default_config, load_config
from .sync.error_tracker import SyncException
from .sync.orchestrator import build_orchestrator

logger = get_logger(__name__)


def _parse_since(value):
    if value is None:
        return None
    since = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return since if since.tzinfo else since.replace(tzinfo=timezone.utc)


def _report(outcome):
    """Print a run outcome; failed or suppressed runs exit with status 1."""
    click.echo(json.dumps(outcome.to_dict(), indent=2))
    if not outcome.ok:
        raise SystemExit(1)


@click.group()
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), default=DEFAULT_CONFIG_PATH,
              help='Path to the YAML sync configuration')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              default=None, help='Override the configured log level')
@click.pass_context
def cli(ctx, config_path, log_level):
    """Mirror wiki sources into local storage."""
    config = load_config(config_path)
    if log_level:
        config.log_level = log_level.upper()
    ctx.obj = {'config': config}


def _orchestrator(ctx):
    if 'orchestrator' not in ctx.obj:
        ctx.obj['orchestrator'] = build_orchestrator(ctx.obj['config'])
    return ctx.obj['orchestrator']


@cli.group(name='sync')
def sync_group():
    """Run a sync strategy for one source."""
    pass

@sync_group.command(name='full')
@click.argument('source', type=click.Choice(VALID_SOURCES))
@click.option('--limit', type=int, default=None, help='Maximum number of candidates')
@click.pass_context
def sync_full(ctx, source, limit):
    """Sync every page of SOURCE."""
    _report(_orchestrator(ctx).sync_full(source, limit=limit))

@sync_group.command(name='category')
@click.argument('source', type=click.Choice(VALID_SOURCES))
@click.argument('category')
@click.option('--limit', type=int, default=None, help='Maximum number of candidates')
@click.pass_context
def sync_category(ctx, source, category, limit):
    """Sync the pages of one category (or mirror directory) of SOURCE."""
    _report(_orchestrator(ctx).sync_category(source, category, limit=limit))

@sync_group.command(name='incremental')
@click.argument('source', type=click.Choice(VALID_SOURCES))
@click.option('--since', type=str, default=None, help='ISO timestamp; defaults to the last completed run')
@click.pass_context
def sync_incremental(ctx, source, since):
    """Sync pages of SOURCE changed since the last completed run."""
    _report(_orchestrator(ctx).sync_incremental(source, since=_parse_since(since)))

@sync_group.command(name='search')
@click.argument('source', type=click.Choice(VALID_SOURCES))
@click.argument('query')
@click.option('--limit', type=int, default=None, help='Maximum number of candidates')
@click.pass_context
def sync_search(ctx, source, query, limit):
    """Sync the pages of SOURCE matching QUERY."""
    _report(_orchestrator(ctx).sync_search(source, query, limit=limit))

@sync_group.command(name='refresh')
@click.argument('source', type=click.Choice(VALID_SOURCES))
@click.option('--limit', type=int, default=None, help='Maximum number of stored articles to refresh')
@click.pass_context
def sync_refresh(ctx, source, limit):
    """Re-fetch articles of SOURCE that are already stored."""
    _report(_orchestrator(ctx).sync_refresh(source, limit=limit))


@cli.command(name='page')
@click.argument('source', type=click.Choice(VALID_SOURCES))
@click.argument('slugs', nargs=-1, required=True)
@click.pass_context
def page(ctx, source, slugs):
    """Process individual pages outside of a sync run."""
    orchestrator = _orchestrator(ctx)
    if len(slugs) == 1:
        results = {slugs[0]: orchestrator.process_page(source, slugs[0])}
    else:
        results = orchestrator.process_pages(source, list(slugs))
    failed = False
    for slug, result in results.items():
        if result.ok:
            click.echo(f"{slug}: {result.outcome.value}")
        else:
            failed = True
            click.echo(f"{slug}: error ({result.error.phase}/{result.error.reason}) {result.error.message}", err=True)
    if failed:
        raise SystemExit(1)


@cli.command(name='runs')
@click.argument('source', type=click.Choice(VALID_SOURCES))
@click.option('--limit', type=int, default=20)
@click.pass_context
def runs(ctx, source, limit):
    """List recent sync runs of SOURCE."""
    for run in _orchestrator(ctx).ledger.recent(source, limit=limit):
        duration = f"{run.duration_seconds:.1f}s" if run.duration_seconds is not None else "-"
        click.echo(f"#{run.id} {run.strategy} {run.status.value} {run.started_at.isoformat()} ({duration}) "
                   f"processed={run.pages_processed} created={run.pages_created} updated={run.pages_updated} "
                   f"unchanged={run.pages_unchanged} errors={len(run.errors)}")
        if run.error_message:
            click.echo(f"    {run.error_message}")


@cli.command(name='extract')
@click.argument('kind', type=click.Choice(['item', 'monster']))
@click.argument('titles', nargs=-1, required=True)
@click.pass_context
def extract(ctx, kind, titles):
    """Print the typed records extracted from OSRS pages."""
    pipeline = _orchestrator(ctx).pipeline('osrs')
    try:
        wikitexts = pipeline.fetch_wikitext(list(titles))
    except SyncException as e:
        click.echo(f"Error: {e.reason}: {e.message}", err=True)
        raise SystemExit(1)
    extract_record = pipeline.extractor.extract_item if kind == 'item' else pipeline.extractor.extract_monster
    records = {}
    failed = False
    for title in titles:
        if title not in wikitexts:
            click.echo(f"{title}: not found", err=True)
            failed = True
            continue
        try:
            records[title] = asdict(extract_record(title, wikitexts[title]))
        except SyncException as e:
            click.echo(f"{title}: {e.reason}: {e.message}", err=True)
            failed = True
    click.echo(json.dumps(records, indent=2, default=str))
    if failed:
        raise SystemExit(1)


@cli.command(name='show')
@click.argument('source', type=click.Choice(VALID_SOURCES))
@click.argument('slug')
@click.option('--raw', is_flag=True, default=False, help='Print the raw upstream content instead of the HTML')
@click.pass_context
def show(ctx, source, slug, raw):
    """Print the stored rendered HTML (or raw content) of an article."""
    orchestrator = _orchestrator(ctx)
    content = orchestrator.read_raw(source, slug) if raw else orchestrator.read_html(source, slug)
    if content is None:
        click.echo(f"No stored article {source}/{slug}", err=True)
        raise SystemExit(1)
    click.echo(content)


@cli.command(name='init-config')
@click.argument('path', type=click.Path(dir_okay=False))
@click.option('--data-directory', type=str, default=None)
def init_config(path, data_directory):
    """Write the default configuration to PATH."""
    create_default_config(data_directory).to_yaml(path)
    logger.info(f"Wrote default configuration to {path}")
    click.echo(path)


def main():
    cli()

if __name__ == '__main__':
    main()
