import json

import click

from .sync.config import SyncConfig
from .sync.media import MediaRegistry
from .sync.models import JobStatus, LinkStatus, ReferenceStatus
from .sync.references import ReferenceRegistry
from .sync.scheduler import JobStore


def _state_dir(ctx) -> str:
    return ctx.obj['config'].state_directory


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


@click.group()
@click.option('--config', 'config_path', type=click.Path(exists=True, dir_okay=False), default=None,
              help='Sync configuration YAML (defaults plus NOTIONSYNC_* environment overrides otherwise)')
@click.option('--state-dir', type=click.Path(file_okay=False), default=None, help='Override the state directory')
@click.pass_context
def cli(ctx, config_path, state_dir):
    """Inspect the registries and job table of a notionsync state directory."""
    config = SyncConfig.load(config_path)
    if state_dir:
        config = config.model_copy(update={'state_directory': state_dir})
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.group(name='registry')
def registry_group():
    """Reference and media registries."""
    pass


@registry_group.command(name='stats')
@click.pass_context
def registry_stats(ctx):
    """Show entry, link and media counts."""
    state_dir = _state_dir(ctx)
    references = ReferenceRegistry(state_dir).stats()
    media = MediaRegistry(state_dir).stats()
    click.echo(f"State directory: {state_dir}")
    click.echo("References:")
    for status, count in sorted(references['entries'].items()):
        click.echo(f"  {status:<12} {count}")
    click.echo("Links:")
    for status, count in sorted(references['links'].items()):
        click.echo(f"  {status:<12} {count}")
    click.echo(f"Media assets: {media['assets']} ({media['failed']} with download errors)")


@registry_group.command(name='links')
@click.option('--status', type=click.Choice([s.value for s in LinkStatus]), default=LinkStatus.BROKEN.value,
              help='Link status to list')
@click.option('--owner', type=str, default=None, help='Only links written into this document')
@click.option('--json', 'as_json', is_flag=True, default=False, help='Output JSON')
@click.pass_context
def registry_links(ctx, status, owner, as_json):
    """List placeholder links by status (broken links by default)."""
    links = ReferenceRegistry(_state_dir(ctx)).links(owner, LinkStatus(status))
    if as_json:
        _echo_json(links)
        return
    if not links:
        click.echo(f"No {status} links")
        return
    for link in links:
        click.echo(f"{link['owner_external_id']} -> {link['target_external_id']} "
                   f"[{link['status']}, sweeps: {link['sweep_count']}]")


@registry_group.command(name='show')
@click.argument('external_id', type=click.STRING)
@click.pass_context
def registry_show(ctx, external_id):
    """Show one reference entry with its audit history."""
    registry = ReferenceRegistry(_state_dir(ctx))
    entry = registry.get(external_id)
    if entry is None:
        click.echo(f"Unknown external id: {external_id}", err=True)
        ctx.exit(1)
    _echo_json({
        'external_id': entry.external_id,
        'status': entry.status.value,
        'target_identifier': entry.target_identifier,
        'last_synced_at': entry.last_synced_at,
        'error_detail': entry.error_detail,
        'history': registry.history(entry.external_id),
    })


@registry_group.command(name='failures')
@click.pass_context
def registry_failures(ctx):
    """List failed nodes and failed media downloads."""
    state_dir = _state_dir(ctx)
    failed = ReferenceRegistry(state_dir).entries(ReferenceStatus.FAILED)
    media = MediaRegistry(state_dir).failures()
    click.echo(f"Failed nodes: {len(failed)}")
    for entry in failed:
        click.echo(f"  {entry.external_id}: {entry.error_detail}")
    click.echo(f"Failed media: {len(media)}")
    for row in media:
        click.echo(f"  {row['external_media_id']} ({row['error_count']} errors): {row['last_error']}")


@cli.group(name='jobs')
def jobs_group():
    """Background sync jobs."""
    pass


@jobs_group.command(name='list')
@click.option('--status', type=click.Choice([s.value for s in JobStatus]), default=None, help='Filter by job status')
@click.option('--limit', type=click.INT, default=20, help='Maximum number of jobs to list')
@click.pass_context
def jobs_list(ctx, status, limit):
    """List the most recent jobs."""
    jobs = JobStore(_state_dir(ctx)).list(JobStatus(status) if status else None, limit)
    if not jobs:
        click.echo("No jobs")
        return
    for job in jobs:
        click.echo(f"{job.job_id}  {job.kind.value:<13} {job.status.value:<10} "
                   f"{job.completed_count}/{job.total} done, {job.failed_count} failed, "
                   f"attempts: {job.attempt_count}")


@jobs_group.command(name='show')
@click.argument('job_id', type=click.STRING)
@click.pass_context
def jobs_show(ctx, job_id):
    """Show one job with its per-node results."""
    job = JobStore(_state_dir(ctx)).get(job_id)
    if job is None:
        click.echo(f"Unknown job: {job_id}", err=True)
        ctx.exit(1)
    _echo_json(job.to_dict())


def main():
    cli()


if __name__ == '__main__':
    main()
