"""Administrative CLI over the durable operation queue.

Examples:
    listsync --redis-url redis://localhost:6379/0 stats
    listsync list-owner 42
    listsync retry 6f1c...  # failed -> pending
    listsync purge --days 7
"""

from __future__ import annotations

import asyncio
import json
import logging
import typing as t

import click

from .core.errors import ListSyncError
from .core.queue import OperationQueue
from .storage import OperationStorage, RedisOperationStorage


def open_storage(redis_url: str, prefix: str) -> OperationStorage:
    return RedisOperationStorage(redis_url, prefix=prefix)


def _run(ctx: click.Context, action: t.Callable[[OperationQueue], t.Awaitable[t.Any]]) -> t.Any:
    storage = open_storage(ctx.obj["redis_url"], ctx.obj["prefix"])

    async def main() -> t.Any:
        try:
            return await action(OperationQueue(storage))
        finally:
            close = getattr(storage, "close", None)
            if close is not None:
                await close()

    try:
        return asyncio.run(main())
    except ListSyncError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo(data: t.Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True))


@click.group()
@click.option("--redis-url", default="redis://localhost:6379/0", help="Redis URL of the queue storage")
@click.option("--prefix", default="listsync", help="Key prefix used by storage")
@click.option("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
@click.pass_context
def main(ctx: click.Context, redis_url: str, prefix: str, log_level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["redis_url"] = redis_url
    ctx.obj["prefix"] = prefix


@main.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Print operation counts per status."""
    _echo(_run(ctx, lambda queue: queue.stats_by_status()))


@main.command("list-owner")
@click.argument("owner_id", type=int)
@click.option("--all", "include_all", is_flag=True, default=False, help="Include failed operations")
@click.pass_context
def list_owner(ctx: click.Context, owner_id: int, include_all: bool) -> None:
    """List active operations of one owner."""

    async def action(queue: OperationQueue) -> t.List[t.Dict[str, t.Any]]:
        records = await queue.pending_for_owner(owner_id)
        if include_all:
            records += await queue.failed_operations(owner_id=owner_id)
        return [r.to_dict() for r in records]

    _echo(_run(ctx, action))


@main.command()
@click.argument("operation_id")
@click.pass_context
def cancel(ctx: click.Context, operation_id: str) -> None:
    """Cancel a pending or processing operation."""

    async def action(queue: OperationQueue) -> t.Dict[str, t.Any]:
        return (await queue.cancel(operation_id)).to_dict()

    _echo(_run(ctx, action))


@main.command()
@click.argument("operation_id")
@click.pass_context
def retry(ctx: click.Context, operation_id: str) -> None:
    """Re-queue a failed operation for immediate processing."""

    async def action(queue: OperationQueue) -> t.Dict[str, t.Any]:
        return (await queue.retry(operation_id)).to_dict()

    _echo(_run(ctx, action))


@main.command()
@click.option("--days", default=30, type=int, show_default=True, help="Delete completed/cancelled older than N days")
@click.pass_context
def purge(ctx: click.Context, days: int) -> None:
    """Delete old completed and cancelled operations."""
    deleted = _run(ctx, lambda queue: queue.purge_old(older_than_days=days))
    _echo({"deleted": deleted})


@main.command()
@click.pass_context
def recover(ctx: click.Context) -> None:
    """Return operations stranded in processing to pending."""
    recovered = _run(ctx, lambda queue: queue.recover_interrupted())
    _echo({"recovered": recovered})


if __name__ == "__main__":
    main()
