#!/usr/bin/env python3
"""
Database management script for the mission indexer.
"""

import asyncio
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy import func, select

from mission_indexer.contracts import MissionStatus
from mission_indexer.core.config import settings
from mission_indexer.core.database import (
    init_database, close_database, get_async_session, DatabaseManager
)
from mission_indexer.core.logging import setup_logging, get_logger
from mission_indexer.models import Mission, IndexerKick
from mission_indexer.services.mission_repository import MissionRepository

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Database management commands")


@app.command()
def init():
    """Create all tables (and the kick NOTIFY trigger on PostgreSQL)."""
    async def _init():
        setup_logging()
        await init_database()
        await DatabaseManager.create_tables()
        await close_database()
        console.print("✅ Database initialized successfully!")

    asyncio.run(_init())


@app.command()
def reset():
    """Reset database (drop all tables)."""
    confirm = typer.confirm("Are you sure you want to drop all tables?")
    if not confirm:
        console.print("❌ Operation cancelled")
        return

    async def _reset():
        setup_logging()
        await init_database()
        await DatabaseManager.drop_tables()
        await close_database()
        console.print("🗑️ All tables dropped!")

    asyncio.run(_reset())


@app.command()
def health():
    """Check database health."""
    async def _health():
        setup_logging()
        await init_database()

        is_healthy = await DatabaseManager.health_check()
        await close_database()

        if is_healthy:
            console.print("✅ Database is healthy!")
        else:
            console.print("❌ Database health check failed!")
            sys.exit(1)

    asyncio.run(_health())


@app.command()
def kick(
    mission: str = typer.Argument(..., help="Mission contract address"),
    tx_hash: Optional[str] = typer.Option(None, "--tx", help="Originating transaction hash"),
    event_type: Optional[str] = typer.Option(None, "--event", help="Event label, e.g. Enrolled")
):
    """Queue a refresh of one mission."""
    async def _kick():
        setup_logging()
        await init_database()
        await MissionRepository().enqueue_kick(mission, tx_hash, event_type)
        await close_database()
        console.print(f"👢 Kick queued for {mission.lower()}")

    asyncio.run(_kick())


@app.command()
def cursor(
    set_to: Optional[int] = typer.Option(
        None, "--set", help="Raise the factory cursor to this sequence (never lowers it)"
    )
):
    """Show (or raise) the factory change cursor."""
    async def _cursor():
        setup_logging()
        await init_database()
        repository = MissionRepository()
        if set_to is not None:
            await repository.advance_cursor(set_to)
        value = await repository.get_cursor(settings.factory_cursor_floor)
        await close_database()
        console.print(f"🏭 Factory cursor: {value}")

    asyncio.run(_cursor())


@app.command()
def status():
    """Show mission counts per status and pending kicks."""
    async def _status():
        setup_logging()
        await init_database()

        async with get_async_session() as session:
            rows = (await session.execute(
                select(Mission.status, func.count()).group_by(Mission.status).order_by(Mission.status)
            )).all()
            pending_kicks = (await session.execute(select(func.count()).select_from(IndexerKick))).scalar_one()

        await close_database()

        table = Table(title="Missions")
        table.add_column("Status", style="cyan")
        table.add_column("Count", style="green")
        for status_value, count in rows:
            table.add_row(MissionStatus(status_value).label, str(count))
        console.print(table)
        console.print(f"Pending kicks: {pending_kicks}")

    asyncio.run(_status())


if __name__ == "__main__":
    app()
