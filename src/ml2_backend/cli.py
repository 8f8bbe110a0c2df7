"""Command line entry point."""

import asyncio

import typer
import uvicorn

from .config import get_settings
from .logging_config import setup_logging

app = typer.Typer()


@app.callback()
def callback():
    """
    ML2 backend
    """


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", "-h"),
    port: int = typer.Option(8000, "--port", "-p"),
):
    """Run the HTTP API."""
    uvicorn.run("ml2_backend.main:app", host=host, port=port)


@app.command("init-db")
def init_db():
    """Create database tables."""
    from .database import create_tables

    settings = get_settings()
    setup_logging(service_name=settings.service_name, log_format=settings.log_format, log_level=settings.log_level)
    asyncio.run(create_tables())
    typer.echo(f"Tables created in {settings.database_url}")


if __name__ == "__main__":
    app()
