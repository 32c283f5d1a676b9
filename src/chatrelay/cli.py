"""CLI interface for chatrelay."""

from __future__ import annotations

import asyncio
import shutil

import click
import httpx

from . import __version__
from .backend import OllamaClient
from .config import DATA_DIR, DEFAULT_HOST, DEFAULT_PORT, OLLAMA_URL, SQLITE_PATH
from .errors import RelayError


def _run(coro):
    """Run a coroutine, turning relay errors into clean CLI failures."""
    try:
        return asyncio.run(coro)
    except RelayError as e:
        raise click.ClickException(e.message) from e


@click.group()
@click.version_option(version=__version__, prog_name="chatrelay")
@click.option(
    "--url",
    default=OLLAMA_URL,
    show_default=True,
    help="Base URL of the inference server (or set CHATRELAY_OLLAMA_URL).",
)
@click.pass_context
def cli(ctx: click.Context, url: str):
    """chatrelay: stream chat from a local inference server.

    Run the relay server for browsers, or talk to the inference server
    directly from the terminal.
    """
    ctx.obj = {"url": url}


@cli.command()
@click.option("--host", default=DEFAULT_HOST, show_default=True)
@click.option("--port", default=DEFAULT_PORT, show_default=True, type=int)
@click.option("--reload", is_flag=True, help="Reload on code changes (development)")
def serve(host: str, port: int, reload: bool):
    """Start the HTTP relay server."""
    import uvicorn

    uvicorn.run(
        "chatrelay.server:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


@cli.command()
@click.pass_obj
def health(obj: dict):
    """Check whether the inference server is reachable."""

    async def check() -> bool:
        async with OllamaClient(obj["url"]) as client:
            return await client.check_health()

    if _run(check()):
        click.echo(click.style("healthy", fg="green") + f"  {obj['url']}")
    else:
        click.echo(click.style("unhealthy", fg="red") + f"  {obj['url']}")
        raise SystemExit(1)


@cli.command()
@click.pass_obj
def models(obj: dict):
    """List installed models."""

    async def fetch():
        async with OllamaClient(obj["url"]) as client:
            return await client.list_models()

    installed = _run(fetch())
    if not installed:
        click.echo("No models found (is the inference server running?)")
        return

    for m in installed:
        size_gb = m.size / (1024**3)
        click.echo(f"  {m.name:<40} {size_gb:6.1f} GB  {m.digest[:12]}")


@cli.command()
@click.argument("name")
@click.pass_obj
def pull(obj: dict, name: str):
    """Download a model onto the inference server."""

    async def run():
        with click.progressbar(length=100, label=f"Pulling {name}") as bar:
            done = 0

            def advance(percent: float):
                nonlocal done
                step = int(percent) - done
                if step > 0:
                    bar.update(step)
                    done += step

            async with OllamaClient(obj["url"]) as client:
                await client.pull_model(name, advance)

    _run(run())
    click.echo(click.style(f"Pulled {name}", fg="green", bold=True))


@cli.command("rm")
@click.argument("name")
@click.pass_obj
def remove(obj: dict, name: str):
    """Delete a model from the inference server."""

    async def run():
        async with OllamaClient(obj["url"]) as client:
            await client.delete_model(name)

    _run(run())
    click.echo(f"Deleted {name}")


@cli.command()
@click.argument("model")
@click.argument("prompt")
@click.option("--system", "system_prompt", default=None, help="Optional system message")
@click.pass_obj
def chat(obj: dict, model: str, prompt: str, system_prompt: str | None):
    """Send one chat message and stream the reply to the terminal."""
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})

    async def run():
        async with OllamaClient(obj["url"]) as client:
            return await client.chat(
                model, messages, on_stream=lambda token: click.echo(token, nl=False)
            )

    _run(run())
    click.echo()


@cli.command()
@click.argument("model")
@click.argument("prompt")
@click.option(
    "--endpoint",
    default="/v1/chat/completions",
    show_default=True,
    help="OpenAI-compatible streaming completions path or absolute URL.",
)
@click.option("--temperature", default=0.7, show_default=True, type=float)
@click.pass_obj
def complete(obj: dict, model: str, prompt: str, endpoint: str, temperature: float):
    """Stream a completion from an OpenAI-compatible SSE endpoint."""
    from .stream_handler import create_ai_stream

    async def run():
        async with httpx.AsyncClient(base_url=obj["url"], timeout=None) as http:
            return await create_ai_stream(
                http,
                endpoint,
                [{"role": "user", "content": prompt}],
                model=model,
                temperature=temperature,
                on_token=lambda token: click.echo(token, nl=False),
            )

    _run(run())
    click.echo()


@cli.command()
def stats():
    """Show statistics about the local record store."""
    if not SQLITE_PATH.exists():
        click.echo("No data found. Start the server and create a project first.")
        return

    from .storage import ProjectStore

    store = ProjectStore(SQLITE_PATH)
    try:
        store.init()
        s = store.get_stats()
    except RelayError as e:
        raise click.ClickException(e.message) from e
    finally:
        store.close()

    click.echo()
    click.echo(click.style("Record Store Statistics", bold=True))
    click.echo(f"  Projects:  {s.total_projects:,}")
    click.echo(f"  Files:     {s.total_files:,}")
    click.echo(f"  Messages:  {s.total_messages:,}")

    db_size = SQLITE_PATH.stat().st_size if SQLITE_PATH.exists() else 0
    click.echo(f"  Storage:   {db_size / (1024 * 1024):.1f} MB")
    click.echo(f"  Location:  {DATA_DIR}")
    click.echo()


@cli.command()
@click.confirmation_option(prompt="This will delete all stored projects, files and messages. Are you sure?")
def reset():
    """Delete the local record store and start fresh."""
    if DATA_DIR.exists():
        shutil.rmtree(DATA_DIR)
        click.echo(f"Deleted {DATA_DIR}")
    else:
        click.echo("No data to delete.")
