"""Command-line entry point for Cloak Gateway."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, TextIO

import click

from cloak_gateway.config import get_settings
from cloak_gateway.exceptions import CloakError
from cloak_gateway.gateway import Gateway
from cloak_gateway.logging import get_logger, setup_logging
from cloak_gateway.security.models import DecisionAction, PromptSource

EXIT_CODES = {
    DecisionAction.ALLOW: 0,
    DecisionAction.WARN: 1,
    DecisionAction.BLOCK: 2,
}
EXIT_ERROR = 3
EXIT_INTERRUPTED = 130


def _emit(payload: dict[str, Any]) -> None:
    click.echo(json.dumps(payload))


def _error_payload(error: CloakError) -> dict[str, Any]:
    return {"error": str(error), "hint": error.hint or None}


async def _analyze(gateway: Gateway, text: str, source: str) -> int:
    try:
        decision = await gateway.analyze(text, source=source)
    except CloakError as e:
        _emit(_error_payload(e))
        return EXIT_ERROR
    _emit(decision.to_dict())
    return EXIT_CODES[decision.action]


async def _serve(gateway: Gateway, stream: TextIO) -> int:
    log = get_logger("cloak_gateway.main")
    log.info("serve_reading_stdin")
    while True:
        line = await asyncio.to_thread(stream.readline)
        if not line:
            break
        text = line.rstrip("\n")
        if not text.strip():
            continue
        try:
            decision = await gateway.analyze(text, source=PromptSource.CHAT)
        except CloakError as e:
            _emit(_error_payload(e))
            continue
        _emit(decision.to_dict())
    log.info("serve_eof")
    return 0


async def main(command: str, **options: Any) -> int:
    """Main application entry point."""
    setup_logging()
    log = get_logger("cloak_gateway.main")

    settings = get_settings()
    log.info(
        "starting_cloak_gateway",
        command=command,
        environment=settings.environment,
        endpoint=settings.classifier_endpoint,
    )

    async with Gateway(settings) as gateway:
        if command == "analyze":
            return await _analyze(gateway, options["text"], options["source"])
        if command == "serve":
            return await _serve(gateway, options["stream"])
        _emit(gateway.get_status())
        return 0


def run(command: str, **options: Any) -> None:
    """Run one command on a fresh event loop and exit with its code."""
    try:
        code = asyncio.run(main(command, **options))
    except KeyboardInterrupt:
        code = EXIT_INTERRUPTED
    sys.exit(code)


@click.group()
def cli() -> None:
    """Cloak Gateway: classify prompts before they reach an AI model."""


@cli.command()
@click.argument("text", nargs=-1, required=True)
@click.option(
    "--source",
    type=click.Choice([s.value for s in PromptSource]),
    default=PromptSource.COMMAND.value,
    show_default=True,
    help="Where the prompt came from",
)
def analyze(text: tuple[str, ...], source: str) -> None:
    """Analyse one prompt and print the decision as JSON.

    Exits 0 on allow, 1 on warn, 2 on block and 3 on error.
    """
    run("analyze", text=" ".join(text), source=source)


@cli.command()
def status() -> None:
    """Probe the classifier and print gateway status."""
    run("status")


@cli.command()
def serve() -> None:
    """Analyse prompts read line by line from stdin until EOF."""
    run("serve", stream=click.get_text_stream("stdin"))


if __name__ == "__main__":
    cli()
