"""
Command line entry point.

    python -m anysession providers
    python -m anysession ask "What is 2+2?" --instructions "You are terse."
    python -m anysession cleanup notes.txt --word Obsidian
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from anysession.config.settings import Settings, load_settings
from anysession.llm.factory import LLMProvider, create_backend, create_session
from anysession.services.transcript_cleanup import TranscriptCleanupService
from anysession.utils.exceptions import AnySessionError
from anysession.utils.logger import get_logger
from anysession.version import get_version_string

logger = get_logger(__name__)


def _settings(args: argparse.Namespace) -> Settings:
    settings = load_settings(args.config, use_cache=False)
    overrides = {}
    if args.provider:
        overrides["provider"] = args.provider
    if args.model:
        overrides["model"] = args.model
    if overrides:
        llm = settings.llm.model_validate({**settings.llm.model_dump(), **overrides})
        settings = settings.model_copy(update={"llm": llm})
    return settings


def _read_text(source: str | None) -> str:
    if not source or source == "-":
        return sys.stdin.read()
    return Path(source).read_text(encoding="utf-8")


def cmd_providers(args: argparse.Namespace) -> int:
    out = [
        {
            "id": p.value,
            "name": p.display_name,
            "default_model": p.default_model,
            "models": p.available_models,
            "requires_api_key": p.requires_api_key,
        }
        for p in LLMProvider
    ]
    print(json.dumps(out, ensure_ascii=False, indent=2))
    return 0


async def _ask(args: argparse.Namespace) -> int:
    settings = _settings(args)
    session = create_session(settings, instructions=args.instructions)
    try:
        if args.stream:
            async for snapshot in session.stream_response(args.prompt):
                if snapshot.is_final:
                    print()
                else:
                    print("\r" + snapshot.text, end="", flush=True)
        else:
            response = await session.respond(args.prompt)
            print(response.text)
    finally:
        await session.backend.aclose()
    return 0


def cmd_ask(args: argparse.Namespace) -> int:
    return asyncio.run(_ask(args))


async def _cleanup(args: argparse.Namespace) -> int:
    settings = _settings(args)
    backend = create_backend(settings)
    service = TranscriptCleanupService(backend, settings.cleanup)
    try:
        result = await service.process_transcript_with_title(
            _read_text(args.file), args.word or None
        )
    finally:
        await backend.aclose()
    print(json.dumps(result.model_dump(), ensure_ascii=False, indent=2))
    return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
    return asyncio.run(_cleanup(args))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="anysession", description=get_version_string())
    p.add_argument("--version", action="version", version=get_version_string())
    p.add_argument("--config", default="config.user.yaml", help="Path to the user config YAML.")
    p.add_argument("--provider", choices=[p.value for p in LLMProvider])
    p.add_argument("--model", default="")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_prov = sub.add_parser("providers", help="List providers and their models as JSON.")
    s_prov.set_defaults(func=cmd_providers)

    s_ask = sub.add_parser("ask", help="Send one prompt and print the reply.")
    s_ask.add_argument("prompt")
    s_ask.add_argument("--instructions", default=None)
    s_ask.add_argument("--stream", action="store_true")
    s_ask.set_defaults(func=cmd_ask)

    s_clean = sub.add_parser("cleanup", help="Clean a transcript and suggest a title (JSON).")
    s_clean.add_argument("file", nargs="?", help="Transcript file; stdin when omitted or '-'.")
    s_clean.add_argument(
        "--word", action="append", help="Word the speaker uses often (repeatable)."
    )
    s_clean.set_defaults(func=cmd_cleanup)

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return int(args.func(args))
    except AnySessionError as exc:
        logger.error("%s", exc)
        print(json.dumps(exc.to_dict(), ensure_ascii=False), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
