"""Command line entry point: analyze URLs or serve the HTTP API."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional, Sequence, TextIO

from andrena.core.config import Settings, get_settings
from andrena.core.errors import EXIT_OK, EXIT_UNEXPECTED, FetchError, ModelLoadError, PipelineError
from andrena.core.logging_config import configure_logging
from andrena.models import InferenceEngine, InferenceResult
from andrena.pipeline import PipelineCoordinator
from andrena.pipeline.coordinator import Fetcher
from andrena.services.audio import MediaFetcher, MediaRequest

logger = logging.getLogger(__name__)


def _positive_seconds(value: str) -> float:
    try:
        seconds = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid number of seconds: '{value}'") from exc
    if not seconds > 0:
        raise argparse.ArgumentTypeError(f"deadline must be positive, got {value}")
    return seconds


def parse_args(argv: Optional[Sequence[str]] = None) -> tuple[argparse.ArgumentParser, argparse.Namespace]:
    parser = argparse.ArgumentParser(
        prog="andrena",
        description="Fetch remote media, extract its audio and score it with a pretrained model.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    analyze = commands.add_parser("analyze", help="Analyze one or more URLs and print JSON lines.")
    analyze.add_argument("urls", nargs="+", metavar="URL", help="Media or page URL understood by yt-dlp.")
    analyze.add_argument("--format", default=None, help="yt-dlp format selector overriding --quality.")
    analyze.add_argument(
        "--quality",
        choices=("best", "worst"),
        default="best",
        help="Pick the best or the smallest audio stream.",
    )
    analyze.add_argument("--deadline", type=_positive_seconds, default=None, help="Per-request deadline in seconds.")

    serve = commands.add_parser("serve", help="Run the HTTP API under uvicorn.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    return parser, parser.parse_args(argv)


def _success_record(request: MediaRequest, result: InferenceResult) -> dict:
    return {"url": request.url, "ok": True, "result": result.to_dict()}


def _failure_record(request: MediaRequest, exc: PipelineError) -> dict:
    return {
        "url": request.url,
        "ok": False,
        "error": {
            "stage": exc.stage.value if exc.stage else None,
            "kind": exc.kind_name,
            "detail": exc.message,
        },
    }


def _unexpected_record(request: MediaRequest, exc: Exception) -> dict:
    return {
        "url": request.url,
        "ok": False,
        "error": {"stage": None, "kind": type(exc).__name__, "detail": str(exc)},
    }


async def analyze_requests(
    requests: Sequence[MediaRequest],
    coordinator: PipelineCoordinator,
    deadline_seconds: Optional[float] = None,
    out: Optional[TextIO] = None,
) -> int:
    """Process ``requests`` concurrently and print one JSON line each, in input order.

    Returns the exit code of the first failed request, or 0 when all succeed.
    """

    out = out or sys.stdout
    outcomes = await asyncio.gather(
        *(coordinator.process(request, deadline_seconds) for request in requests),
        return_exceptions=True,
    )

    exit_code = EXIT_OK
    for request, outcome in zip(requests, outcomes):
        if isinstance(outcome, PipelineError):
            record = _failure_record(request, outcome)
            if exit_code == EXIT_OK:
                exit_code = outcome.exit_code
        elif isinstance(outcome, Exception):
            logger.error("Unexpected failure for '%s'", request.url, exc_info=outcome)
            record = _unexpected_record(request, outcome)
            if exit_code == EXIT_OK:
                exit_code = EXIT_UNEXPECTED
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            record = _success_record(request, outcome)
        out.write(json.dumps(record, ensure_ascii=False) + "\n")
    out.flush()
    return exit_code


async def _run_analyze(
    requests: Sequence[MediaRequest],
    settings: Settings,
    engine: InferenceEngine,
    fetcher: Fetcher,
    deadline_seconds: Optional[float],
) -> int:
    coordinator = PipelineCoordinator.from_settings(settings, engine, fetcher=fetcher)
    try:
        return await analyze_requests(requests, coordinator, deadline_seconds)
    finally:
        coordinator.shutdown()


def _serve(settings: Settings, host: str, port: int) -> int:
    import uvicorn

    from andrena.main import create_app

    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser, args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)

    if args.command == "serve":
        return _serve(settings, args.host, args.port)

    try:
        requests = [MediaRequest(url=url, format_hint=args.format, quality_hint=args.quality) for url in args.urls]
    except ValueError as exc:
        parser.error(str(exc))

    fetcher = MediaFetcher.from_settings(settings)
    try:
        fetcher.check_available()
    except FetchError as exc:
        logger.error("%s", exc.message)
        return exc.exit_code

    engine = InferenceEngine(settings)
    try:
        engine.load()
    except ModelLoadError as exc:
        logger.error("Model load failed: %s", exc.message)
        return exc.exit_code

    try:
        return asyncio.run(_run_analyze(requests, settings, engine, fetcher, args.deadline))
    finally:
        engine.release()


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
