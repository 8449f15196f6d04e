"""
Command line entry point.

    voiceclone combine OUT IN [IN ...]   combine recordings into a training asset
    voiceclone analyze IN                print a recording's quality report
    voiceclone serve                     run the API server
    voiceclone watch --user-id ID        follow a user's jobs until they finish
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from voiceclone.core.config import get_settings
from voiceclone.core.errors import VoiceCloneError
from voiceclone.core.logging import get_logger, setup_logging

logger = get_logger(__name__)


def cmd_combine(args: argparse.Namespace) -> int:
    from voiceclone.services.pipeline import ProcessingContext, combine
    from voiceclone.services.recordings import decode_audio
    from voiceclone.services.signal import analyze_quality

    settings = get_settings()
    buffers = [decode_audio(Path(p)) for p in args.inputs]
    context = ProcessingContext(
        sample_rate=settings.target_sample_rate,
        high_pass_cutoff_hz=settings.high_pass_cutoff_hz,
        target_peak=settings.target_peak,
    )
    asset = combine(buffers, context)

    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(asset.data)

    report = analyze_quality(decode_audio(asset.data))
    print(f"Wrote {output} ({asset.duration_seconds:.2f}s, {asset.sample_rate}Hz mono, "
          f"quality {report.score}/100)")
    return 0


def cmd_analyze(args: argparse.Namespace) -> int:
    from voiceclone.services.recordings import decode_audio
    from voiceclone.services.signal import analyze_quality

    report = analyze_quality(decode_audio(Path(args.input)))
    print(json.dumps(report.to_dict(), indent=2))
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "voiceclone.app:create_app",
        factory=True,
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=settings.debug,
    )
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    from voiceclone.client import JobPoller, JobsClient
    from voiceclone.services.backoff import BackoffPolicy

    settings = get_settings()

    def print_update(job):
        line = f"{job.id}  {job.state.value:<13} {job.progress:>3}%  {job.name}"
        if job.error:
            line += f"  ({job.error})"
        print(line)

    def print_terminal(job):
        outcome = job.result_ref if job.result_ref else job.error
        print(f"{job.id} finished: {job.state.value} {outcome or ''}".rstrip())

    async def watch() -> None:
        client = JobsClient(
            api_url=args.api_url,
            backoff=BackoffPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay,
            ),
        )
        poller = JobPoller(
            client,
            user_id=args.user_id,
            interval=args.interval or settings.poll_interval_seconds,
            on_update=print_update,
            on_terminal=print_terminal,
        )
        try:
            await poller.refresh()
            if not poller.polling_enabled:
                print("No outstanding jobs")
                return
            await poller.wait_idle()
        finally:
            await poller.stop()
            await client.close()

    asyncio.run(watch())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="voiceclone", description="Voice clone pipeline")
    parser.add_argument("--log-level", type=str, default=None, help="Log level (default from settings)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    combine = subparsers.add_parser("combine", help="Combine recordings into a 44.1kHz mono WAV")
    combine.add_argument("output", type=str, help="Output WAV file")
    combine.add_argument("inputs", type=str, nargs="+", help="Input recordings")
    combine.set_defaults(func=cmd_combine)

    analyze = subparsers.add_parser("analyze", help="Print a recording's quality report")
    analyze.add_argument("input", type=str, help="Recording to analyze")
    analyze.set_defaults(func=cmd_analyze)

    serve = subparsers.add_parser("serve", help="Run the API server")
    serve.add_argument("--host", type=str, default=None, help="Server host")
    serve.add_argument("--port", type=int, default=None, help="Server port")
    serve.set_defaults(func=cmd_serve)

    watch = subparsers.add_parser("watch", help="Follow a user's jobs until none is outstanding")
    watch.add_argument("--user-id", type=str, required=True, help="Owner of the jobs")
    watch.add_argument("--api-url", type=str, default="http://localhost:8000", help="API base URL")
    watch.add_argument("--interval", type=float, default=None, help="Polling interval in seconds")
    watch.set_defaults(func=cmd_watch)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(
        level=args.log_level or settings.log_level,
        json_format=False,
        service_name=settings.service_name,
    )

    try:
        return args.func(args)
    except VoiceCloneError as exc:
        logger.debug("Command failed", extra={"error_code": exc.code, "details": exc.details})
        print(f"error: {exc.message} [{exc.code}]", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
