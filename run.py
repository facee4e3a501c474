#!/usr/bin/env python3
"""
Entry point for the delivery pipeline.

Starts the API server, or with ``trigger`` executes one pipeline run in the
foreground and exits with its outcome.
"""

import argparse
import sys

import uvicorn

from delivery_pipeline.config.settings import get_settings
from delivery_pipeline.utils.logging import setup_logging
from delivery_pipeline.wiring import build_components, build_scheduler


def serve(args, settings):
    uvicorn.run(
        "delivery_pipeline.main:app",
        host=args.host or settings.api.host,
        port=args.port or settings.api.port,
        reload=args.reload or settings.api.reload,
        log_level=settings.logging.level.lower(),
    )
    return 0


def trigger(args, settings):
    setup_logging(settings.logging)
    components = build_components(settings)
    scheduler = build_scheduler(settings, components)
    try:
        pipeline_run = scheduler.trigger(
            resolved_source_version=args.source_version,
            triggered_by="cli",
        )
        pipeline_run = scheduler.wait(pipeline_run.id)
    finally:
        scheduler.shutdown(wait=True)
        components.shutdown(wait=True)

    print(f"Pipeline run {pipeline_run.id} (build {pipeline_run.build_number}): {pipeline_run.status}")
    if pipeline_run.error_kind:
        print(f"{pipeline_run.error_kind}: {pipeline_run.error_message}")
    return 0 if pipeline_run.status == "succeeded" else 1


def main():
    parser = argparse.ArgumentParser(description="Delivery Pipeline")
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the API server (default)")
    serve_parser.add_argument("--host", type=str, default=None, help="Host to run the application on")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to run the application on")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    trigger_parser = subparsers.add_parser("trigger", help="Execute one pipeline run and wait for it")
    trigger_parser.add_argument(
        "--source-version",
        type=str,
        default=None,
        help="Commit to build. Omit to build the branch head",
    )

    args = parser.parse_args()
    settings = get_settings()

    if args.command == "trigger":
        return trigger(args, settings)

    if args.command is None:
        args = serve_parser.parse_args([])
    return serve(args, settings)


if __name__ == "__main__":
    sys.exit(main())
