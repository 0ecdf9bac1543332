from __future__ import annotations

import argparse
import asyncio
import os
import sys

from pydantic import ValidationError

from defertest.config import Settings, get_settings
from defertest.lifecycle import LifecycleController
from defertest.observability.logging import configure_logging
from defertest.runner import run
from defertest.version import version_line


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="defertest",
        description="Deferred-cleanup timing demo exposing Prometheus metrics",
    )
    parser.add_argument("-version", "--version", action="store_true", help="Print build commit and date, then exit")
    parser.add_argument(
        "-promListen",
        "--promListen",
        dest="prom_listen",
        default=None,
        help="Prometheus http listening socket (host:port). Default = :9901",
    )
    parser.add_argument(
        "-promPath",
        "--promPath",
        dest="prom_path",
        default=None,
        help="Prometheus http path. Default = /metrics",
    )
    parser.add_argument("-dl", "--dl", dest="debug_level", type=int, default=None, help="Debug level. Default = 11")
    return parser


def settings_from_args(args: argparse.Namespace, base: Settings | None = None) -> Settings:
    base = base or get_settings()
    overrides = {
        key: value
        for key, value in (
            ("prom_listen", args.prom_listen),
            ("prom_path", args.prom_path),
            ("debug_level", args.debug_level),
        )
        if value is not None
    }
    if not overrides:
        return base
    # model_copy skips validation; rebuild so bad flags fail at startup.
    return Settings(**{**base.model_dump(), **overrides})


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            settings = get_settings()
        except ValidationError:
            # Nothing is bound here, so a broken PROM_* env must not hide the build info.
            print(version_line())
        else:
            print(version_line(settings))
        return 0

    try:
        settings = settings_from_args(args)
    except ValidationError as exc:
        parser.error(str(exc))
    configure_logging(settings.log_level)

    lifecycle = LifecycleController()
    exit_code = asyncio.run(run(settings, lifecycle=lifecycle))

    if lifecycle.terminating:
        # A console read may still be blocked on its daemon thread; leave without joining it.
        sys.stdout.flush()
        sys.stderr.flush()
        os._exit(exit_code)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
