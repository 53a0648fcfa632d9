"""Command-line entry point for the merino SOCKS5 proxy."""

from __future__ import annotations

import argparse
import asyncio
import csv
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from merino.protocol import AuthMethod, User
from merino.server import Merino

logger = logging.getLogger("merino")

VERSION = "0.1.4"
LOG_ENV_VAR = "MERINO_LOG"
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOGO = r"""
                      _
  _ __ ___   ___ _ __(_)_ __   ___
 | '_ ` _ \ / _ \ '__| | '_ \ / _ \
 | | | | | |  __/ |  | | | | | (_) |
 |_| |_| |_|\___|_|  |_|_| |_|\___/

 A SOCKS5 Proxy server
"""

_VERBOSITY_LEVELS = {1: logging.DEBUG, 2: TRACE}
_QUIET_LEVEL = logging.CRITICAL + 1


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line options; exits with a usage message on bad input."""
    parser = argparse.ArgumentParser(
        prog="merino", description="A SOCKS5 proxy server."
    )
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument(
        "-p", "--port", type=int, default=1080, help="Set port to listen on"
    )
    parser.add_argument("-i", "--ip", default="127.0.0.1", help="Set ip to listen on")
    parser.add_argument(
        "--allow-insecure", action="store_true", help="Allow insecure configuration"
    )

    auth = parser.add_mutually_exclusive_group(required=True)
    auth.add_argument(
        "--no-auth", action="store_true", help="Allow unauthenticated connections"
    )
    auth.add_argument(
        "-u", "--users", type=Path, help="CSV File with username/password pairs"
    )

    log = parser.add_mutually_exclusive_group()
    log.add_argument(
        "-v",
        dest="verbosity",
        action="count",
        default=0,
        help=f"Log verbosity level. -vv for more verbosity. "
        f"The {LOG_ENV_VAR} environment variable overrides this flag!",
    )
    log.add_argument(
        "-q",
        dest="quiet",
        action="store_true",
        help=f"Do not output any logs (even errors!). Overrides {LOG_ENV_VAR}",
    )

    opts = parser.parse_args(argv)
    if not 0 <= opts.port <= 0xFFFF:
        parser.error(f"port out of range: {opts.port}")
    return opts


def _level_from_name(name: str) -> Optional[int]:
    name = name.strip().upper()
    if not name:
        return None
    if name == "TRACE":
        return TRACE
    if name == "OFF":
        return _QUIET_LEVEL
    if name == "WARN":
        name = "WARNING"
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else None


def _parse_filter(spec: str) -> int:
    """Read a level from a filter like 'debug' or 'merino=debug,other=info'."""
    level = logging.ERROR
    for entry in spec.split(","):
        target, sep, value = entry.partition("=")
        if sep:
            if target.strip() != "merino":
                continue
            parsed = _level_from_name(value)
        else:
            parsed = _level_from_name(target)
        if parsed is not None:
            level = parsed
    return level


def configure_logging(verbosity: int, quiet: bool) -> Optional[int]:
    """Set up the merino logger; return the level chosen, or None when silenced."""
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = False

    if quiet:
        logger.setLevel(_QUIET_LEVEL)
        logger.addHandler(logging.NullHandler())
        return None

    spec = os.environ.get(LOG_ENV_VAR)
    if spec is None:
        level = _VERBOSITY_LEVELS.get(verbosity, logging.INFO)
        fmt = "%(levelname)-5s %(name)s > %(message)s"
    else:
        level = _parse_filter(spec)
        fmt = "%(asctime)s %(levelname)-5s %(name)s > %(message)s"

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(handler)
    logger.setLevel(level)

    if spec is not None and verbosity != 0:
        logger.warning(
            "Log level is overriden by environmental variable to `%s`", spec
        )
    return level


def load_users(path, allow_insecure: bool = False) -> list[User]:
    """Load username/password pairs from a CSV file with a header row."""
    path = Path(path)
    try:
        handle = path.open(newline="", encoding="utf-8")
    except OSError as exc:
        raise OSError(exc.errno, f"Can't open file {str(path)!r}: {exc.strerror}") from exc

    with handle:
        mode = os.fstat(handle.fileno()).st_mode
        # Any permission bit for "others" makes the file too open.
        if mode & 0o7 and not allow_insecure:
            raise PermissionError(
                f"Permissions {mode & 0o777:o} for {str(path)!r} are too open. "
                "It is recommended that your users file is NOT accessible by others. "
                "To override this check, set --allow-insecure"
            )

        reader = csv.DictReader(handle)
        users = []
        for record in reader:
            if None in record:
                raise ValueError(
                    f"CSV error: record on line {reader.line_num} has too many fields"
                )
            username = record.get("username")
            secret = record.get("password")
            if username is None or secret is None:
                missing = "username" if username is None else "password"
                raise ValueError(
                    f"CSV deserialize error: record on line {reader.line_num}: "
                    f"missing field `{missing}`"
                )
            logger.log(TRACE, "Loaded user: %s", username)
            users.append(User(username, secret))

    if not users:
        raise ValueError(f"No users loaded from {str(path)!r}. Check configuration.")
    return users


async def _run(port: int, ip: str, auth_methods: list[int], users: list[User]) -> None:
    async with await Merino.create(port, ip, auth_methods, users, None) as server:
        await server.serve()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the proxy server; return the process exit status."""
    print(LOGO)
    opts = parse_args(argv)
    configure_logging(opts.verbosity, opts.quiet)

    auth_methods: list[int] = []
    if opts.no_auth:
        auth_methods.append(AuthMethod.NO_AUTH)

    users: list[User] = []
    if opts.users is not None:
        auth_methods.append(AuthMethod.USER_PASS)
        try:
            users = load_users(opts.users, opts.allow_insecure)
        except (OSError, ValueError) as exc:
            logger.error("%s", exc)
            return 1

    try:
        asyncio.run(_run(opts.port, opts.ip, auth_methods, users))
    except OSError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())