from __future__ import annotations

import argparse
import os
import sys

APP_PATH = "thinktree.api.app:app"
_TRUTHY = {"1", "true", "yes", "y", "on"}


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve the thinktree HTTP API with uvicorn.")
    parser.add_argument("--host", default=os.getenv("THINKTREE_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("THINKTREE_PORT", "8000")))
    parser.add_argument(
        "--reload",
        action=argparse.BooleanOptionalAction,
        default=_env_flag("THINKTREE_RELOAD", "0"),
        help="Restart on code changes (default: env THINKTREE_RELOAD).",
    )
    parser.add_argument("--log-level", default=os.getenv("THINKTREE_LOG_LEVEL", "info"))
    args = parser.parse_args(argv)
    if not 0 < args.port < 65536:
        parser.error(f"--port must be in [1..65535], got {args.port}")
    return args


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    try:
        import uvicorn
    except ImportError as e:
        print(f"uvicorn is not installed: {e}", file=sys.stderr)
        return 1

    uvicorn.run(APP_PATH, host=args.host, port=args.port, reload=args.reload, log_level=args.log_level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
