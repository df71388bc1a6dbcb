from __future__ import annotations

import argparse
import logging
import os
import sys
import uuid

import uvicorn

from app.api.http_app import build_app
from app.logging_setup import configure_logging
from app.roles import SUPPORTED_ROLES, validate_role
from app.services.bootstrap import build_runtime_container

API_PORT = 8000
WORKER_PORT = 8100


def default_port(role: str) -> int:
    return API_PORT if role == "api" else WORKER_PORT


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Song fulfillment runtime entrypoint")
    parser.add_argument("--role", required=True, help="Runtime role: api, or a sweep worker")
    parser.add_argument("--host", default=os.getenv("APP_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument(
        "--dry-run-startup",
        action="store_true",
        help="Validate role and settings, then exit",
    )
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        role = validate_role(args.role)
    except ValueError as exc:
        supported = ", ".join(SUPPORTED_ROLES)
        sys.stderr.write(f"ERROR: {exc}\n")
        sys.stderr.write(f"Try one of: {supported}\n")
        return 2

    configure_logging()
    run_id = str(uuid.uuid4())
    logger = logging.getLogger("runtime")
    log_extra = {"role": role.name, "service": role.name, "run_id": run_id}
    logger.info("runtime initialized", extra=log_extra)

    if args.dry_run_startup:
        logger.info("dry-run startup complete", extra=log_extra)
        return 0

    container = build_runtime_container(role)
    port = args.port if args.port is not None else default_port(role.name)
    app = build_app(
        role=role.name,
        run_id=run_id,
        worker_loop=container.worker_loop,
        api_deps=container.api_deps,
        on_startup=container.on_startup,
        on_shutdown=container.on_shutdown,
    )
    logger.info("serving", extra={**log_extra, "port": port, "worker_loop": container.worker_loop is not None})
    uvicorn.run(app, host=args.host, port=port, log_level="warning")
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
