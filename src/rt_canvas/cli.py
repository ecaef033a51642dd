"""Command line entry point: start or join a canvas session and serve it."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import uvicorn

from rt_canvas.core.config import Settings, get_settings
from rt_canvas.core.logging import configure_logging
from rt_canvas.main import create_app
from rt_canvas.services import persistence
from rt_canvas.services.session import SessionEvent, SessionEventKind, SessionManager


logger = logging.getLogger("rt_canvas.cli")


def parse_arguments(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Peer-to-peer collaborative ASCII canvas node.")
    parser.add_argument(
        "file",
        nargs="?",
        default=None,
        help="Operation-set file to load on start and save on shutdown.",
    )
    parser.add_argument(
        "--join",
        metavar="TICKET",
        default=None,
        help="Join an existing session using a ticket printed by another peer.",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        default=None,
        help="Disable all peer connections and broadcasts.",
    )
    parser.add_argument("--host", dest="listen_host", default=None, help="Interface for the peer listener.")
    parser.add_argument("--port", dest="listen_port", type=int, default=None, help="TCP port for the peer listener.")
    parser.add_argument("--name", dest="display_name", default=None, help="Display name shown to other peers.")
    parser.add_argument("--log-level", dest="log_level", default=None, help="Logging level (DEBUG, INFO, ...).")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace, base: Optional[Settings] = None) -> Settings:
    base = base or get_settings()
    overrides: Dict[str, Any] = {
        key: getattr(args, key)
        for key in ("listen_host", "listen_port", "display_name", "log_level", "offline")
        if getattr(args, key, None) is not None
    }
    return base.model_copy(update=overrides)


def _announce(event: SessionEvent) -> None:
    if event.kind == SessionEventKind.peer_status:
        logger.info("%d peer(s) connected", event.peer_count)
    elif event.kind == SessionEventKind.error:
        logger.warning("session %s: %s", event.document_id, event.message)


def build_app(args: argparse.Namespace, settings: Settings):
    manager = SessionManager(settings)
    file_path = Path(args.file) if args.file else None

    async def on_startup(manager: SessionManager) -> None:
        if args.join:
            session = await manager.join_session(args.join)
        elif file_path is not None and file_path.exists():
            document_id, ops = persistence.load_file(file_path)
            session = await manager.create_session(document_id, ops)
        else:
            session = await manager.create_session()
        session.subscribe(_announce)
        if session.ticket is not None:
            logger.info("session %s ready, share this ticket: %s", session.document_id, session.ticket.encode())
        else:
            logger.info("session %s ready (%s)", session.document_id, session.mode)

    async def on_shutdown(manager: SessionManager) -> None:
        if file_path is None:
            return
        for session in manager.sessions():
            session.save(file_path)

    return create_app(manager, settings, on_startup=on_startup, on_shutdown=on_shutdown)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_arguments(argv)
    settings = build_settings(args)
    configure_logging(settings.log_level, settings.log_file)
    app = build_app(args, settings)
    logger.info("listening for peers on %s:%d", settings.listen_host, settings.listen_port)
    uvicorn.run(app, host=settings.listen_host, port=settings.listen_port, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
