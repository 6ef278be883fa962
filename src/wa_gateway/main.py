from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import sys
from pathlib import Path

import dotenv
import uvloop

from wa_gateway.api import ApiServer, create_app
from wa_gateway.const import WA_LOG_NAME, WA_VERSION, env_bool
from wa_gateway.correlation import correlation_context, ensure_correlation_id
from wa_gateway.exceptions import SessionFactoryError
from wa_gateway.logging_abstraction import get_logger
from wa_gateway.notifier import EventNotifier
from wa_gateway.runtime_config import RuntimeConfigStore
from wa_gateway.session import SessionController
from wa_gateway.shutdown import GracefulShutdown, bind_signals
from wa_gateway.structs import GatewaySettings, SessionFactory
from wa_gateway.webhook import WebhookForwarder

logger = get_logger(__name__)

API_SERVER_START_TASK_NAME = "api_server_start"


def _configure_third_party_loggers() -> None:
    """Route uvicorn and aiohttp through one compact stdout handler."""
    uv_handler = logging.StreamHandler(sys.stdout)
    uv_handler.setLevel(logging.INFO)
    uv_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s.%(msecs)d %(levelname)s (%(name)s) > %(message)s",
            "%m/%d/%y %H:%M:%S",
        ),
    )
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        _ul = logging.getLogger(name)
        _ul.setLevel(logging.INFO)
        _ul.propagate = False
        _ul.addHandler(uv_handler)

    aiohttp_logger = logging.getLogger("aiohttp")
    aiohttp_logger.setLevel(logging.WARNING)
    aiohttp_logger.propagate = False
    aiohttp_logger.addHandler(uv_handler)


def _enable_debug() -> None:
    for name in list(logging.Logger.manager.loggerDict):
        if name == WA_LOG_NAME or name.startswith(f"{WA_LOG_NAME}."):
            _gl = logging.getLogger(name)
            _gl.setLevel(logging.DEBUG)
            for handler in _gl.handlers:
                handler.setLevel(logging.DEBUG)


def parse_cli(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Messaging session gateway")
    parser.add_argument(
        "-D",
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )
    _ = parser.add_argument("--env", help="Path to the environment file", default=None, type=Path)
    args = parser.parse_args(argv)

    if args.env:
        env_path = args.env.expanduser().resolve()
        if not env_path.exists():
            logger.error(
                "Environment file not found",
                extra={"path": str(env_path)},
            )
        elif dotenv.load_dotenv(env_path, override=True):
            logger.info(
                " Environment variables loaded",
                extra={"source": str(env_path)},
            )
        else:
            logger.warning(
                "No environment variables loaded from file",
                extra={"path": str(env_path)},
            )

    if args.debug or env_bool("WA_DEBUG"):
        _enable_debug()
        logger.info("Debug mode enabled")
    return args


def load_session_factory(target: str | None) -> SessionFactory:
    """Resolve a ``module:attribute`` reference to the protocol library's session factory.

    Raises:
        SessionFactoryError: the reference is missing, malformed, or does not resolve to a callable.

    """
    if not target:
        raise SessionFactoryError(target, "WA_SESSION_FACTORY is not set")
    module_name, sep, attr_path = target.partition(":")
    if not sep or not module_name or not attr_path:
        raise SessionFactoryError(target, "expected 'module:attribute'")
    try:
        obj: object = importlib.import_module(module_name)
    except ImportError as e:
        raise SessionFactoryError(target, str(e)) from e
    for attr in attr_path.split("."):
        try:
            obj = getattr(obj, attr)
        except AttributeError as e:
            raise SessionFactoryError(target, f"no attribute {attr!r}") from e
    if not callable(obj):
        raise SessionFactoryError(target, "not callable")
    return obj  # type: ignore[return-value]


async def run_gateway(settings: GatewaySettings, session_factory: SessionFactory) -> int:
    """Wire the components together, serve until shutdown completes, and return the exit code."""
    _ = ensure_correlation_id()
    loop = asyncio.get_running_loop()

    runtime_config = RuntimeConfigStore(
        settings.runtime_config_path,
        default_pair_phone=settings.pair_phone,
        default_external_endpoint=settings.external_endpoint,
    )
    webhook = WebhookForwarder(runtime_config.get_external_endpoint, settings.port, settings.webhook_timeout)
    controller = SessionController(
        settings,
        session_factory,
        notifier=EventNotifier(),
        runtime_config=runtime_config,
        webhook=webhook,
    )
    server = ApiServer(create_app(controller, runtime_config), settings.host, settings.port)
    shutdown = GracefulShutdown(controller, server, webhook, settings.shutdown_timeout)
    bind_signals(loop, shutdown)

    logger.info(
        " Starting session gateway",
        extra={
            "session_dir": str(settings.session_dir),
            "admin_mode": settings.admin_mode,
            "webhook": bool(runtime_config.get_external_endpoint()),
        },
    )
    server.start_task = loop.create_task(server.start(), name=API_SERVER_START_TASK_NAME)
    await controller.start()

    _ = await shutdown.done.wait()
    return shutdown.exit_code


def main() -> None:
    """Main entry point for the session gateway."""
    with correlation_context():
        _configure_third_party_loggers()
        logger.info(
            "Starting session gateway",
            extra={"version": WA_VERSION},
        )
        _ = parse_cli()
        settings = GatewaySettings.from_env()

        try:
            session_factory = load_session_factory(settings.session_factory)
        except SessionFactoryError:
            logger.exception("Cannot start without a session factory")
            sys.exit(2)

        exit_code = 1
        try:
            exit_code = uvloop.run(run_gateway(settings, session_factory))
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down...")
            exit_code = 0
        except Exception as e:
            logger.exception(
                " Fatal error in main loop",
                extra={"error": str(e)},
            )
        else:
            logger.info(" Session gateway stopped gracefully")
        finally:
            logger.info("Session gateway shutdown complete", extra={"exit_code": exit_code})
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
