"""
OAuth 2.1 Authorization Server over HTTP

Runs the authorization engine behind FastAPI/uvicorn.

Usage:
    python server_oauth_http.py --port 8080 --log-format json

Configuration comes from environment variables (optionally a ``.env`` file);
see ``utils/config_manager.py``.
"""

import contextvars
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request

from auth.oauth2_audit import AuditSink, LoggingAuditSink
from auth.oauth2_clients import ClientRegistry
from auth.oauth2_endpoints import create_oauth_router
from auth.oauth2_server import OAuth2Server, build_client_record
from auth.oauth2_storage import TimeoutStorage, create_storage_provider
from utils.config_manager import ConfigManager

logger = logging.getLogger(__name__)

# Correlation ID context for logs
_cid_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")

TEXT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - cid=%(cid)s - %(message)s"


class CidLogFilter(logging.Filter):
    """Inject correlation id from context into log records as record.cid."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.cid = _cid_ctx.get()
        return True


class JSONLogFormatter(logging.Formatter):
    """Simple structured JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "cid": getattr(record, "cid", "-"),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(level: str = "INFO", log_format: str = "text") -> None:
    """Configure the root logger once for the process."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not root.handlers:
        root.addHandler(logging.StreamHandler())
    for handler in root.handlers:
        if log_format == "json":
            handler.setFormatter(JSONLogFormatter())
        else:
            handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT))
        handler.addFilter(CidLogFilter())


def build_server(config: ConfigManager, audit: Optional[AuditSink] = None) -> OAuth2Server:
    """Assemble an OAuth2Server from configuration. Storage connects in the app lifespan."""
    registry = ClientRegistry(build_client_record(c) for c in config.clients)
    provider = create_storage_provider(
        config.storage.backend,
        **(config.storage.redis_options() if config.storage.backend == "redis" else {}),
    )
    return OAuth2Server(
        config.oauth2,
        registry,
        TimeoutStorage(provider, config.oauth2.storage_timeout),
        audit or LoggingAuditSink(),
    )


def create_app(server: OAuth2Server) -> FastAPI:
    """Create the FastAPI application serving ``server``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await server.initialize()
        try:
            yield
        finally:
            await server.shutdown()

    app = FastAPI(title="OAuth 2.1 Authorization Server", lifespan=lifespan)
    app.state.oauth2_server = server

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        # Reuse inbound request id if provided
        corr_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.correlation_id = corr_id
        token = _cid_ctx.set(corr_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            duration_ms = int((time.perf_counter() - start) * 1000)
            response.headers["X-Request-ID"] = corr_id
            logger.info(f"{request.method} {request.url.path} {response.status_code} dur_ms={duration_ms}")
            return response
        finally:
            _cid_ctx.reset(token)

    app.include_router(create_oauth_router(server), tags=["oauth"])
    return app


def main():
    """Main entry point for the server."""
    import argparse

    import uvicorn

    env_file = Path(__file__).parent / ".env"
    if env_file.exists():
        load_dotenv(dotenv_path=env_file)
    else:
        load_dotenv()

    parser = argparse.ArgumentParser(description="OAuth 2.1 Authorization Server")
    parser.add_argument("--host", help="Host to bind to (default: env HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to bind to (default: env PORT or 8080)")
    parser.add_argument("--log-level", help="Logging level (default: env LOG_LEVEL or INFO)")
    parser.add_argument("--log-format", choices=["text", "json"], help="Log format (default: env LOG_FORMAT or text)")
    args = parser.parse_args()

    config = ConfigManager()
    host = args.host or config.server.host
    port = args.port or config.server.port
    log_level = (args.log_level or config.server.log_level).upper()
    configure_logging(log_level, args.log_format or config.server.log_format)

    for issue in config.validate_configuration():
        logger.warning(f"Configuration: {issue}")

    app = create_app(build_server(config))
    logger.info(f"Starting OAuth 2.1 server on {host}:{port} (issuer={config.oauth2.issuer})")
    uvicorn.run(app, host=host, port=port, log_level=log_level.lower(), log_config=None)


if __name__ == "__main__":
    main()
