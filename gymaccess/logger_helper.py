import gzip
import logging
import os
import shutil
import sys
import time
from logging.handlers import TimedRotatingFileHandler

from fastapi import Request

from .settings import LOG_BACKUP_COUNT, LOG_FILE, LOG_MAX_SIZE

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
MAX_LOGGED_BODY = 1000

# Request bodies of these path prefixes are never written to the log
UNLOGGED_BODY_PREFIXES = ("/biometrics/members/",)


def _compress_old_log(source_path):
    if os.path.exists(source_path):
        compressed_path = f"{source_path}.gz"
        with open(source_path, "rb") as f_in, gzip.open(compressed_path, "wb") as f_out:
            shutil.copyfileobj(f_in, f_out)
        os.remove(source_path)


def _rotating_file_handler(log_file: str, max_size: int, backup_count: int) -> TimedRotatingFileHandler:
    """
    Weekly rotation (Monday midnight) plus a size cap; rotated files are
    gzip-compressed.
    """
    handler = TimedRotatingFileHandler(
        log_file,
        when="W0",
        backupCount=backup_count,
        encoding="utf-8",
    )

    old_emit = handler.emit

    def emit_with_size_check(record):
        if os.path.exists(log_file) and os.path.getsize(log_file) >= max_size:
            handler.doRollover()
        old_emit(record)

    old_do_rollover = handler.doRollover

    def do_rollover_and_compress():
        old_do_rollover()
        log_dir = os.path.dirname(log_file) or "."
        base = os.path.basename(log_file)
        for name in os.listdir(log_dir):
            if name.startswith(base) and name != base and not name.endswith(".gz"):
                path = os.path.join(log_dir, name)
                if os.path.isfile(path):
                    _compress_old_log(path)

    handler.emit = emit_with_size_check
    handler.doRollover = do_rollover_and_compress
    return handler


def setup_logger(log_file: str = LOG_FILE, max_size: int = LOG_MAX_SIZE,
                 backup_count: int = LOG_BACKUP_COUNT, level: int = logging.INFO) -> logging.Logger:
    """
    Configure the ``gymaccess`` logger: console output, plus the rotating
    file when ``log_file`` is set. Safe to call more than once.
    """
    logger = logging.getLogger("gymaccess")
    logger.setLevel(level)
    if getattr(logger, "_gymaccess_configured", False):
        return logger

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        handler = _rotating_file_handler(log_file, max_size, backup_count)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger._gymaccess_configured = True
    return logger


def _loggable_body(path: str, content_type: str, body_bytes: bytes) -> str:
    if not body_bytes:
        return ""
    if path.startswith(UNLOGGED_BODY_PREFIXES) or content_type.startswith("multipart/"):
        return f"<{len(body_bytes)} bytes omitted>"
    text = body_bytes.decode("utf-8", errors="replace")
    if len(text) > MAX_LOGGED_BODY:
        text = text[:MAX_LOGGED_BODY] + "..."
    return text


def create_logging_middleware(app, logger):
    """
    Adds a middleware logging method, path, status, duration and client IP.
    Headers are not logged, so bearer tokens and webhook secrets stay out
    of the file.
    """
    @app.middleware("http")
    async def log_request_response_time(request: Request, call_next):
        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "-"
        method = request.method
        path = request.url.path

        try:
            body_bytes = await request.body()
            request_body = _loggable_body(path, request.headers.get("content-type", ""), body_bytes)
        except Exception:
            request_body = "<Failed to read body>"

        response = await call_next(request)
        process_time = time.perf_counter() - start_time

        logger.info(
            f"IP={client_ip} | {method} {path} | Status={response.status_code} | "
            f"Time={process_time:.4f}s | RequestBody={request_body}"
        )
        response.headers["X-Process-Time"] = str(round(process_time, 4))
        return response

    return app
