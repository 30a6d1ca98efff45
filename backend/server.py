"""HTTP backend service for chat video rendering jobs.

Routes:
    GET    /health
    GET    /api/jobs
    POST   /api/jobs
    GET    /api/jobs/<id>
    GET    /api/jobs/<id>/video
    DELETE /api/jobs/<id>
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import re
import sys
from concurrent import futures
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import BinaryIO, Callable, Mapping, Sequence
from urllib.parse import urlparse

from backend.job_store import (
    JOB_NOT_FOUND_CODE,
    JOB_TRANSITION_CODE,
    ChatVideoJob,
    ChatVideoSubmission,
    JobStatus,
    JobStore,
)
from domain.chat_video import (
    ChatVideoPipelineError,
    ChatVideoValidationError,
    CompositorConfig,
    CompositorError,
)
from service.conversation_job import (
    ConversationRequest,
    MediaTools,
    ProgressCallback,
    run_conversation_job,
)
from service.speech import build_elevenlabs_synthesizer

LOGGER = logging.getLogger("chat_video_backend")

ENV_PREFIX = "CHAT_VIDEO_BACKEND_"
LOG_LEVEL_ENV = ENV_PREFIX + "LOG_LEVEL"

BACKEND_CONFIG_CODE = "chat_video_backend.config.invalid"
BACKEND_REQUEST_CODE = "chat_video_backend.request.invalid"
BACKEND_PATH_CODE = "chat_video_backend.path.not_found"
BACKEND_NOT_READY_CODE = "chat_video_backend.job.not_ready"
BACKEND_OUTPUT_CODE = "chat_video_backend.output.not_found"

ERROR_STATUS = {
    BACKEND_PATH_CODE: HTTPStatus.NOT_FOUND,
    BACKEND_OUTPUT_CODE: HTTPStatus.NOT_FOUND,
    JOB_NOT_FOUND_CODE: HTTPStatus.NOT_FOUND,
    BACKEND_NOT_READY_CODE: HTTPStatus.BAD_REQUEST,
    JOB_TRANSITION_CODE: HTTPStatus.BAD_REQUEST,
}

JOB_PATH = re.compile(r"^/api/jobs/(?P<job_id>[A-Za-z0-9_-]+)(?P<video>/video)?$")

JobRunner = Callable[[str, ConversationRequest, str, str, ProgressCallback], str]


class BackendError(RuntimeError):
    """Backend error with a stable code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


def parse_positive_int(raw_value: str, label: str) -> int:
    """Parse a positive integer from a string."""
    try:
        value = int(raw_value)
    except ValueError as exc:
        raise ValueError(f"{label} must be an integer") from exc
    if value <= 0:
        raise ValueError(f"{label} must be positive")
    return value


@dataclasses.dataclass(frozen=True)
class BackendConfig:
    """Backend configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    data_dir: Path = Path("data/chat_video_backend")
    max_request_bytes: int = 1024 * 1024
    allowed_origins: tuple[str, ...] = ()
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    max_workers: int = 2

    def __post_init__(self) -> None:
        if not self.host.strip():
            raise ValueError("host must be non-empty")
        if not 0 < self.port <= 65535:
            raise ValueError("port must be between 1 and 65535")
        if self.max_request_bytes <= 0 or self.max_workers <= 0:
            raise ValueError("max-request-bytes and max-workers must be positive")
        if not self.ffmpeg_path.strip() or not self.ffprobe_path.strip():
            raise ValueError("ffmpeg and ffprobe paths must be non-empty")

    @property
    def allow_any_origin(self) -> bool:
        return not self.allowed_origins

    def tools(self) -> MediaTools:
        return MediaTools(ffmpeg_path=self.ffmpeg_path, ffprobe_path=self.ffprobe_path)


def parse_origins(raw_value: str) -> tuple[str, ...]:
    """Split a comma-delimited origin list; empty or ``*`` allows any."""
    if raw_value.strip() == "*":
        return ()
    return tuple(value.strip() for value in raw_value.split(",") if value.strip())


# Field name -> parser for values read from flags or CHAT_VIDEO_BACKEND_<FIELD>.
CONFIG_FIELDS: dict[str, Callable[[str], object]] = {
    "host": str,
    "port": lambda raw: parse_positive_int(raw, "port"),
    "data_dir": Path,
    "max_request_bytes": lambda raw: parse_positive_int(raw, "max-request-bytes"),
    "allowed_origins": parse_origins,
    "ffmpeg_path": str,
    "ffprobe_path": str,
    "max_workers": lambda raw: parse_positive_int(raw, "max-workers"),
}


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """Parse backend CLI arguments; unset flags fall back to the environment."""
    parser = argparse.ArgumentParser(prog="chat_video_backend", add_help=True)
    for field_name in CONFIG_FIELDS:
        parser.add_argument("--" + field_name.replace("_", "-"), default=None)
    return parser.parse_args(list(argv))


def load_config(args: argparse.Namespace, env: Mapping[str, str]) -> BackendConfig:
    """Merge CLI flags over environment values over defaults."""
    values: dict[str, object] = {}
    for field_name, parse in CONFIG_FIELDS.items():
        raw_value = getattr(args, field_name)
        if raw_value is None:
            raw_value = env.get(ENV_PREFIX + field_name.upper(), "").strip() or None
        if raw_value is not None:
            values[field_name] = parse(raw_value)
    return BackendConfig(**values)


def configure_logging(env: Mapping[str, str]) -> None:
    """Configure logging; the level comes from CHAT_VIDEO_BACKEND_LOG_LEVEL."""
    level = logging.getLevelName(env.get(LOG_LEVEL_ENV, "INFO").strip().upper())
    logging.basicConfig(
        level=level if isinstance(level, int) else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def read_json_body(
    headers: Mapping[str, str], stream: BinaryIO, max_bytes: int
) -> dict[str, object]:
    """Read a bounded JSON object request body."""
    try:
        content_length = int(headers.get("Content-Length") or "0")
    except ValueError as exc:
        raise BackendError(BACKEND_REQUEST_CODE, "Content-Length must be an integer") from exc
    if content_length <= 0:
        raise BackendError(BACKEND_REQUEST_CODE, "request body is empty")
    if content_length > max_bytes:
        raise BackendError(BACKEND_REQUEST_CODE, "request exceeds max size")
    body = stream.read(content_length)
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BackendError(
            BACKEND_REQUEST_CODE, f"request body is not valid JSON: {exc}"
        ) from exc
    if not isinstance(payload, dict):
        raise BackendError(BACKEND_REQUEST_CODE, "request body must be an object")
    return payload


def build_job_payload(job: ChatVideoJob) -> dict[str, object]:
    """Describe a job for API clients."""
    output_ready = job.status == JobStatus.COMPLETED
    return {
        "job_id": job.job_id,
        "status": job.status.value,
        "message": job.message,
        "progress": job.progress,
        "output_ready": output_ready,
        "video_url": f"/api/jobs/{job.job_id}/video" if output_ready else None,
        "message_count": len(job.submission.messages),
        "created_at": job.created_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
    }


def build_job_runner(config: BackendConfig, env: Mapping[str, str]) -> JobRunner:
    """Bind the conversation pipeline to the backend's tools and credentials."""

    def run(
        job_id: str,
        request: ConversationRequest,
        work_dir: str,
        output_path: str,
        report: ProgressCallback,
    ) -> str:
        return run_conversation_job(
            job_id=job_id,
            request=request,
            work_dir=work_dir,
            output_path=output_path,
            config=CompositorConfig(),
            synthesizer=build_elevenlabs_synthesizer(dict(env)),
            tools=config.tools(),
            report=report,
        )

    return run


def process_job(store: JobStore, job_id: str, runner: JobRunner) -> None:
    """Run one queued job to completion or failure."""
    job = store.advance(job_id, JobStatus.RUNNING, "Preparing conversation", 0.01)

    def report(message: str, progress: float) -> None:
        store.advance(job_id, JobStatus.RUNNING, message, progress)

    try:
        published = runner(
            job_id,
            job.submission.to_request(),
            str(store.work_dir(job_id)),
            str(store.video_path(job_id)),
            report,
        )
    except (ChatVideoValidationError, ChatVideoPipelineError, CompositorError) as exc:
        LOGGER.error("chat_video_backend.job.failed job_id=%s %s: %s", job_id, exc.code, exc)
        store.advance(job_id, JobStatus.FAILED, f"{exc.code}: {exc}", 1.0)
        return
    except Exception as exc:
        LOGGER.exception("chat_video_backend.job.unhandled_error job_id=%s", job_id)
        store.advance(
            job_id,
            JobStatus.FAILED,
            f"chat_video_backend.unhandled_error: {str(exc).strip()}",
            1.0,
        )
        return
    LOGGER.info("chat_video_backend.job.completed job_id=%s output=%s", job_id, published)
    store.advance(job_id, JobStatus.COMPLETED, "Complete", 1.0)


class ChatVideoServer(ThreadingHTTPServer):
    """HTTP server holding the job store and worker pool."""

    def __init__(
        self,
        config: BackendConfig,
        store: JobStore,
        runner: JobRunner,
        executor: futures.Executor,
    ) -> None:
        super().__init__((config.host, config.port), ChatVideoHandler)
        self.config = config
        self.store = store
        self.runner = runner
        self.executor = executor


class ChatVideoHandler(BaseHTTPRequestHandler):
    """Routes API requests to the job store."""

    protocol_version = "HTTP/1.1"
    server: ChatVideoServer

    def log_message(self, format: str, *args: object) -> None:
        LOGGER.debug("%s - %s", self.client_address[0], format % args)

    def send_cors_headers(self) -> None:
        config = self.server.config
        origin = self.headers.get("Origin")
        if config.allow_any_origin:
            self.send_header("Access-Control-Allow-Origin", "*")
        elif origin in config.allowed_origins:
            self.send_header("Access-Control-Allow-Origin", origin)
            self.send_header("Vary", "Origin")

    def send_body(self, status: HTTPStatus, content_type: str, body: bytes) -> None:
        self.send_response(status)
        self.send_cors_headers()
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def send_json(self, status: HTTPStatus, payload: dict[str, object]) -> None:
        self.send_body(
            status, "application/json; charset=utf-8", json.dumps(payload).encode("utf-8")
        )

    def do_OPTIONS(self) -> None:
        self.send_response(HTTPStatus.NO_CONTENT)
        self.send_cors_headers()
        self.send_header("Access-Control-Allow-Methods", "GET,POST,DELETE,OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_GET(self) -> None:
        self.dispatch("GET")

    def do_POST(self) -> None:
        self.dispatch("POST")

    def do_DELETE(self) -> None:
        self.dispatch("DELETE")

    def dispatch(self, method: str) -> None:
        try:
            self.route(method, urlparse(self.path).path)
        except (BackendError, ChatVideoValidationError, ChatVideoPipelineError) as exc:
            fallback = (
                HTTPStatus.INTERNAL_SERVER_ERROR
                if isinstance(exc, ChatVideoPipelineError)
                else HTTPStatus.BAD_REQUEST
            )
            status = ERROR_STATUS.get(exc.code, fallback)
            self.close_connection = True
            self.send_json(status, {"error": f"{exc.code}: {exc}"})

    def route(self, method: str, path: str) -> None:
        store = self.server.store
        if method == "GET" and path == "/health":
            self.send_json(HTTPStatus.OK, {"status": "ok"})
            return
        if method == "GET" and path == "/api/jobs":
            jobs = [build_job_payload(job) for job in store.list_jobs()]
            self.send_json(HTTPStatus.OK, {"jobs": jobs})
            return
        if method == "POST" and path == "/api/jobs":
            self.submit_job()
            return
        match = JOB_PATH.match(path)
        if match is not None and match.group("video") and method == "GET":
            self.send_video(match.group("job_id"))
            return
        if match is not None and not match.group("video"):
            job_id = match.group("job_id")
            if method == "GET":
                self.send_json(HTTPStatus.OK, build_job_payload(store.require(job_id)))
                return
            if method == "DELETE":
                self.send_json(HTTPStatus.OK, build_job_payload(store.delete(job_id)))
                return
        raise BackendError(BACKEND_PATH_CODE, f"no route for {method} {path}")

    def submit_job(self) -> None:
        payload = read_json_body(
            self.headers, self.rfile, self.server.config.max_request_bytes
        )
        submission = ChatVideoSubmission.from_payload(payload)
        job = self.server.store.submit(submission)
        LOGGER.info(
            "chat_video_backend.job.queued job_id=%s messages=%s",
            job.job_id,
            len(submission.messages),
        )
        self.server.executor.submit(
            process_job, self.server.store, job.job_id, self.server.runner
        )
        self.send_json(HTTPStatus.ACCEPTED, build_job_payload(job))

    def send_video(self, job_id: str) -> None:
        store = self.server.store
        if store.require(job_id).status != JobStatus.COMPLETED:
            raise BackendError(BACKEND_NOT_READY_CODE, "job is not complete")
        try:
            body = store.video_path(job_id).read_bytes()
        except OSError as exc:
            raise BackendError(BACKEND_OUTPUT_CODE, f"output not readable: {exc}") from exc
        self.send_body(HTTPStatus.OK, "video/mp4", body)


def serve(config: BackendConfig, runner: JobRunner) -> None:
    """Run the backend HTTP server until interrupted."""
    store = JobStore(config.data_dir)
    with futures.ThreadPoolExecutor(max_workers=config.max_workers) as executor:
        server = ChatVideoServer(config, store, runner, executor)
        LOGGER.info(
            "chat_video_backend.server.started address=%s:%s jobs=%s",
            config.host,
            config.port,
            len(store.list_jobs()),
        )
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            LOGGER.info("chat_video_backend.server.shutdown: received interrupt")
        finally:
            server.server_close()


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint for the backend server."""
    env = dict(os.environ)
    configure_logging(env)
    try:
        config = load_config(parse_args(sys.argv[1:] if argv is None else argv), env)
    except ValueError as exc:
        LOGGER.error("%s: %s", BACKEND_CONFIG_CODE, exc)
        return 1
    serve(config, build_job_runner(config, env))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
