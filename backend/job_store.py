"""Render jobs for the chat video backend, mirrored to ``jobs.json``.

Each job owns ``<data_dir>/<job_id>/``: a ``work/`` scratch directory and the
published ``conversation.mp4``. The table itself is a single JSON document
rewritten after every change, listing jobs in submission order.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
import json
import shutil
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, Mapping, Tuple

from domain.chat_video import (
    INVALID_REQUEST_CODE,
    ChatVideoPipelineError,
    ChatVideoValidationError,
    Message,
    VoiceSettings,
    parse_messages,
    parse_voice_settings,
)
from service.conversation_job import ConversationRequest

STORE_FILE_NAME = "jobs.json"
WORK_DIR_NAME = "work"
VIDEO_FILE_NAME = "conversation.mp4"

JOB_STATE_CODE = "chat_video_backend.job.invalid_state"
JOB_TRANSITION_CODE = "chat_video_backend.job.invalid_transition"
JOB_NOT_FOUND_CODE = "chat_video_backend.job.not_found"
STORAGE_CODE = "chat_video_backend.storage.failed"


class JobStatus(str, Enum):
    """Lifecycle states for render jobs."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def finished(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: (JobStatus.RUNNING, JobStatus.FAILED),
    JobStatus.RUNNING: (JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED),
    JobStatus.COMPLETED: (),
    JobStatus.FAILED: (),
}


def read_optional_text(payload: Mapping[str, object], key: str) -> str | None:
    """Return a trimmed string field, or None when absent or blank."""
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ChatVideoValidationError(INVALID_REQUEST_CODE, f"{key} must be a string")
    return value.strip() or None


@dataclass(frozen=True)
class ChatVideoSubmission:
    """A conversation posted to the backend.

    Persisted in the same camelCase shape clients submit, so stored jobs
    re-validate through the request parser on load.
    """

    messages: Tuple[Message, ...]
    background_video: str
    voices: VoiceSettings
    chat_frame: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> ChatVideoSubmission:
        messages = parse_messages(payload.get("messages"))
        if not messages:
            raise ChatVideoValidationError(
                INVALID_REQUEST_CODE, "messages must be non-empty"
            )
        background_video = read_optional_text(payload, "backgroundVideoUrl")
        if background_video is None:
            raise ChatVideoValidationError(
                INVALID_REQUEST_CODE, "backgroundVideoUrl is required"
            )
        return cls(
            messages=messages,
            background_video=background_video,
            voices=parse_voice_settings(payload.get("voiceSettings")),
            chat_frame=read_optional_text(payload, "chatFrameUrl"),
        )

    def to_payload(self) -> dict[str, object]:
        return {
            "messages": [
                {"text": message.text, "sender": message.sender.value}
                for message in self.messages
            ],
            "backgroundVideoUrl": self.background_video,
            "chatFrameUrl": self.chat_frame,
            "voiceSettings": {
                "person1Voice": self.voices.person1_voice,
                "person2Voice": self.voices.person2_voice,
            },
        }

    def to_request(self) -> ConversationRequest:
        """Build the render request for this submission."""
        return ConversationRequest(
            messages=self.messages,
            background_video=self.background_video,
            voices=self.voices,
            chat_frame=self.chat_frame,
        )


@dataclass(frozen=True)
class ChatVideoJob:
    """Snapshot of one render job."""

    job_id: str
    created_at: float
    submission: ChatVideoSubmission
    status: JobStatus = JobStatus.QUEUED
    message: str = "Queued"
    progress: float = 0.0
    started_at: float | None = None
    completed_at: float | None = None

    def __post_init__(self) -> None:
        if not self.job_id:
            raise ChatVideoPipelineError(JOB_STATE_CODE, "job id is required")
        if not 0.0 <= self.progress <= 1.0:
            raise ChatVideoPipelineError(
                JOB_STATE_CODE, f"progress must be between 0 and 1: {self.progress}"
            )
        if (self.status == JobStatus.QUEUED) != (self.started_at is None):
            raise ChatVideoPipelineError(
                JOB_STATE_CODE, "only queued jobs may lack started_at"
            )
        if self.status.finished != (self.completed_at is not None):
            raise ChatVideoPipelineError(
                JOB_STATE_CODE, "only finished jobs may have completed_at"
            )

    def to_record(self) -> dict[str, object]:
        return {
            "job_id": self.job_id,
            "created_at": self.created_at,
            "submission": self.submission.to_payload(),
            "status": self.status.value,
            "message": self.message,
            "progress": self.progress,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_record(cls, record: object) -> ChatVideoJob:
        """Rebuild a job from ``to_record`` output."""
        try:
            if not isinstance(record, dict):
                raise TypeError("job record must be an object")
            submission = record["submission"]
            if not isinstance(submission, dict):
                raise TypeError("submission must be an object")
            return cls(
                job_id=str(record["job_id"]),
                created_at=float(record["created_at"]),
                submission=ChatVideoSubmission.from_payload(submission),
                status=JobStatus(record["status"]),
                message=str(record["message"]),
                progress=float(record["progress"]),
                started_at=optional_float(record.get("started_at")),
                completed_at=optional_float(record.get("completed_at")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ChatVideoPipelineError(
                JOB_STATE_CODE, f"unreadable job record: {exc}"
            ) from exc


def optional_float(value: object) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"expected a number, got {value!r}")
    return float(value)


class JobStore:
    """Thread-safe job table for one data directory."""

    def __init__(
        self,
        data_dir: Path,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self.data_dir = data_dir
        self.clock = clock
        self.id_factory = id_factory
        self.state_path = data_dir / STORE_FILE_NAME
        self.lock = threading.Lock()
        self.jobs = self.read_jobs()

    def read_jobs(self) -> dict[str, ChatVideoJob]:
        """Load the persisted table, keeping submission order."""
        if not self.state_path.exists():
            return {}
        try:
            document = json.loads(self.state_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ChatVideoPipelineError(
                STORAGE_CODE, f"job store load failed: {exc}"
            ) from exc
        records = document.get("jobs") if isinstance(document, dict) else None
        if not isinstance(records, list):
            raise ChatVideoPipelineError(STORAGE_CODE, "job store must list jobs")
        jobs: dict[str, ChatVideoJob] = {}
        for record in records:
            job = ChatVideoJob.from_record(record)
            if job.job_id in jobs:
                raise ChatVideoPipelineError(
                    STORAGE_CODE, f"duplicate job in store: {job.job_id}"
                )
            jobs[job.job_id] = job
        return jobs

    def write_jobs(self) -> None:
        # Callers hold the lock.
        temp_path = self.state_path.with_suffix(".tmp")
        document = {"jobs": [job.to_record() for job in self.jobs.values()]}
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(json.dumps(document), encoding="utf-8")
            temp_path.replace(self.state_path)
        except OSError as exc:
            raise ChatVideoPipelineError(
                STORAGE_CODE, f"job store write failed: {exc}"
            ) from exc

    def job_dir(self, job_id: str) -> Path:
        return self.data_dir / job_id

    def work_dir(self, job_id: str) -> Path:
        return self.job_dir(job_id) / WORK_DIR_NAME

    def video_path(self, job_id: str) -> Path:
        return self.job_dir(job_id) / VIDEO_FILE_NAME

    def require(self, job_id: str) -> ChatVideoJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise ChatVideoPipelineError(JOB_NOT_FOUND_CODE, f"job not found: {job_id}")
        return job

    def submit(self, submission: ChatVideoSubmission) -> ChatVideoJob:
        """Queue a submission under a fresh job id."""
        job = ChatVideoJob(
            job_id=self.id_factory(), created_at=self.clock(), submission=submission
        )
        try:
            self.job_dir(job.job_id).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ChatVideoPipelineError(
                STORAGE_CODE, f"job directory create failed: {exc}"
            ) from exc
        with self.lock:
            if job.job_id in self.jobs:
                raise ChatVideoPipelineError(
                    JOB_STATE_CODE, f"job already exists: {job.job_id}"
                )
            self.jobs[job.job_id] = job
            self.write_jobs()
        return job

    def get_job(self, job_id: str) -> ChatVideoJob | None:
        with self.lock:
            return self.jobs.get(job_id)

    def list_jobs(self) -> list[ChatVideoJob]:
        with self.lock:
            return list(self.jobs.values())

    def advance(
        self, job_id: str, status: JobStatus, message: str, progress: float
    ) -> ChatVideoJob:
        """Move a job along its lifecycle, stamping start and finish times."""
        with self.lock:
            current = self.require(job_id)
            if status not in ALLOWED_TRANSITIONS[current.status]:
                raise ChatVideoPipelineError(
                    JOB_TRANSITION_CODE,
                    f"job {job_id} cannot move from {current.status.value} "
                    f"to {status.value}",
                )
            now = self.clock()
            job = replace(
                current,
                status=status,
                message=message,
                progress=progress,
                started_at=current.started_at if current.started_at is not None else now,
                completed_at=now if status.finished else None,
            )
            self.jobs[job_id] = job
            self.write_jobs()
        return job

    def delete(self, job_id: str) -> ChatVideoJob:
        """Drop a finished job and its files."""
        with self.lock:
            job = self.require(job_id)
            if not job.status.finished:
                raise ChatVideoPipelineError(
                    JOB_TRANSITION_CODE, "only finished jobs can be deleted"
                )
            del self.jobs[job_id]
            self.write_jobs()
        job_dir = self.job_dir(job_id)
        if job_dir.exists():
            try:
                shutil.rmtree(job_dir)
            except OSError as exc:
                raise ChatVideoPipelineError(
                    STORAGE_CODE, f"job files delete failed: {exc}"
                ) from exc
        return job
