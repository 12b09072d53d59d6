# jobs.py
"""Background job payloads and the Redis-stream job queue.

Every job is a tagged variant (``kind``) carrying only the fields its
handler needs. Payloads are validated with pydantic when they leave the
queue, so workers never see an untyped dict.

Delivery is at-least-once: a message is acknowledged after its handler
returns, and a failed job is re-added with an incremented attempt count
until ``max_attempts`` is reached.
"""
import logging
from typing import Annotated, List, Literal, NamedTuple, Optional, Union

import redis
from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from redis.exceptions import RedisError, ResponseError

from config import QueueConfig

logger = logging.getLogger(__name__)


class InvalidJob(ValueError):
    """A queue message that does not decode to a known job."""


class QueueUnavailable(RuntimeError):
    """Redis could not be reached."""


# ─────────────────────────── payloads ────────────────────────────────────────
class ScanJob(BaseModel):
    kind: Literal["scan"] = "scan"


class TranscodeJob(BaseModel):
    kind: Literal["transcode"] = "transcode"
    media_id: str = Field(..., min_length=1)


class EnrichJob(BaseModel):
    kind: Literal["enrich"] = "enrich"
    media_id: str = Field(..., min_length=1)
    external_id: Optional[str] = None


Job = Annotated[Union[ScanJob, TranscodeJob, EnrichJob], Field(discriminator="kind")]
_job_adapter = TypeAdapter(Job)


def encode_job(job: BaseModel) -> str:
    return job.model_dump_json()


def decode_job(raw) -> Union[ScanJob, TranscodeJob, EnrichJob]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        return _job_adapter.validate_json(raw)
    except (ValidationError, ValueError) as e:
        raise InvalidJob(f"Invalid job payload {raw!r}: {e}") from e


class Delivery(NamedTuple):
    message_id: str
    raw: str
    attempts: int
    job: Optional[BaseModel]
    error: Optional[str] = None


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


# ─────────────────────────── queue ───────────────────────────────────────────
class JobQueue:
    """
    Redis Streams queue with a single consumer group, so each message is
    handed to exactly one worker at a time.
    """

    def __init__(self, client, config: QueueConfig):
        self.client = client
        self.config = config
        self._group_ready = False

    @classmethod
    def from_config(cls, config: QueueConfig) -> "JobQueue":
        client = redis.Redis.from_url(
            config.redis_url,
            socket_timeout=max(config.block_ms / 1000 + 5, 10),
            socket_connect_timeout=3,
        )
        return cls(client, config)

    def ensure_group(self):
        if self._group_ready:
            return
        try:
            self.client.xgroup_create(self.config.stream, self.config.group, id="0", mkstream=True)
            logger.info(f"Created consumer group '{self.config.group}' on '{self.config.stream}'")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._group_ready = True

    def enqueue(self, job: BaseModel, attempts: int = 0) -> str:
        try:
            message_id = self.client.xadd(
                self.config.stream, {"payload": encode_job(job), "attempts": str(attempts)}
            )
        except RedisError as e:
            raise QueueUnavailable(f"Could not enqueue {job.kind} job: {e}") from e
        message_id = _text(message_id)
        logger.info(f"Queued {job.kind} job {message_id}: {encode_job(job)}")
        return message_id

    def read(self, count: int = 1, block_ms: Optional[int] = None) -> List[Delivery]:
        self.ensure_group()
        response = self.client.xreadgroup(
            self.config.group,
            self.config.consumer,
            {self.config.stream: ">"},
            count=count,
            block=self.config.block_ms if block_ms is None else block_ms,
        )
        deliveries = []
        for _stream, messages in response or []:
            for message_id, fields in messages:
                fields = {_text(k): _text(v) for k, v in (fields or {}).items()}
                raw = fields.get("payload", "")
                attempts = int(fields.get("attempts", "0") or 0)
                try:
                    deliveries.append(Delivery(_text(message_id), raw, attempts, decode_job(raw)))
                except InvalidJob as e:
                    deliveries.append(Delivery(_text(message_id), raw, attempts, None, str(e)))
        return deliveries

    def ack(self, message_id: str):
        self.client.xack(self.config.stream, self.config.group, message_id)

    def retry(self, delivery: Delivery) -> bool:
        """Re-queue a failed job; False once it has used up its attempts."""
        next_attempt = delivery.attempts + 1
        if delivery.job is None or next_attempt >= self.config.max_attempts:
            logger.error(
                f"Dropping job {delivery.message_id} after {next_attempt} attempt(s): {delivery.raw}"
            )
            return False
        self.enqueue(delivery.job, attempts=next_attempt)
        return True


def enqueue_transcode(queue: JobQueue, media_id: str) -> str:
    return queue.enqueue(TranscodeJob(media_id=media_id))


def enqueue_metadata_enrichment(queue: JobQueue, media_id: str, external_id: Optional[str] = None) -> str:
    return queue.enqueue(EnrichJob(media_id=media_id, external_id=external_id))


def enqueue_scan(queue: JobQueue) -> str:
    return queue.enqueue(ScanJob())
