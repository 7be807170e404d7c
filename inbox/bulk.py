from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from . import config

logger = logging.getLogger(__name__)


@dataclass
class BulkJob:
    batch_id: str
    total: int
    total_batches: int
    status: str = "processing"
    sent: int = 0
    failed: int = 0
    current_batch: int = 0
    failed_recipients: List[dict] = field(default_factory=list)
    started_at: float = 0.0
    finished_at: Optional[float] = None

    @property
    def progress(self) -> int:
        return round((self.sent + self.failed) * 100 / self.total) if self.total else 100

    def progress_event(self) -> dict:
        return {
            "batchId": self.batch_id,
            "sent": self.sent,
            "failed": self.failed,
            "total": self.total,
            "progress": self.progress,
            "currentBatch": self.current_batch,
            "totalBatches": self.total_batches,
        }

    def to_dict(self) -> dict:
        out = self.progress_event()
        out["status"] = self.status
        out["failedRecipients"] = list(self.failed_recipients)
        if self.finished_at is not None:
            duration = round(self.finished_at - self.started_at, 1)
            out["duration"] = duration
            out["messagesPerSecond"] = round(self.total / duration, 1) if duration > 0 else float(self.total)
        return out


def estimate_seconds(total: int, batch_size: int) -> int:
    batches = math.ceil(total / max(1, batch_size))
    return math.ceil(total * config.BULK_MESSAGE_DELAY_SECONDS + max(0, batches - 1) * config.BULK_BATCH_DELAY_SECONDS)


class BulkSendTracker:
    """Bulk sends of this process, by batch id. Finished ones expire after `ttl` seconds."""

    def __init__(self, ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl = float(config.BULK_RESULT_TTL_SECONDS if ttl is None else ttl)
        self._clock = clock
        self._jobs: Dict[str, BulkJob] = {}

    def _sweep(self, now: float) -> None:
        expired = [
            batch_id for batch_id, job in self._jobs.items()
            if job.finished_at is not None and job.finished_at + self.ttl <= now
        ]
        for batch_id in expired:
            del self._jobs[batch_id]

    def start(self, total: int, batch_size: int) -> BulkJob:
        now = self._clock()
        self._sweep(now)
        job = BulkJob(
            batch_id=f"bulk_{uuid.uuid4().hex[:12]}",
            total=total,
            total_batches=math.ceil(total / max(1, batch_size)),
            started_at=now,
        )
        self._jobs[job.batch_id] = job
        return job

    def finish(self, job: BulkJob, status: str = "completed") -> None:
        job.status = status
        job.finished_at = self._clock()

    def get(self, batch_id: str) -> Optional[BulkJob]:
        self._sweep(self._clock())
        return self._jobs.get(batch_id)

    def __len__(self) -> int:
        self._sweep(self._clock())
        return len(self._jobs)


async def run_bulk_send(
    rt: Any,
    job: BulkJob,
    recipients: List[dict],
    *,
    text: Optional[str],
    media_url: Optional[str] = None,
    media_type: Optional[str] = None,
    agent_id: Optional[str] = None,
    agent_name: Optional[str] = None,
    batch_size: Optional[int] = None,
) -> None:
    """Send one message to many recipients in batches, broadcasting progress.

    Recipients are `{"phone", "name"}` dicts with already-normalized phones;
    an empty phone counts as a failure.
    """
    size = max(1, int(batch_size or config.BULK_BATCH_SIZE))
    manager = rt.connection_manager
    logger.info("Bulk send %s started: %s recipients in %s batches", job.batch_id, job.total, job.total_batches)
    try:
        for start in range(0, len(recipients), size):
            job.current_batch = start // size + 1
            if start:
                await asyncio.sleep(config.BULK_BATCH_DELAY_SECONDS)
            for recipient in recipients[start:start + size]:
                phone = recipient.get("phone") or ""
                error = None
                if not phone:
                    error = "Invalid phone number"
                else:
                    try:
                        message = await rt.processor.process_outgoing_message(
                            phone=phone,
                            text=text,
                            name=recipient.get("name"),
                            agent_id=agent_id,
                            agent_name=agent_name,
                            media_type=media_type,
                            media_url=media_url,
                        )
                        if message.get("status") != "delivered":
                            error = "Not delivered"
                    except Exception as exc:
                        logger.warning("Bulk send %s to %s failed: %s", job.batch_id, phone, exc)
                        error = str(exc)
                if error:
                    job.failed += 1
                    job.failed_recipients.append({"phone": phone, "name": recipient.get("name"), "error": error})
                else:
                    job.sent += 1
                await manager.broadcast("bulk_send_progress", job.progress_event())
                if job.sent + job.failed < job.total:
                    await asyncio.sleep(config.BULK_MESSAGE_DELAY_SECONDS)
    except Exception as exc:
        logger.exception("Bulk send %s aborted", job.batch_id)
        rt.bulk_sends.finish(job, status="failed")
        await manager.broadcast("bulk_send_error", {"batchId": job.batch_id, "error": str(exc)})
        return
    rt.bulk_sends.finish(job)
    logger.info("Bulk send %s complete: %s/%s sent", job.batch_id, job.sent, job.total)
    await manager.broadcast("bulk_send_complete", job.to_dict())
