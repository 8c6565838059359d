"""
Bridge job queue: enqueue, dispatch, completion and job cleanup.

This module manages the lifecycle of bridge jobs and the design variants they
render:
- Enqueueing variants, at most one active job per variant
- Dispatching pending jobs in priority/FIFO order, claiming them on the way out
- Applying status reports from the bridge and cascading them into the variant
- Failing jobs whose processing lease has expired
- Deleting jobs together with the artifacts they produced

Every operation that touches job or variant rows runs in exactly one database
transaction, so a job and its variant are never observed half-updated.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from omegaconf import DictConfig

from .blob_store import BlobStore, discard_blobs
from .database import BridgeDatabase
from .errors import InvalidTransitionError, NotFoundError, ValidationError
from .models import (
    ACTIVE_JOB_STATUSES,
    ArtifactRef,
    BridgeJob,
    DispatchedJob,
    EnqueueResult,
    JobStatus,
    JobUpdate,
    VariantContext,
    VariantStatus,
)
from .utils import new_id, unique, utcnow

logger = logging.getLogger(__name__)


class JobManager:
    """
    Central coordinator for bridge job lifecycle management.

    The manager holds no job state of its own; the database is the only
    authority, and concurrent callers (API threads, several app processes)
    are serialized by its write lock.

    Attributes:
        database: Variant and job persistence
        blob_store: Where final artifacts live
        settings: The ``bridge`` section drives poll limits, claiming, leases
            and failure messages
    """

    def __init__(self, database: BridgeDatabase, blob_store: BlobStore, settings: DictConfig) -> None:
        self.database = database
        self.blob_store = blob_store
        self.settings = settings.bridge

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(self, variant_ids: Optional[Iterable[str]], priority: int = 0) -> EnqueueResult:
        """
        Create pending jobs for variants that have no active job yet.

        The active-set check, the job inserts and the variant status writes
        happen under one write lock. The partial unique index on active jobs
        backs this up: an insert it rejects is counted as skipped.

        Args:
            variant_ids: Variants to render; repeated ids are collapsed
            priority: Higher values are dispatched first

        Returns:
            EnqueueResult with created/skipped counts and the new jobs

        Raises:
            ValidationError: No variant ids given
            NotFoundError: Any id does not name an existing variant (nothing
                is enqueued in that case)
        """
        ids = unique(variant_ids or [])
        if not ids:
            raise ValidationError("variantIds array is required")
        if not all(isinstance(variant_id, str) and variant_id for variant_id in ids):
            raise ValidationError("variantIds must be non-empty strings")

        created: List[BridgeJob] = []
        skipped = 0
        with self.database.transaction() as conn:
            known = {variant.id for variant in self.database.get_variants(conn, ids)}
            missing = [variant_id for variant_id in ids if variant_id not in known]
            if missing:
                raise NotFoundError(f"Unknown variant ids: {', '.join(missing)}")

            active = {job.variant_id for job in self.database.jobs_for_variants(conn, ids, ACTIVE_JOB_STATUSES)}
            for variant_id in ids:
                if variant_id in active:
                    skipped += 1
                    continue

                job = BridgeJob(
                    id=new_id(),
                    variant_id=variant_id,
                    status=JobStatus.PENDING,
                    priority=priority,
                    created_at=utcnow(),
                )
                if not self.database.insert_job(conn, job):
                    skipped += 1
                    continue

                self.database.update_variant(conn, variant_id, status=VariantStatus.GENERATING)
                created.append(job)

        logger.info(f"Enqueued {len(created)} bridge job(s) at priority {priority}, skipped {skipped}")
        return EnqueueResult(created=len(created), skipped=skipped, jobs=created)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.settings.default_poll_limit
        return max(1, min(int(limit), self.settings.max_poll_limit))

    def poll(
        self,
        status: JobStatus | str = JobStatus.PENDING,
        limit: Optional[int] = None,
        claim: Optional[bool] = None,
    ) -> List[DispatchedJob]:
        """
        Hand out jobs to the bridge in dispatch order.

        Order is priority descending, then creation time ascending, then
        insertion order. When claiming, the selected pending jobs move to
        ``processing`` in the same transaction that selected them, so two
        pollers never receive the same job. Claiming polls first fail jobs
        whose lease has expired; a read-only poll changes nothing.

        Args:
            status: Which jobs to list (``pending`` for work to do)
            limit: Maximum number of jobs; clamped to the configured bounds
            claim: Claim returned pending jobs; defaults to ``claim_on_poll``

        Returns:
            Jobs with their variant and item/project/team/school/template context
        """
        try:
            status = JobStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown job status: {status}") from exc
        limit = self._clamp_limit(limit)
        if claim is None:
            claim = self.settings.claim_on_poll
        claim = claim and status == JobStatus.PENDING

        if claim:
            self.expire_stale_jobs()

        scope = self.database.transaction() if claim else self.database.connection()
        with scope as conn:
            job_ids = self.database.select_job_ids(conn, status.value, limit)
            if claim:
                self.database.claim_jobs(conn, job_ids, utcnow())
            jobs = self.database.get_jobs(conn, job_ids)
            dispatched = self._with_context(conn, jobs)

        if claim and dispatched:
            logger.info(f"Claimed {len(dispatched)} bridge job(s): {', '.join(job.id for job in dispatched)}")
        return dispatched

    def _with_context(self, conn: sqlite3.Connection, jobs: List[BridgeJob]) -> List[DispatchedJob]:
        variants = {variant.id: variant for variant in self.database.get_variants(conn, [job.variant_id for job in jobs])}
        contexts = self.database.load_item_contexts(conn, [variant.item_id for variant in variants.values()])

        dispatched = []
        for job in jobs:
            variant = variants[job.variant_id]
            context = VariantContext(**variant.model_dump(), item=contexts.get(variant.item_id))
            dispatched.append(DispatchedJob(**job.model_dump(), variant=context))
        return dispatched

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def update_job(self, job_id: str, update: JobUpdate) -> BridgeJob:
        """
        Apply a status report from the bridge.

        ``processing`` stamps ``startedAt`` once. ``completed`` and ``failed``
        stamp ``completedAt`` once and settle the variant in the same
        transaction. Re-delivering the status a terminal job already has is a
        no-op; any other change to a terminal job is refused.

        Args:
            job_id: The job being reported on
            update: Reported status, error message and final artifact

        Returns:
            The job as stored after the update

        Raises:
            ValidationError: ``pending`` was reported, or ``completed``
                arrived without a final artifact while one is required
            NotFoundError: Unknown job id
            InvalidTransitionError: The job is already terminal with a
                different status
        """
        status = update.status
        if status == JobStatus.PENDING:
            raise ValidationError("The bridge cannot move a job back to pending")

        artifact = None
        if update.final_artifact_path:
            artifact = ArtifactRef(path=update.final_artifact_path, is_public=update.final_artifact_is_public)

        with self.database.transaction() as conn:
            job = self.database.get_job(conn, job_id)
            if job is None:
                raise NotFoundError(f"Bridge job {job_id} not found")

            if job.is_terminal:
                if status == job.status:
                    logger.info(f"Ignoring repeated {status.value} report for bridge job {job_id}")
                    return job
                raise InvalidTransitionError(
                    f"Bridge job {job_id} is already {job.status.value} and cannot change"
                )

            if status == JobStatus.COMPLETED and artifact is None and self.settings.require_final_artifact:
                raise ValidationError("finalArtifactPath is required when reporting a completed job")

            if status is None:
                if update.error_message is not None:
                    self.database.update_job(conn, job_id, error_message=update.error_message)
                return self.database.get_job(conn, job_id)

            updated = self._apply_status(conn, job, status, update.error_message, artifact, utcnow())

        logger.info(f"Bridge job {job_id} is now {updated.status.value}")
        return updated

    def _apply_status(
        self,
        conn: sqlite3.Connection,
        job: BridgeJob,
        status: JobStatus,
        error_message: Optional[str],
        artifact: Optional[ArtifactRef],
        now: datetime,
    ) -> BridgeJob:
        """Write a non-terminal job's new status and cascade terminal outcomes."""
        fields = {"status": status}
        if error_message is not None:
            fields["error_message"] = error_message

        if status == JobStatus.PROCESSING:
            if job.started_at is None:
                fields["started_at"] = now
            self.database.update_job(conn, job.id, **fields)
            return self.database.get_job(conn, job.id)

        if job.completed_at is None:
            fields["completed_at"] = now
        if status == JobStatus.FAILED:
            error_message = error_message or self.settings.default_failure_message
            fields["error_message"] = error_message
        elif artifact is not None:
            fields["artifact_path"] = artifact.path
            fields["artifact_is_public"] = int(artifact.is_public)

        self.database.update_job(conn, job.id, **fields)
        self._settle_variant(conn, job, status, artifact, error_message)
        return self.database.get_job(conn, job.id)

    def _settle_variant(
        self,
        conn: sqlite3.Connection,
        job: BridgeJob,
        status: JobStatus,
        artifact: Optional[ArtifactRef],
        error_message: Optional[str],
    ) -> None:
        # Only the variant's newest job may decide its outcome
        latest = self.database.latest_job_id(conn, job.variant_id)
        if latest != job.id:
            logger.warning(
                f"Bridge job {job.id} was superseded by {latest}; variant {job.variant_id} left unchanged"
            )
            return

        if status == JobStatus.COMPLETED:
            fields = {"status": VariantStatus.GENERATED, "error_message": None}
            if artifact is not None:
                fields["final_path"] = artifact.path
                fields["final_is_public"] = int(artifact.is_public)
            else:
                logger.warning(f"Variant {job.variant_id} marked generated without a final artifact")
        else:
            fields = {"status": VariantStatus.FAILED, "error_message": error_message}

        self.database.update_variant(conn, job.variant_id, **fields)

    # ------------------------------------------------------------------
    # Lease expiry
    # ------------------------------------------------------------------

    def expire_stale_jobs(self, now: Optional[datetime] = None) -> List[BridgeJob]:
        """
        Fail processing jobs whose lease ran out without a terminal report.

        A job's lease starts at ``startedAt`` and lasts ``lease_seconds``.
        Expired jobs fail with the lease message and their variants fail with
        them, freeing the variant for a new enqueue.

        Returns:
            The jobs that were failed
        """
        lease_seconds = self.settings.lease_seconds
        if not lease_seconds or lease_seconds <= 0:
            return []

        now = now or utcnow()
        cutoff = now - timedelta(seconds=lease_seconds)
        expired: List[BridgeJob] = []
        with self.database.transaction() as conn:
            for job_id in self.database.stale_job_ids(conn, cutoff):
                job = self.database.get_job(conn, job_id)
                expired.append(
                    self._apply_status(conn, job, JobStatus.FAILED, self.settings.lease_expired_message, None, now)
                )

        for job in expired:
            logger.warning(f"Bridge job {job.id} lease expired (started {job.started_at}); marked failed")
        return expired

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def delete_job(self, job_id: str) -> None:
        """
        Delete a job and, best effort, the artifact it produced.

        The artifact blob is kept when the variant still shows it as its final
        artifact. Deleting an active job returns a ``generating`` variant to
        ``preview`` so the variant does not claim work that no longer exists.

        Raises:
            NotFoundError: Unknown job id
        """
        with self.database.connection() as conn:
            job = self.database.get_job(conn, job_id)
            if job is None:
                raise NotFoundError(f"Bridge job {job_id} not found")
            variant = self.database.get_variant(conn, job.variant_id)

        if job.artifact is not None:
            final = variant.final_artifact if variant is not None else None
            if final is None or final.path != job.artifact.path:
                discard_blobs(self.blob_store, [job.artifact.path])

        with self.database.transaction() as conn:
            current = self.database.get_job(conn, job_id)
            if current is None:
                raise NotFoundError(f"Bridge job {job_id} not found")
            self.database.delete_job(conn, job_id)

            if current.status in ACTIVE_JOB_STATUSES:
                variant = self.database.get_variant(conn, current.variant_id)
                if variant is not None and variant.status == VariantStatus.GENERATING:
                    self.database.update_variant(conn, variant.id, status=VariantStatus.PREVIEW)

        logger.info(f"Deleted bridge job {job_id}")
