"""
Batch learning over indexed mail.

A learning job selects index entries of one account, hydrates their bodies
through the content cache, and feeds them to a :class:`PatternAnalyzer` in
batches with a short pause in between. A failing batch counts all of its
messages as failed and the job moves on; the job always ends ``completed``
unless the pipeline itself breaks.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, List, Optional, Set, Tuple

if TYPE_CHECKING:
    from mailsync.core.repository import SyncRepository

from mailsync.email.content_cache import ContentCache
from mailsync.email.errors import SyncError, UnknownAccountError
from mailsync.email.models import Account, JobState, LearningJob, LearningOptions, MessageIndexEntry
from mailsync.email.utils import utcnow

from .analyzer import AnalysisItem, PatternAnalyzer

logger = logging.getLogger(__name__)


class LearningPipeline:
    """Submit and run learning jobs on background threads."""

    def __init__(
        self,
        repository: SyncRepository,
        content_cache: ContentCache,
        analyzer: PatternAnalyzer,
        *,
        batch_pause_seconds: float = 1.0,
        job_timeout_seconds: float = 6 * 3600,
        default_options: Optional[LearningOptions] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.content_cache = content_cache
        self.analyzer = analyzer
        self.batch_pause_seconds = batch_pause_seconds
        self.job_timeout_seconds = job_timeout_seconds
        self.default_options = default_options or LearningOptions()
        self.sleep = sleep
        self.clock = clock
        self._submit_lock = threading.Lock()
        self._running: Set[str] = set()

    def submit(self, account_id: str, user_id: str, options: Optional[LearningOptions] = None) -> str:
        """Queue a learning job and start it in the background.

        Args:
            account_id: Account whose indexed mail is analyzed
            user_id: Submitting user
            options: Batch size and selection bounds

        Returns:
            The job id. While a job for the same user and account is queued or
            running its id is returned instead of starting a second one, unless
            that job outlived ``job_timeout_seconds`` without a live worker; it
            is then marked failed and a fresh job starts.

        Raises:
            UnknownAccountError: The account does not exist
        """
        options = options or self.default_options
        if self.repository.get_account(account_id) is None:
            raise UnknownAccountError(f"No email account found for id {account_id}")

        with self._submit_lock:
            existing = self.repository.find_active_job(user_id, account_id)
            if existing is not None and self._is_abandoned(existing):
                self._abandon(existing)
                existing = None
            if existing is not None:
                logger.info(f"Learning job {existing.id} already active for account {account_id}")
                return existing.id
            job = LearningJob(
                id=str(uuid.uuid4()),
                account_id=account_id,
                user_id=user_id,
                created_at=self.clock(),
            )
            self.repository.create_job(job)

        thread = threading.Thread(
            target=self.run_job,
            args=(job.id, options),
            name=f"learning-{job.id[:8]}",
            daemon=True,
        )
        thread.start()
        logger.info(f"Submitted learning job {job.id} for account {account_id}")
        return job.id

    def status(self, job_id: str) -> Optional[LearningJob]:
        return self.repository.get_job(job_id)

    def _is_abandoned(self, job: LearningJob) -> bool:
        """An active job no thread of this process owns and that outlived the timeout."""
        if job.id in self._running:
            return False
        since = job.started_at or job.created_at
        if since is None:
            return True
        return (self.clock() - since).total_seconds() > self.job_timeout_seconds

    def _abandon(self, job: LearningJob) -> None:
        logger.warning(f"Learning job {job.id} is {job.state.value} past {self.job_timeout_seconds}s; marking failed")
        job.state = JobState.FAILED
        job.error = "abandoned: no progress within the job timeout"
        job.finished_at = self.clock()
        self.repository.save_job(job)

    # ------------------------------------------------------------------
    def run_job(self, job_id: str, options: Optional[LearningOptions] = None) -> LearningJob:
        """Process a queued job to a terminal state and return it."""
        options = options or self.default_options
        job = self.repository.get_job(job_id)
        if job is None:
            raise KeyError(f"Unknown learning job {job_id}")

        self._running.add(job.id)
        job.state = JobState.RUNNING
        job.started_at = self.clock()
        self.repository.save_job(job)
        started = time.monotonic()
        categories: Counter = Counter()
        failed_batches = 0

        try:
            account = self.repository.get_account(job.account_id)
            if account is None:
                raise UnknownAccountError(f"Account {job.account_id} disappeared before learning started")

            since = job.started_at - timedelta(days=options.days_back) if options.days_back else None
            entries = self.repository.select_for_learning(
                job.account_id,
                include_analyzed=options.force_relearn,
                since=since,
                limit=options.max_messages,
            )
            job.skipped = 0 if options.force_relearn else self.repository.count_analyzed(job.account_id, since)
            job.total = len(entries)
            self.repository.save_job(job)

            batch_size = max(1, options.batch_size)
            batches = [entries[i:i + batch_size] for i in range(0, len(entries), batch_size)]
            logger.info(
                f"Learning job {job.id}: {job.total} messages in {len(batches)} batches "
                f"({job.skipped} already analyzed)"
            )

            for index, batch in enumerate(batches, start=1):
                succeeded, failed = self._process_batch(account, job, batch, categories)
                if succeeded == 0 and failed == len(batch):
                    failed_batches += 1
                job.processed += len(batch)
                job.succeeded += succeeded
                job.failed += failed
                self.repository.save_job(job)
                logger.debug(f"Learning job {job.id}: batch {index}/{len(batches)} done")
                if index < len(batches) and self.batch_pause_seconds > 0:
                    self.sleep(self.batch_pause_seconds)

            job.state = JobState.COMPLETED
            job.results = {
                "batches": len(batches),
                "failed_batches": failed_batches,
                "categories": dict(categories),
                "duration_seconds": round(time.monotonic() - started, 3),
            }
            logger.info(
                f"Learning job {job.id} completed: {job.succeeded} succeeded, "
                f"{job.failed} failed, {job.skipped} skipped"
            )
        except Exception as exc:
            logger.exception(f"Learning job {job.id} failed")
            job.state = JobState.FAILED
            job.error = f"{exc.__class__.__name__}: {exc}"
        finally:
            job.finished_at = self.clock()
            self.repository.save_job(job)
            self._running.discard(job.id)
        return job

    def _process_batch(
        self,
        account: Account,
        job: LearningJob,
        batch: List[MessageIndexEntry],
        categories: Counter,
    ) -> Tuple[int, int]:
        """Analyze one batch; returns ``(succeeded, failed)``."""
        try:
            items: List[AnalysisItem] = []
            for entry in batch:
                try:
                    body = self.content_cache.hydrate(account, entry.message_id, folder=entry.folder)
                except SyncError as exc:
                    logger.warning(f"Body for {entry.message_id} unavailable: {exc}")
                    continue
                items.append(AnalysisItem(entry=entry, body=body))

            outcome = self.analyzer.analyze_batch(items)
            now = self.clock()
            for message_id, patterns in outcome.patterns.items():
                self.repository.save_learning_result(job.account_id, job.user_id, message_id, patterns, now)
                if patterns.get("category"):
                    categories[str(patterns["category"])] += 1
            self.repository.mark_analyzed(job.account_id, list(outcome.patterns), now)
            succeeded = len(outcome.patterns)
            return succeeded, len(batch) - succeeded
        except Exception as exc:
            logger.warning(f"Learning job {job.id}: batch of {len(batch)} messages failed: {exc}")
            return 0, len(batch)
