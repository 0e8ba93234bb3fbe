#!/usr/bin/env python3
"""
Submit a learning job and follow it until it finishes.

Examples:
    python tools/submit_learning_job.py ACCOUNT_ID USER_ID
    python tools/submit_learning_job.py ACCOUNT_ID USER_ID --force-relearn --batch-size 20
"""

import argparse
import json
import sys
import time

from mailsync.email.errors import UnknownAccountError
from mailsync.email.models import JobState
from sync_manager.app import MailSyncApplication
from sync_manager.utils.logger import setup_script_logging


def main() -> int:
    parser = argparse.ArgumentParser(description="Learn writing patterns from indexed mail")
    parser.add_argument("account_id", help="Account whose index is analyzed")
    parser.add_argument("user_id", help="Submitting user")
    parser.add_argument("--force-relearn", action="store_true", help="Re-analyze messages already analyzed")
    parser.add_argument("--batch-size", type=int, help="Messages per batch")
    parser.add_argument("--max-messages", type=int, help="Upper bound on selected messages")
    parser.add_argument("--days-back", type=int, help="Only consider messages from the last N days (0 = all)")
    parser.add_argument("--poll-seconds", type=float, default=2.0, help="Status poll interval")
    parser.add_argument("--no-wait", action="store_true", help="Return right after submitting")
    args = parser.parse_args()

    logger = setup_script_logging("submit_learning_job")
    app = MailSyncApplication(configure_logging=False)
    overrides = {"force_relearn": args.force_relearn}
    if args.batch_size is not None:
        overrides["batch_size"] = args.batch_size
    if args.max_messages is not None:
        overrides["max_messages"] = args.max_messages
    if args.days_back is not None:
        overrides["days_back"] = args.days_back or None

    try:
        job_id = app.submit_learning_job(args.account_id, args.user_id, **overrides)
        logger.info(f"Learning job {job_id} submitted")
        if args.no_wait:
            print(job_id)
            return 0

        job = app.learning_pipeline.status(job_id)
        while job is not None and job.is_active:
            time.sleep(args.poll_seconds)
            job = app.learning_pipeline.status(job_id)
            if job is not None:
                logger.info(f"Job {job_id}: {job.state.value} {job.processed}/{job.total}")
    except UnknownAccountError as exc:
        logger.error(str(exc))
        return 2
    finally:
        app.close()

    if job is None:
        logger.error(f"Learning job {job_id} disappeared")
        return 1
    print(json.dumps(job.to_dict(), indent=2))
    return 0 if job.state is JobState.COMPLETED else 1


if __name__ == "__main__":
    sys.exit(main())
