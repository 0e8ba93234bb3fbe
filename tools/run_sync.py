#!/usr/bin/env python3
"""
Run a sync for one account from the command line.

Examples:
    python tools/run_sync.py ACCOUNT_ID
    python tools/run_sync.py ACCOUNT_ID --folder INBOX --max-messages 500
    python tools/run_sync.py ACCOUNT_ID --all-folders --full-resync
"""

import argparse
import json
import sys

from mailsync.email.errors import UnknownAccountError
from mailsync.email.models import SyncOptions, SyncStatus
from sync_manager.app import MailSyncApplication
from sync_manager.utils.logger import setup_script_logging


def main() -> int:
    parser = argparse.ArgumentParser(description="Synchronize an email account into the index")
    parser.add_argument("account_id", help="Account to synchronize")
    parser.add_argument("--folder", help="Folder to sync (defaults to the account's first folder)")
    parser.add_argument("--all-folders", action="store_true", help="Sync every configured folder")
    parser.add_argument("--max-messages", type=int, default=None, help="Stop after this many messages")
    parser.add_argument("--full-resync", action="store_true", help="Ignore the stored cursor")
    args = parser.parse_args()

    logger = setup_script_logging("run_sync")
    app = MailSyncApplication(configure_logging=False)
    try:
        options = SyncOptions(max_messages=args.max_messages, full_resync=args.full_resync)
        if args.all_folders:
            results = app.orchestrator.sync_account(args.account_id, options)
        else:
            results = [app.orchestrator.run_sync(args.account_id, args.folder, options)]
    except UnknownAccountError as exc:
        logger.error(str(exc))
        return 2
    finally:
        app.close()

    print(json.dumps([r.to_dict() for r in results], indent=2))
    return 1 if any(r.status is SyncStatus.ERROR for r in results) else 0


if __name__ == "__main__":
    sys.exit(main())
