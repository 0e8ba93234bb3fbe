#!/usr/bin/env python3
"""
Show sync health for one account or for every account.
"""

import argparse
import logging
import json
import sys

from mailsync.email.errors import UnknownAccountError
from sync_manager.app import MailSyncApplication
from sync_manager.utils.logger import setup_script_logging


def main() -> int:
    parser = argparse.ArgumentParser(description="Show account sync health")
    parser.add_argument("account_id", nargs="?", help="Account to inspect (all accounts when omitted)")
    parser.add_argument("--include-inactive", action="store_true", help="Also list inactive accounts")
    args = parser.parse_args()

    logger = setup_script_logging("sync_status", log_level=logging.WARNING)
    app = MailSyncApplication(configure_logging=False)
    try:
        if args.account_id:
            statuses = [app.orchestrator.account_status(args.account_id)]
        else:
            accounts = app.repository.list_accounts(active_only=not args.include_inactive)
            statuses = [app.orchestrator.account_status(a.id) for a in accounts]
    except UnknownAccountError as exc:
        logger.error(str(exc))
        return 2
    finally:
        app.close()

    print(json.dumps(statuses, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
