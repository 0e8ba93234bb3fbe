#!/usr/bin/env python3
"""
Main entry point for the MailSync service.

Keeps a mail index in sync with IMAP, Gmail and Microsoft Graph mailboxes
and learns writing patterns from the indexed mail.
"""

from sync_manager.app import MailSyncApplication


def main() -> None:
    """
    Main entry point for the MailSync service.

    Initializes and runs the Flask web application with the scheduler.
    """
    app_manager = MailSyncApplication()
    app_manager.run()


if __name__ == "__main__":
    main()
