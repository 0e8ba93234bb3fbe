"""IMAP email connector implementation.

This module provides the :class:`IMAPConnector` implementation for generic IMAP
servers. Paging walks UIDs in ascending order and only message headers are
downloaded during sync; bodies are fetched on demand through ``fetch_body``.

Cursor format is ``"<uidvalidity>:<last_uid>"``. A change of UIDVALIDITY
invalidates every stored UID, which is reported as :class:`CursorExpired`.
"""

from __future__ import annotations

import base64
import imaplib
import logging
import quopri
import re
import ssl
from contextlib import contextmanager
from email import message_from_bytes
from email.header import decode_header, make_header
from email.message import Message
from email.utils import getaddresses, parsedate_to_datetime
from typing import Iterable, Iterator, List, Optional, Tuple

from ..errors import (
    AuthError,
    CursorExpired,
    ProviderProtocolError,
    SyncError,
    TransientNetwork,
)
from ..models import Account, Direction, MessageBody, MessageIndexEntry, MessagePage
from ..utils import ensure_utc, resolve_direction, utcnow
from .base import EmailConnector

logger = logging.getLogger(__name__)

_UID_RE = re.compile(rb"UID (\d+)")
_FLAGS_RE = re.compile(rb"FLAGS \(([^)]*)\)")
_UIDVALIDITY_RE = re.compile(rb"UIDVALIDITY (\d+)")
SYNTHETIC_ID_PREFIX = "imap-uid:"


class IMAPConnector(EmailConnector):
    """Retrieve messages from an IMAP server.

    Connection settings come from ``account.settings`` (``host``, ``port``,
    ``use_ssl``, ``sent_folder``). When ``use_ssl`` is ``False`` the connector
    upgrades the connection using ``STARTTLS`` to avoid sending credentials in
    plaintext. If the server does not support ``STARTTLS`` a
    :class:`ProviderProtocolError` is raised.
    """

    provider_name = "imap"
    default_folder = "INBOX"
    supports_push = False

    # ------------------------------------------------------------------
    @contextmanager
    def _session(self, account: Account) -> Iterator[imaplib.IMAP4]:
        settings = account.settings
        host = settings.get("host")
        if not host:
            raise ProviderProtocolError(f"IMAP account {account.id} has no host configured")
        use_ssl = bool(settings.get("use_ssl", True))
        port = int(settings.get("port") or (993 if use_ssl else 143))
        logger.debug("Connecting to IMAP server %s:%s for %s", host, port, account.email_address)

        credential = self._credential(account)
        with self._provider_errors():
            conn = (
                imaplib.IMAP4_SSL(host, port, timeout=self.timeout)
                if use_ssl
                else imaplib.IMAP4(host, port, timeout=self.timeout)
            )
        try:
            with self._provider_errors():
                if not use_ssl:
                    try:
                        status, _ = conn.starttls(ssl_context=ssl.create_default_context())
                        if status != "OK":
                            raise imaplib.IMAP4.error("STARTTLS failed")
                    except (imaplib.IMAP4.error, ssl.SSLError) as exc:
                        raise ProviderProtocolError(
                            "IMAP server requires a secure connection; STARTTLS negotiation failed"
                        ) from exc
                try:
                    status, _ = conn.login(credential.username, credential.password)
                except imaplib.IMAP4.error as exc:
                    raise AuthError(f"IMAP login failed for {account.email_address}: {exc}") from exc
                if status != "OK":
                    raise AuthError(f"IMAP login failed for {account.email_address}: status={status}")
                yield conn
        finally:
            try:
                conn.logout()
            except (imaplib.IMAP4.error, OSError) as exc:
                logger.warning("Error during IMAP logout: %s", exc)

    @contextmanager
    def _provider_errors(self) -> Iterator[None]:
        try:
            yield
        except SyncError:
            raise
        except imaplib.IMAP4.abort as exc:
            raise TransientNetwork(f"IMAP connection aborted: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise ProviderProtocolError(f"IMAP error: {exc}") from exc
        except (OSError, TimeoutError) as exc:
            raise TransientNetwork(f"IMAP network error: {exc}") from exc

    @staticmethod
    def _quote(folder: str) -> str:
        return '"' + folder.replace("\\", "\\\\").replace('"', '\\"') + '"'

    def _select(self, conn: imaplib.IMAP4, folder: str) -> int:
        """Select ``folder`` read-only and return its UIDVALIDITY."""
        status, data = conn.status(self._quote(folder), "(UIDVALIDITY)")
        if status != "OK":
            raise ProviderProtocolError(f"IMAP status failed for folder {folder}: status={status}")
        match = _UIDVALIDITY_RE.search(b" ".join(d for d in data if isinstance(d, bytes)))
        if not match:
            raise ProviderProtocolError(f"IMAP server did not report UIDVALIDITY for {folder}")
        status, _ = conn.select(self._quote(folder), readonly=True)
        if status != "OK":
            raise ProviderProtocolError(f"IMAP select failed for folder {folder}: status={status}")
        return int(match.group(1))

    @staticmethod
    def _parse_cursor(cursor: str) -> Tuple[int, int]:
        try:
            validity, last_uid = cursor.split(":", 1)
            return int(validity), int(last_uid)
        except ValueError as exc:
            raise CursorExpired(f"unrecognised IMAP cursor {cursor!r}") from exc

    # ------------------------------------------------------------------
    def fetch_page(
        self,
        account: Account,
        folder: str,
        cursor: Optional[str],
        page_token: Optional[str] = None,
        page_size: int = 100,
    ) -> MessagePage:
        with self._session(account) as conn, self._provider_errors():
            uidvalidity = self._select(conn, folder)
            last_uid = 0
            if cursor:
                stored_validity, last_uid = self._parse_cursor(cursor)
                if stored_validity != uidvalidity:
                    raise CursorExpired(
                        f"UIDVALIDITY of {folder} changed from {stored_validity} to {uidvalidity}"
                    )
            if page_token:
                last_uid = int(page_token)

            status, data = conn.uid("SEARCH", None, f"UID {last_uid + 1}:*")
            if status != "OK":
                raise ProviderProtocolError(f"IMAP search failed: status={status}")
            # "n:*" always matches the highest UID, even when it is below n
            uids = sorted(int(u) for u in (data[0] or b"").split() if int(u) > last_uid)
            page_uids = uids[:page_size]
            entries = self._fetch_headers(conn, account, folder, uidvalidity, page_uids)

        highest = page_uids[-1] if page_uids else last_uid
        checkpoint = f"{uidvalidity}:{highest}"
        more = len(uids) > len(page_uids)
        logger.info(
            "IMAP page for %s/%s: %d message(s) after UID %d, more=%s",
            account.email_address, folder, len(entries), last_uid, more,
        )
        return MessagePage(
            messages=entries,
            next_page_token=str(highest) if more else None,
            new_cursor=None if more else checkpoint,
            checkpoint=checkpoint,
        )

    def _fetch_headers(
        self,
        conn: imaplib.IMAP4,
        account: Account,
        folder: str,
        uidvalidity: int,
        uids: List[int],
    ) -> List[MessageIndexEntry]:
        if not uids:
            return []
        status, data = conn.uid(
            "FETCH", ",".join(str(u) for u in uids), "(UID FLAGS RFC822.SIZE BODY.PEEK[HEADER])"
        )
        if status != "OK":
            raise ProviderProtocolError(f"IMAP fetch failed: status={status}")

        entries: List[MessageIndexEntry] = []
        for item in data:
            if not isinstance(item, tuple) or len(item) < 2:
                continue
            meta, header_bytes = item[0], item[1]
            uid_match = _UID_RE.search(meta)
            if not uid_match:
                logger.warning("Skipping IMAP fetch item without UID: %r", meta[:80])
                continue
            flags_match = _FLAGS_RE.search(meta)
            flags = flags_match.group(1).decode(errors="ignore") if flags_match else ""
            msg = message_from_bytes(header_bytes)
            entries.append(
                self._entry_from_headers(
                    msg, account, folder, uidvalidity, int(uid_match.group(1)), "\\Seen" in flags
                )
            )
        return entries

    def _entry_from_headers(
        self,
        msg: Message,
        account: Account,
        folder: str,
        uidvalidity: int,
        uid: int,
        is_read: bool,
    ) -> MessageIndexEntry:
        message_id = (msg.get("Message-ID") or "").strip()
        if not message_id:
            message_id = f"{SYNTHETIC_ID_PREFIX}{uidvalidity}:{uid}:{folder}"
        in_reply_to = (msg.get("In-Reply-To") or "").strip() or None
        references_raw = msg.get("References") or ""
        references_ids = [r.strip("<> ") for r in references_raw.split() if "@" in r]

        sender = None
        raw_from = msg.get("From")
        if raw_from:
            addrs = getaddresses([raw_from])
            if addrs:
                sender = (addrs[0][1] or addrs[0][0]).lower() or None
        recipients = [
            addr.lower()
            for _, addr in getaddresses([msg.get("To") or "", msg.get("Cc") or ""])
            if addr
        ]

        sent_folder = (account.settings.get("sent_folder") or "").lower()
        if sent_folder and folder.lower() == sent_folder:
            direction = Direction.SENT
        else:
            direction = resolve_direction(sender, account.email_address)

        content_type = (msg.get("Content-Type") or "").lower()
        return MessageIndexEntry(
            account_id=account.id,
            user_id=account.user_id,
            message_id=message_id,
            folder=folder,
            subject=self._decode_header_value(msg.get("Subject")),
            sender=sender,
            recipients=recipients,
            direction=direction,
            thread_id=self._derive_thread_id(message_id, in_reply_to, references_ids),
            sent_at=self._parse_date(msg.get("Date")),
            has_attachments=content_type.startswith("multipart/mixed"),
            is_read=is_read,
        )

    # ------------------------------------------------------------------
    def fetch_body(self, account: Account, message_id: str, folder: Optional[str] = None) -> MessageBody:
        with self._session(account) as conn, self._provider_errors():
            if message_id.startswith(SYNTHETIC_ID_PREFIX):
                validity_s, uid_s, folder = message_id[len(SYNTHETIC_ID_PREFIX):].split(":", 2)
                uidvalidity = self._select(conn, folder)
                if uidvalidity != int(validity_s):
                    raise CursorExpired(f"UIDVALIDITY of {folder} changed; cannot locate {message_id}")
                uid = uid_s
            else:
                folder = folder or self.default_folder
                self._select(conn, folder)
                status, data = conn.uid("SEARCH", None, "HEADER", "Message-ID", self._quote(message_id))
                found = (data[0] or b"").split() if status == "OK" and data else []
                if not found:
                    raise ProviderProtocolError(f"message {message_id} not found in {folder}")
                uid = found[-1].decode()

            status, data = conn.uid("FETCH", uid, "(BODY.PEEK[])")
            if status != "OK" or not data or not isinstance(data[0], tuple):
                raise ProviderProtocolError(f"IMAP body fetch failed for {message_id}: status={status}")
            msg = message_from_bytes(data[0][1])

        text, html = self._extract_bodies(msg)
        return MessageBody(
            account_id=account.id,
            message_id=message_id,
            text=text,
            html=html,
            fetched_at=utcnow(),
        )

    # ------------------------------------------------------------------
    def _decode_header_value(self, raw_val: Optional[str]) -> Optional[str]:
        if not raw_val:
            return None
        try:
            return str(make_header(decode_header(raw_val))).strip()
        except (UnicodeDecodeError, LookupError, ValueError):
            decoded: List[str] = []
            for text, enc in decode_header(raw_val):
                if isinstance(text, bytes):
                    try:
                        decoded.append(text.decode(enc or "utf-8", errors="ignore"))
                    except LookupError:
                        decoded.append(text.decode("utf-8", errors="ignore"))
                else:
                    decoded.append(text)
            return "".join(decoded).strip()

    def _parse_date(self, date_raw: Optional[str]):
        if not date_raw:
            return None
        try:
            return ensure_utc(parsedate_to_datetime(date_raw))
        except (TypeError, ValueError):
            return None

    # ------------------------------------------------------------------
    def _extract_bodies(self, msg: Message) -> Tuple[Optional[str], Optional[str]]:
        body_text: Optional[str] = None
        body_html: Optional[str] = None
        if not msg.is_multipart():
            decoded = self._decode_part(msg)
            if msg.get_content_type() == "text/html":
                return None, decoded
            return decoded, None
        for part in msg.walk():
            ctype = part.get_content_type()
            disp = (part.get("Content-Disposition") or "").lower()
            if "attachment" in disp:
                continue
            if ctype == "text/plain" and body_text is None:
                body_text = self._decode_part(part)
            elif ctype == "text/html" and body_html is None:
                body_html = self._decode_part(part)
        return body_text, body_html

    def _decode_part(self, part: Message) -> Optional[str]:
        charset = part.get_content_charset() or "utf-8"
        payload = part.get_payload(decode=True)
        if not payload:
            return None
        try:
            return payload.decode(charset, errors="ignore")
        except LookupError:
            try:
                return quopri.decodestring(payload).decode("utf-8", errors="ignore")
            except ValueError:
                try:
                    return base64.b64decode(payload).decode("utf-8", errors="ignore")
                except ValueError:
                    return payload.decode("utf-8", errors="ignore")

    # ------------------------------------------------------------------
    def _derive_thread_id(
        self,
        message_id: Optional[str],
        in_reply_to: Optional[str],
        references_ids: Iterable[str],
    ) -> Optional[str]:
        if references_ids:
            return next(iter(references_ids))
        if in_reply_to:
            return in_reply_to
        return message_id
