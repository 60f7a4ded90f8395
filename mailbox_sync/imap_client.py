"""Async IMAP session wrapping stdlib imaplib with asyncio.to_thread.

The cursor handed out by :meth:`ImapSession.fetch_since` is the opaque
string ``"<uidvalidity>:<last uid>"``.  When the server reports a new
UIDVALIDITY the old UIDs are meaningless and fetching restarts from the
beginning of the mailbox; the store deduplicates what it has already seen.
"""

from __future__ import annotations

import asyncio
import imaplib
import ssl
import time
from datetime import UTC, datetime

import structlog

from .errors import AuthError, ConfigurationError, NetworkError
from .models import FetchedEmail, FetchPage, SecurityMode, ServerEndpoint

logger = structlog.get_logger()

_FETCH_ITEMS = "(UID FLAGS INTERNALDATE RFC822)"


def parse_cursor(cursor: str | None) -> tuple[int | None, int]:
    """Split a cursor into ``(uidvalidity, last_uid)``; unusable cursors start over."""
    if not cursor:
        return None, 0
    validity, sep, uid = cursor.partition(":")
    if not sep:
        return None, 0
    try:
        return int(validity), int(uid)
    except ValueError:
        return None, 0


def format_cursor(uidvalidity: int | None, last_uid: int) -> str:
    return f"{uidvalidity or 0}:{last_uid}"


class ImapSession:
    """One authenticated IMAP connection with the sync mailbox selected.

    All blocking ``imaplib`` operations run in a worker thread and are bounded
    by the socket timeout: *timeout_seconds* while connecting, the per-call
    fetch timeout afterwards.  A connection that times out or aborts is
    dropped, never reused.
    """

    def __init__(
        self,
        endpoint: ServerEndpoint,
        *,
        mailbox: str = "INBOX",
        timeout_seconds: float = 30.0,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._mailbox = mailbox
        self._timeout = timeout_seconds
        self._ssl_context = ssl_context or ssl.create_default_context()
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._uidvalidity: int | None = None

    @property
    def uidvalidity(self) -> int | None:
        return self._uidvalidity

    @property
    def connected(self) -> bool:
        return self._conn is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, username: str, password: str) -> None:
        """Open the transport, authenticate, and select the mailbox."""
        await self._run(self._connect_sync, username, password)
        logger.info(
            "imap_connected",
            host=self._endpoint.host,
            security=self._endpoint.security.value,
            mailbox=self._mailbox,
            uidvalidity=self._uidvalidity,
        )

    def _open_transport(self) -> imaplib.IMAP4:
        host, port = self._endpoint.host, self._endpoint.port
        if self._endpoint.security is SecurityMode.SSL:
            return imaplib.IMAP4_SSL(host, port, ssl_context=self._ssl_context, timeout=self._timeout)

        conn = imaplib.IMAP4(host, port, timeout=self._timeout)
        try:
            conn.starttls(ssl_context=self._ssl_context)
        except (imaplib.IMAP4.abort, OSError):
            _abandon(conn)
            raise
        except imaplib.IMAP4.error as exc:
            # Never fall back to plaintext.
            _shutdown_quietly(conn)
            raise ConfigurationError(f"{host} does not support STARTTLS: {exc}") from exc
        return conn

    def _connect_sync(self, username: str, password: str) -> None:
        conn = self._open_transport()
        try:
            uidvalidity = self._authenticate(conn, username, password)
        except (imaplib.IMAP4.abort, OSError):
            _abandon(conn)
            raise
        except (imaplib.IMAP4.error, AuthError, ConfigurationError):
            _shutdown_quietly(conn)
            raise
        self._uidvalidity = uidvalidity
        self._conn = conn

    def _authenticate(self, conn: imaplib.IMAP4, username: str, password: str) -> int | None:
        try:
            conn.login(username, password)
        except imaplib.IMAP4.abort:
            raise
        except imaplib.IMAP4.error as exc:
            raise AuthError(f"IMAP login rejected for {username}: {_decode(exc)}") from exc

        status, _ = conn.select(self._mailbox)
        if status != "OK":
            raise ConfigurationError(f"Mailbox {self._mailbox!r} cannot be selected")

        _, data = conn.response("UIDVALIDITY")
        return _first_int(data)

    async def close(self) -> None:
        """Close mailbox and logout.  Safe to call more than once."""
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await asyncio.to_thread(_close_sync, conn)
        logger.info("imap_disconnected", host=self._endpoint.host)

    async def is_connected(self) -> bool:
        """Check connection liveness with a NOOP command."""
        if self._conn is None:
            return False
        try:
            status, _ = await asyncio.to_thread(self._conn.noop)
            return status == "OK"
        except (imaplib.IMAP4.error, OSError):
            return False

    # ------------------------------------------------------------------
    # Message retrieval
    # ------------------------------------------------------------------

    async def fetch_since(self, cursor: str | None, page_size: int, *, timeout: float) -> FetchPage:
        """Fetch up to *page_size* messages newer than *cursor*, oldest first."""
        conn = self._conn
        if conn is None:
            raise NetworkError("IMAP session is not connected")
        try:
            page = await self._run(self._fetch_since_sync, conn, cursor, page_size, timeout)
        except NetworkError:
            self._drop(conn)
            raise
        logger.debug(
            "imap_page_fetched",
            fetched=len(page.messages),
            skipped=len(page.skipped_uids),
            next_cursor=page.next_cursor,
            has_more=page.has_more,
        )
        return page

    def _fetch_since_sync(
        self, conn: imaplib.IMAP4, cursor: str | None, page_size: int, timeout: float
    ) -> FetchPage:
        conn.sock.settimeout(timeout)
        validity, last_uid = parse_cursor(cursor)
        if validity is not None and self._uidvalidity is not None and validity != self._uidvalidity:
            logger.warning(
                "imap_uidvalidity_changed",
                previous=validity,
                current=self._uidvalidity,
            )
            last_uid = 0

        status, data = conn.uid("SEARCH", None, f"UID {last_uid + 1}:*")
        if status != "OK":
            raise NetworkError(f"UID SEARCH failed: {status}")

        # "n:*" always matches the highest UID, even when it is below n.
        uids = sorted(int(u) for u in (data[0] or b"").split() if int(u) > last_uid)
        batch, has_more = uids[:page_size], len(uids) > page_size

        messages: list[FetchedEmail] = []
        skipped: list[int] = []
        for uid in batch:
            fetched = self._fetch_one(conn, uid)
            if fetched is None:
                skipped.append(uid)
            else:
                messages.append(fetched)

        next_uid = batch[-1] if batch else last_uid
        return FetchPage(
            messages=messages,
            next_cursor=format_cursor(self._uidvalidity, next_uid),
            has_more=has_more,
            skipped_uids=skipped,
        )

    def _fetch_one(self, conn: imaplib.IMAP4, uid: int) -> FetchedEmail | None:
        status, msg_data = conn.uid("FETCH", str(uid), _FETCH_ITEMS)
        if status != "OK" or not msg_data:
            logger.warning("imap_fetch_malformed", uid=uid, status=status)
            return None

        for item in msg_data:
            if isinstance(item, tuple) and len(item) == 2 and isinstance(item[1], bytes):
                meta, raw_bytes = item
                return FetchedEmail(
                    uid=uid,
                    raw_bytes=raw_bytes,
                    flags=tuple(f.decode() for f in imaplib.ParseFlags(meta)),
                    internal_date=_internal_date(meta),
                )

        logger.warning("imap_fetch_malformed", uid=uid, status=status)
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _drop(self, conn: imaplib.IMAP4) -> None:
        """Forget a connection in an unknown protocol state and close its socket."""
        if self._conn is conn:
            self._conn = None
        _abandon(conn)
        logger.warning("imap_connection_dropped", host=self._endpoint.host)

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except TimeoutError as exc:
            raise NetworkError(f"IMAP call to {self._endpoint.host} timed out") from exc
        except ssl.SSLCertVerificationError as exc:
            raise ConfigurationError(f"TLS certificate for {self._endpoint.host} is not trusted") from exc
        except imaplib.IMAP4.abort as exc:
            raise NetworkError(f"IMAP connection aborted: {_decode(exc)}") from exc
        except OSError as exc:
            raise NetworkError(f"Cannot reach {self._endpoint.host}:{self._endpoint.port}: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise NetworkError(f"IMAP protocol error: {_decode(exc)}") from exc


def _close_sync(conn: imaplib.IMAP4) -> None:
    try:
        conn.close()
    except (imaplib.IMAP4.error, OSError):
        pass
    _shutdown_quietly(conn)


def _shutdown_quietly(conn: imaplib.IMAP4) -> None:
    try:
        conn.logout()
    except (imaplib.IMAP4.error, OSError):
        pass


def _abandon(conn: imaplib.IMAP4) -> None:
    try:
        conn.shutdown()
    except OSError:
        pass


def _first_int(data) -> int | None:
    for item in data or []:
        if item is None:
            continue
        try:
            return int(item)
        except (TypeError, ValueError):
            continue
    return None


def _internal_date(meta: bytes) -> datetime | None:
    parsed = imaplib.Internaldate2tuple(meta)
    if parsed is None:
        return None
    return datetime.fromtimestamp(time.mktime(parsed), tz=UTC)


def _decode(exc: Exception) -> str:
    arg = exc.args[0] if exc.args else ""
    return arg.decode(errors="replace") if isinstance(arg, bytes) else str(arg)
