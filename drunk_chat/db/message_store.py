"""
Message store adapter.

Durable, queryable storage of MessageRecord rows on top of Database. All writes go
through Database.transaction() so a caller can group several of them into one unit.
"""

import logging
import sqlite3
from typing import Iterable, List, Optional, Sequence, Tuple

from .database import Database
from ..core.constants import NotificationMode
from ..core.models import (
    Attachment, ChatData, GroupchatUser, MessageRecord, NotificationState, now_ms
)


logger = logging.getLogger('drunk_chat.message_store')


MESSAGE_COLUMNS = (
    'unique_id', 'account', 'user', 'resource', 'text', 'markup_text', 'action',
    'timestamp', 'delay_timestamp', 'incoming', 'read', 'sent', 'encrypted',
    'offline', 'from_muc', 'in_progress', 'error', 'error_description',
    'acknowledged', 'forwarded', 'stanza_id', 'previous_id', 'original_stanza',
    'original_from', 'parent_message_id', 'groupchat_user_id',
)

BOOL_COLUMNS = frozenset((
    'incoming', 'read', 'sent', 'encrypted', 'offline', 'from_muc',
    'in_progress', 'error', 'acknowledged', 'forwarded',
))

ATTACHMENT_COLUMNS = (
    'file_path', 'file_url', 'file_size', 'title', 'mime_type', 'is_image',
    'image_width', 'image_height', 'duration',
)


def _placeholders(count: int) -> str:
    return ', '.join('?' * count)


class MessageStore:
    """Message persistence for the chat engine."""

    def __init__(self, db: Database):
        """
        Args:
            db: Initialized Database instance
        """
        self.db = db

    def transaction(self):
        """Open (or join) a store transaction."""
        return self.db.transaction()

    # =========================================================================
    # Writes
    # =========================================================================

    def save(self, message: MessageRecord):
        """
        Insert or replace a message with its attachments and forwarded ids.

        Args:
            message: Record to persist
        """
        values = tuple(
            int(getattr(message, col)) if col in BOOL_COLUMNS else getattr(message, col)
            for col in MESSAGE_COLUMNS
        )
        with self.db.transaction():
            self.db.execute(
                f"INSERT OR REPLACE INTO message ({', '.join(MESSAGE_COLUMNS)}) "
                f"VALUES ({_placeholders(len(MESSAGE_COLUMNS))})",
                values
            )
            self._write_attachments(message.unique_id, message.attachments)
            self.db.execute("DELETE FROM forward_id WHERE message_id = ?", (message.unique_id,))
            for position, forward_id in enumerate(message.forwarded_ids):
                self.db.execute(
                    "INSERT INTO forward_id (message_id, position, forward_message_id) VALUES (?, ?, ?)",
                    (message.unique_id, position, forward_id)
                )
        logger.debug(f"Saved message {message.unique_id} ({message.account} / {message.user})")

    def _write_attachments(self, message_id: str, attachments: Sequence[Attachment]):
        self.db.execute("DELETE FROM attachment WHERE message_id = ?", (message_id,))
        for position, attachment in enumerate(attachments):
            cursor = self.db.execute(
                f"INSERT INTO attachment (message_id, position, {', '.join(ATTACHMENT_COLUMNS)}) "
                f"VALUES (?, ?, {_placeholders(len(ATTACHMENT_COLUMNS))})",
                (message_id, position) + tuple(
                    int(getattr(attachment, col)) if col == 'is_image' else getattr(attachment, col)
                    for col in ATTACHMENT_COLUMNS
                )
            )
            attachment.id = cursor.lastrowid

    def replace_attachments(self, message_id: str, attachments: Sequence[Attachment]):
        """Replace the attachment list of a stored message."""
        with self.db.transaction():
            self._write_attachments(message_id, attachments)

    def update(self, message_id: str, **fields) -> bool:
        """
        Update columns of a stored message.

        Args:
            message_id: Message unique id
            **fields: Column values

        Returns:
            True if the message exists
        """
        unknown = set(fields) - set(MESSAGE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown message columns: {sorted(unknown)}")
        if not fields:
            return self.exists(message_id)

        assignments = ', '.join(f"{col} = ?" for col in fields)
        values = tuple(int(v) if col in BOOL_COLUMNS else v for col, v in fields.items())
        with self.db.transaction():
            cursor = self.db.execute(
                f"UPDATE message SET {assignments} WHERE unique_id = ?",
                values + (message_id,)
            )
        return cursor.rowcount > 0

    def mark_acknowledged(self, message_id: str) -> bool:
        """
        Flip the acknowledged flag.

        Returns:
            False if the message no longer exists
        """
        updated = self.update(message_id, acknowledged=True)
        if not updated:
            logger.debug(f"Ack for missing message {message_id} ignored")
        return updated

    def mark_read(self, message_ids: Iterable[str]) -> int:
        """Set read=1 for the given ids. Returns the number of rows changed."""
        ids = list(message_ids)
        if not ids:
            return 0
        with self.db.transaction():
            cursor = self.db.execute(
                f"UPDATE message SET read = 1 WHERE read = 0 AND unique_id IN ({_placeholders(len(ids))})",
                tuple(ids)
            )
        return cursor.rowcount

    def delete(self, message_ids: Iterable[str]) -> int:
        """
        Delete messages together with their forwarded sub-messages.

        Returns:
            Number of top-level rows removed
        """
        ids = list(message_ids)
        if not ids:
            return 0
        marks = _placeholders(len(ids))
        with self.db.transaction():
            cursor = self.db.execute(
                f"DELETE FROM message WHERE unique_id IN ({marks})", tuple(ids)
            )
            deleted = cursor.rowcount
            self.db.execute(
                f"DELETE FROM message WHERE parent_message_id IN ({marks})", tuple(ids)
            )
        return deleted

    def clear_history(self, account: str, user: str) -> int:
        """Delete every message of a conversation. Returns the number of rows removed."""
        with self.db.transaction():
            cursor = self.db.execute(
                "DELETE FROM message WHERE account = ? AND user = ?", (account, user)
            )
        logger.info(f"Cleared {cursor.rowcount} message(s) of {account} / {user}")
        return cursor.rowcount

    def clear_account(self, account: str) -> int:
        """Delete every message and chat metadata row of an account."""
        with self.db.transaction():
            cursor = self.db.execute("DELETE FROM message WHERE account = ?", (account,))
            self.db.execute("DELETE FROM chat_data WHERE account = ?", (account,))
        return cursor.rowcount

    # =========================================================================
    # Reads
    # =========================================================================

    def _row_to_message(self, row: sqlite3.Row) -> MessageRecord:
        kwargs = {
            col: bool(row[col]) if col in BOOL_COLUMNS else row[col]
            for col in MESSAGE_COLUMNS
        }
        message = MessageRecord(**kwargs)
        message.attachments = [
            Attachment(
                id=a['id'],
                **{col: bool(a[col]) if col == 'is_image' else a[col] for col in ATTACHMENT_COLUMNS}
            )
            for a in self.db.fetchall(
                "SELECT * FROM attachment WHERE message_id = ? ORDER BY position", (row['unique_id'],)
            )
        ]
        message.forwarded_ids = [
            f['forward_message_id']
            for f in self.db.fetchall(
                "SELECT forward_message_id FROM forward_id WHERE message_id = ? ORDER BY position",
                (row['unique_id'],)
            )
        ]
        return message

    def get(self, message_id: str) -> Optional[MessageRecord]:
        row = self.db.fetchone("SELECT * FROM message WHERE unique_id = ?", (message_id,))
        return self._row_to_message(row) if row else None

    def exists(self, message_id: str) -> bool:
        return self.db.fetchone(
            "SELECT 1 FROM message WHERE unique_id = ?", (message_id,)
        ) is not None

    def get_many(self, message_ids: Sequence[str]) -> List[MessageRecord]:
        """Fetch messages by id, keeping the order of message_ids and skipping missing ones."""
        if not message_ids:
            return []
        rows = self.db.fetchall(
            f"SELECT * FROM message WHERE unique_id IN ({_placeholders(len(message_ids))})",
            tuple(message_ids)
        )
        by_id = {row['unique_id']: row for row in rows}
        return [self._row_to_message(by_id[i]) for i in message_ids if i in by_id]

    def query(
        self,
        account: Optional[str] = None,
        user: Optional[str] = None,
        *,
        sent: Optional[bool] = None,
        read: Optional[bool] = None,
        incoming: Optional[bool] = None,
        in_progress: Optional[bool] = None,
        action_null: Optional[bool] = None,
        action: Optional[str] = None,
        text_not_null: bool = False,
        top_level: bool = True,
        ids: Optional[Sequence[str]] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[MessageRecord]:
        """
        Query messages sorted by timestamp.

        Args:
            account: Account filter
            user: Peer filter
            sent, read, incoming, in_progress: Flag filters (None = any)
            action_null: True for text messages only, False for actions only
            action: Only this action
            text_not_null: Skip rows without text
            top_level: Skip forwarded sub-messages
            ids: Restrict to this id set
            descending: Newest first
            limit: Maximum number of rows

        Returns:
            List of MessageRecord
        """
        where, params = self._where(
            account, user, sent=sent, read=read, incoming=incoming, in_progress=in_progress,
            action_null=action_null, action=action, text_not_null=text_not_null, top_level=top_level, ids=ids
        )
        sql = f"SELECT * FROM message{where} ORDER BY timestamp {'DESC' if descending else 'ASC'}, rowid {'DESC' if descending else 'ASC'}"
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)
        return [self._row_to_message(row) for row in self.db.fetchall(sql, params)]

    def count(self, account: Optional[str] = None, user: Optional[str] = None, **filters) -> int:
        """Count messages matching the same filters as query()."""
        where, params = self._where(account, user, **filters)
        row = self.db.fetchone(f"SELECT COUNT(*) AS n FROM message{where}", params)
        return row['n']

    @staticmethod
    def _where(account, user, sent=None, read=None, incoming=None, in_progress=None,
               action_null=None, action=None, text_not_null=False, top_level=True, ids=None) -> Tuple[str, tuple]:
        clauses = []
        params: list = []
        if account is not None:
            clauses.append("account = ?")
            params.append(account)
        if user is not None:
            clauses.append("user = ?")
            params.append(user)
        for col, value in (('sent', sent), ('read', read), ('incoming', incoming),
                           ('in_progress', in_progress)):
            if value is not None:
                clauses.append(f"{col} = ?")
                params.append(int(value))
        if action_null is True:
            clauses.append("action IS NULL")
        elif action_null is False:
            clauses.append("action IS NOT NULL")
        if action is not None:
            clauses.append("action = ?")
            params.append(action)
        if text_not_null:
            clauses.append("text IS NOT NULL")
        if top_level:
            clauses.append("parent_message_id IS NULL")
        if ids is not None:
            ids = list(ids)
            if not ids:
                clauses.append("0")
            else:
                clauses.append(f"unique_id IN ({_placeholders(len(ids))})")
                params.extend(ids)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, tuple(params)

    def pending_outgoing(self, account: str, user: str) -> List[MessageRecord]:
        """Unsent, not in-progress messages of a conversation, oldest first."""
        return self.query(account, user, sent=False, in_progress=False)

    def count_unread(self, account: str, user: str) -> int:
        """Incoming, unread, top-level messages with text."""
        return self.count(account, user, incoming=True, read=False, text_not_null=True)

    def unread_ids(self, account: str, user: str) -> List[str]:
        return [
            m.unique_id for m in
            self.query(account, user, incoming=True, read=False, text_not_null=True)
        ]

    def has_incoming_stanza_id(self, account: str, user: str, stanza_id: str) -> bool:
        """True if an incoming top-level message with this stanza id is already stored."""
        return self.db.fetchone(
            """
            SELECT 1 FROM message
            WHERE account = ? AND user = ? AND stanza_id = ?
              AND incoming = 1 AND parent_message_id IS NULL
            LIMIT 1
            """,
            (account, user, stanza_id)
        ) is not None

    def unsent_peers(self) -> List[Tuple[str, str]]:
        """(account, user) pairs that still have unsent outgoing messages."""
        rows = self.db.fetchall(
            "SELECT DISTINCT account, user FROM message "
            "WHERE sent = 0 AND incoming = 0 AND parent_message_id IS NULL"
        )
        return [(row['account'], row['user']) for row in rows]

    # =========================================================================
    # Conversation metadata
    # =========================================================================

    def load_chat_data(self, account: str, user: str) -> Optional[ChatData]:
        row = self.db.fetchone(
            "SELECT * FROM chat_data WHERE account = ? AND user = ?", (account, user)
        )
        if row is None:
            return None
        return ChatData(
            account=account,
            user=user,
            last_position=row['last_position'],
            archived=bool(row['archived']),
            notification_state=NotificationState(
                mode=NotificationMode.normalize(row['notification_mode']),
                timestamp=row['notification_timestamp'] or 0,
            ),
            history_requested_at_start=bool(row['history_requested_at_start']),
        )

    def save_chat_data(self, data: ChatData):
        with self.db.transaction():
            self.db.execute(
                """
                INSERT OR REPLACE INTO chat_data
                    (account, user, last_position, archived, notification_mode,
                     notification_timestamp, history_requested_at_start)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    data.account, data.user, data.last_position, int(data.archived),
                    data.notification_state.mode.value, data.notification_state.timestamp,
                    int(data.history_requested_at_start),
                )
            )

    def save_groupchat_user(self, user: GroupchatUser):
        with self.db.transaction():
            self.db.execute(
                """
                INSERT OR REPLACE INTO groupchat_user (id, nickname, jid, role, avatar, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user.id, user.nickname, user.jid, user.role, user.avatar, now_ms())
            )

    def get_groupchat_user(self, user_id: str) -> Optional[GroupchatUser]:
        row = self.db.fetchone("SELECT * FROM groupchat_user WHERE id = ?", (user_id,))
        if row is None:
            return None
        return GroupchatUser(
            id=row['id'], nickname=row['nickname'], jid=row['jid'],
            role=row['role'], avatar=row['avatar'],
        )
