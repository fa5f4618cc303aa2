"""DuckDB-based message store.

This module is the persistence boundary for chats and messages. Delivery
state is kept one row per (message, recipient) so that a status change for
one recipient is a single-row UPDATE and never rewrites another recipient's
state on the same message.

Database Schema:
    chats:             id, type, name, group_picture, last_message_id, timestamps
    dm_pairs:          pair_key (sorted "a:b") -> chat_id, one dm per pair
    chat_participants: chat_id, user_id, role, position
    messages:          id, seq (insertion order), chat_id, sender_id, content,
                       aggregate status, created_at, edited, client_message_id
    delivery_records:  message_id, recipient_id, position, status,
                       delivered_at, seen_at
    reactions:         message_id, user_id, emoji, seq

Thread Safety:
    The DuckDB connection is NOT thread-safe. All calls are made from the
    event loop; each statement is short and autocommitted unless wrapped in
    an explicit transaction.

Usage:
    store = MessageStore.get_instance()
    message_id = store.append(message)
    pending = store.find_pending(user_id)
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

import duckdb

from .schemas import (
    Chat,
    ChatType,
    DeliveryRecord,
    DeliveryState,
    FileAttachment,
    Message,
    Participant,
    ParticipantRole,
    Reaction,
    StorageBackend,
    utc_now,
)

logger = logging.getLogger(__name__)

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    "CREATE SEQUENCE IF NOT EXISTS reactions_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS chats (
        id              VARCHAR PRIMARY KEY,
        type            VARCHAR NOT NULL,
        name            VARCHAR,
        group_picture   VARCHAR NOT NULL DEFAULT '',
        last_message_id VARCHAR,
        created_at      TIMESTAMP NOT NULL,
        updated_at      TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dm_pairs (
        pair_key VARCHAR PRIMARY KEY,
        chat_id  VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_participants (
        chat_id  VARCHAR NOT NULL,
        user_id  VARCHAR NOT NULL,
        role     VARCHAR NOT NULL DEFAULT 'member',
        position INTEGER NOT NULL,
        PRIMARY KEY (chat_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id                VARCHAR PRIMARY KEY,
        seq               BIGINT DEFAULT nextval('messages_seq'),
        chat_id           VARCHAR NOT NULL,
        sender_id         VARCHAR NOT NULL,
        text              VARCHAR,
        image             VARCHAR,
        file_url          VARCHAR,
        file_name         VARCHAR,
        file_size         BIGINT,
        file_mime         VARCHAR,
        file_storage      VARCHAR,
        status            VARCHAR NOT NULL DEFAULT 'sent',
        created_at        TIMESTAMP NOT NULL,
        edited            BOOLEAN NOT NULL DEFAULT FALSE,
        client_message_id VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS delivery_records (
        message_id   VARCHAR NOT NULL,
        recipient_id VARCHAR NOT NULL,
        position     INTEGER NOT NULL,
        status       VARCHAR NOT NULL DEFAULT 'sent',
        delivered_at TIMESTAMP,
        seen_at      TIMESTAMP,
        PRIMARY KEY (message_id, recipient_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reactions (
        message_id VARCHAR NOT NULL,
        user_id    VARCHAR NOT NULL,
        emoji      VARCHAR NOT NULL,
        seq        BIGINT DEFAULT nextval('reactions_seq'),
        PRIMARY KEY (message_id, user_id, emoji)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_participants_user ON chat_participants(user_id)",
]

_MESSAGE_COLUMNS = (
    "id, chat_id, sender_id, text, image, file_url, file_name, file_size, "
    "file_mime, file_storage, status, created_at, edited, client_message_id"
)


def _placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


def _lower_states(status: DeliveryState) -> List[str]:
    """States a record may be promoted *from* when moving to ``status``."""
    return [s.value for s in DeliveryState if s.rank < status.rank]


def dm_pair_key(user_a: str, user_b: str) -> str:
    """Order-independent key for the dm between two users."""
    return ":".join(sorted((user_a, user_b)))


class MessageStore:
    """Singleton DuckDB store for chats, messages and delivery records.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["MessageStore"] = None
    _db_path: str = "relay_messages.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Open (or create) the database and its schema.

        Args:
            db_path: Path to DuckDB file, or ":memory:".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()
        logger.info("[Store] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "MessageStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and clear the singleton (tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        for statement in _SCHEMA:
            conn.execute(statement)

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def append(self, message: Message) -> str:
        """Persist a new message together with its delivery records.

        The message row, its records and the chat's last-message pointer are
        written in one transaction, so no reader ever sees a message without
        its full recipient set.

        Returns:
            The persisted message id.
        """
        conn = self._get_connection()
        f = message.file
        conn.begin()
        try:
            conn.execute(
                f"""
                INSERT INTO messages ({_MESSAGE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    message.id, message.chatId, message.senderId,
                    message.text, message.image,
                    f.url if f else None,
                    f.name if f else None,
                    f.size if f else None,
                    f.mimeType if f else None,
                    f.storage.value if f else None,
                    message.status.value, message.createdAt, message.edited,
                    message.clientMessageId,
                ],
            )
            for position, record in enumerate(message.deliveryStatus):
                conn.execute(
                    """
                    INSERT INTO delivery_records
                      (message_id, recipient_id, position, status, delivered_at, seen_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        message.id, record.userId, position, record.status.value,
                        record.deliveredAt, record.seenAt,
                    ],
                )
            conn.execute(
                "UPDATE chats SET last_message_id = ?, updated_at = ? WHERE id = ?",
                [message.id, message.createdAt, message.chatId],
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        logger.debug(
            "[Store] Appended message %s to chat %s (%d recipients)",
            message.id, message.chatId, len(message.deliveryStatus),
        )
        return message.id

    def get_message(self, message_id: str) -> Optional[Message]:
        rows = self._get_connection().execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", [message_id]
        ).fetchall()
        messages = self._hydrate(rows)
        return messages[0] if messages else None

    def find_by_client_id(self, sender_id: str, client_message_id: str) -> Optional[Message]:
        rows = self._get_connection().execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE sender_id = ? AND client_message_id = ?
            """,
            [sender_id, client_message_id],
        ).fetchall()
        messages = self._hydrate(rows)
        return messages[0] if messages else None

    def find_by_chat(self, chat_id: str, ascending: bool = True) -> List[Message]:
        """All messages of a chat ordered by creation time."""
        direction = "ASC" if ascending else "DESC"
        rows = self._get_connection().execute(
            f"""
            SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE chat_id = ?
            ORDER BY created_at {direction}, seq {direction}
            """,
            [chat_id],
        ).fetchall()
        return self._hydrate(rows)

    def find_pending(self, user_id: str) -> List[Message]:
        """Messages where ``user_id`` still has a record in "sent", oldest first."""
        rows = self._get_connection().execute(
            f"""
            SELECT {", ".join("m." + c.strip() for c in _MESSAGE_COLUMNS.split(","))}
            FROM messages m
            JOIN delivery_records d ON d.message_id = m.id
            WHERE d.recipient_id = ? AND d.status = 'sent'
            ORDER BY m.created_at ASC, m.seq ASC
            """,
            [user_id],
        ).fetchall()
        return self._hydrate(rows)

    def update_delivery_status(
        self,
        message_id: str,
        recipient_ids: Iterable[str],
        status: DeliveryState,
        timestamp: datetime,
    ) -> List[str]:
        """Move the named recipients' records forward to ``status``.

        Only records currently ranked below ``status`` are touched; records
        already at or past it are left as they are. Promoting to SEEN also
        fills a missing delivered_at.

        Returns:
            Recipient ids whose record actually changed.
        """
        recipients = list(dict.fromkeys(recipient_ids))
        if not recipients or status == DeliveryState.SENT:
            return []
        lower = _lower_states(status)

        if status == DeliveryState.DELIVERED:
            set_clause = "status = ?, delivered_at = ?"
            values = [status.value, timestamp]
        else:
            set_clause = "status = ?, seen_at = ?, delivered_at = COALESCE(delivered_at, ?)"
            values = [status.value, timestamp, timestamp]

        rows = self._get_connection().execute(
            f"""
            UPDATE delivery_records SET {set_clause}
            WHERE message_id = ?
              AND recipient_id IN ({_placeholders(recipients)})
              AND status IN ({_placeholders(lower)})
            RETURNING recipient_id
            """,
            values + [message_id] + recipients + lower,
        ).fetchall()
        return [row[0] for row in rows]

    def get_delivery_records(self, message_id: str) -> List[DeliveryRecord]:
        return self._records_for([message_id]).get(message_id, [])

    def get_aggregate_status(self, message_id: str) -> Optional[DeliveryState]:
        row = self._get_connection().execute(
            "SELECT status FROM messages WHERE id = ?", [message_id]
        ).fetchone()
        return DeliveryState(row[0]) if row else None

    def update_aggregate_status(self, message_id: str, status: DeliveryState) -> None:
        self._get_connection().execute(
            "UPDATE messages SET status = ? WHERE id = ?", [status.value, message_id]
        )

    def update_text(self, message_id: str, text: str) -> None:
        self._get_connection().execute(
            "UPDATE messages SET text = ?, edited = TRUE WHERE id = ?", [text, message_id]
        )

    def delete_message(self, message_id: str) -> bool:
        """Remove a message, its records and reactions.

        If it was its chat's last message, the pointer falls back to the
        previous message (or NULL).
        """
        conn = self._get_connection()
        row = conn.execute(
            "SELECT chat_id FROM messages WHERE id = ?", [message_id]
        ).fetchone()
        if row is None:
            return False
        chat_id = row[0]
        conn.begin()
        try:
            conn.execute("DELETE FROM reactions WHERE message_id = ?", [message_id])
            conn.execute("DELETE FROM delivery_records WHERE message_id = ?", [message_id])
            conn.execute("DELETE FROM messages WHERE id = ?", [message_id])
            conn.execute(
                """
                UPDATE chats SET last_message_id = (
                    SELECT id FROM messages WHERE chat_id = ?
                    ORDER BY created_at DESC, seq DESC LIMIT 1
                )
                WHERE id = ? AND last_message_id = ?
                """,
                [chat_id, chat_id, message_id],
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return True

    def toggle_reaction(self, message_id: str, user_id: str, emoji: str) -> bool:
        """Remove the (user, emoji) reaction if present, add it otherwise.

        Returns:
            True if the reaction is now present, False if it was removed.
        """
        conn = self._get_connection()
        removed = conn.execute(
            """
            DELETE FROM reactions
            WHERE message_id = ? AND user_id = ? AND emoji = ?
            RETURNING user_id
            """,
            [message_id, user_id, emoji],
        ).fetchall()
        if removed:
            return False
        conn.execute(
            "INSERT INTO reactions (message_id, user_id, emoji) VALUES (?, ?, ?)",
            [message_id, user_id, emoji],
        )
        return True

    # -----------------------------------------------------------------------
    # Chats
    # -----------------------------------------------------------------------

    def create_chat(self, chat: Chat, pair_key: Optional[str] = None) -> Chat:
        """Insert a chat and its roster. dm chats also claim their pair key."""
        conn = self._get_connection()
        conn.begin()
        try:
            conn.execute(
                """
                INSERT INTO chats (id, type, name, group_picture, last_message_id,
                                   created_at, updated_at)
                VALUES (?, ?, ?, ?, NULL, ?, ?)
                """,
                [chat.id, chat.type.value, chat.name, chat.groupPicture,
                 chat.createdAt, chat.updatedAt],
            )
            if pair_key is not None:
                conn.execute(
                    "INSERT INTO dm_pairs (pair_key, chat_id) VALUES (?, ?)",
                    [pair_key, chat.id],
                )
            for position, participant in enumerate(chat.participants):
                conn.execute(
                    """
                    INSERT INTO chat_participants (chat_id, user_id, role, position)
                    VALUES (?, ?, ?, ?)
                    """,
                    [chat.id, participant.userId, participant.role.value, position],
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        logger.info("[Store] Created %s chat %s", chat.type.value, chat.id)
        return chat

    def get_chat(self, chat_id: str, with_last_message: bool = False) -> Optional[Chat]:
        row = self._get_connection().execute(
            """
            SELECT id, type, name, group_picture, last_message_id, created_at, updated_at
            FROM chats WHERE id = ?
            """,
            [chat_id],
        ).fetchone()
        if row is None:
            return None
        return self._chat_from_row(row, with_last_message)

    def find_dm_chat_id(self, pair_key: str) -> Optional[str]:
        row = self._get_connection().execute(
            "SELECT chat_id FROM dm_pairs WHERE pair_key = ?", [pair_key]
        ).fetchone()
        return row[0] if row else None

    def chats_for_user(self, user_id: str) -> List[str]:
        rows = self._get_connection().execute(
            """
            SELECT c.id FROM chats c
            JOIN chat_participants p ON p.chat_id = c.id
            WHERE p.user_id = ?
            ORDER BY c.updated_at DESC
            """,
            [user_id],
        ).fetchall()
        return [row[0] for row in rows]

    def participants_of(self, chat_id: str) -> List[Participant]:
        rows = self._get_connection().execute(
            """
            SELECT user_id, role FROM chat_participants
            WHERE chat_id = ? ORDER BY position ASC
            """,
            [chat_id],
        ).fetchall()
        return [Participant(userId=r[0], role=ParticipantRole(r[1])) for r in rows]

    def update_chat(
        self,
        chat_id: str,
        name: Optional[str] = None,
        group_picture: Optional[str] = None,
    ) -> None:
        fields: Dict[str, str] = {}
        if name:
            fields["name"] = name
        if group_picture:
            fields["group_picture"] = group_picture
        if not fields:
            return
        set_clause = ", ".join(f"{k} = ?" for k in fields)
        self._get_connection().execute(
            f"UPDATE chats SET {set_clause}, updated_at = ? WHERE id = ?",
            list(fields.values()) + [utc_now(), chat_id],
        )

    def add_participants(self, chat_id: str, user_ids: List[str]) -> List[str]:
        """Add members not already on the roster. Returns the ids added."""
        conn = self._get_connection()
        existing = {p.userId for p in self.participants_of(chat_id)}
        row = conn.execute(
            "SELECT COALESCE(MAX(position), -1) FROM chat_participants WHERE chat_id = ?",
            [chat_id],
        ).fetchone()
        position = row[0] + 1
        added = []
        for user_id in dict.fromkeys(user_ids):
            if user_id in existing:
                continue
            conn.execute(
                """
                INSERT INTO chat_participants (chat_id, user_id, role, position)
                VALUES (?, ?, 'member', ?)
                """,
                [chat_id, user_id, position],
            )
            position += 1
            added.append(user_id)
        return added

    def remove_participants(self, chat_id: str, user_ids: List[str]) -> int:
        if not user_ids:
            return 0
        rows = self._get_connection().execute(
            f"""
            DELETE FROM chat_participants
            WHERE chat_id = ? AND user_id IN ({_placeholders(user_ids)})
            RETURNING user_id
            """,
            [chat_id] + list(user_ids),
        ).fetchall()
        return len(rows)

    def apply_group_update(
        self,
        chat_id: str,
        name: Optional[str] = None,
        group_picture: Optional[str] = None,
        remove: Optional[List[str]] = None,
        add: Optional[List[str]] = None,
    ) -> None:
        """Rename and change members of a group in one transaction."""
        conn = self._get_connection()
        conn.begin()
        try:
            self.update_chat(chat_id, name=name, group_picture=group_picture)
            if remove:
                self.remove_participants(chat_id, remove)
            if add:
                self.add_participants(chat_id, add)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _chat_from_row(self, row, with_last_message: bool) -> Chat:
        chat = Chat(
            id=row[0],
            type=ChatType(row[1]),
            name=row[2],
            groupPicture=row[3] or "",
            lastMessageId=row[4],
            createdAt=row[5],
            updatedAt=row[6],
            participants=self.participants_of(row[0]),
        )
        if with_last_message and chat.lastMessageId:
            chat.lastMessage = self.get_message(chat.lastMessageId)
        return chat

    def _records_for(self, message_ids: List[str]) -> Dict[str, List[DeliveryRecord]]:
        if not message_ids:
            return {}
        rows = self._get_connection().execute(
            f"""
            SELECT message_id, recipient_id, status, delivered_at, seen_at
            FROM delivery_records
            WHERE message_id IN ({_placeholders(message_ids)})
            ORDER BY message_id, position ASC
            """,
            message_ids,
        ).fetchall()
        records: Dict[str, List[DeliveryRecord]] = {}
        for message_id, recipient_id, status, delivered_at, seen_at in rows:
            records.setdefault(message_id, []).append(
                DeliveryRecord(
                    userId=recipient_id,
                    status=DeliveryState(status),
                    deliveredAt=delivered_at,
                    seenAt=seen_at,
                )
            )
        return records

    def _reactions_for(self, message_ids: List[str]) -> Dict[str, List[Reaction]]:
        if not message_ids:
            return {}
        rows = self._get_connection().execute(
            f"""
            SELECT message_id, user_id, emoji FROM reactions
            WHERE message_id IN ({_placeholders(message_ids)})
            ORDER BY seq ASC
            """,
            message_ids,
        ).fetchall()
        reactions: Dict[str, List[Reaction]] = {}
        for message_id, user_id, emoji in rows:
            reactions.setdefault(message_id, []).append(Reaction(userId=user_id, emoji=emoji))
        return reactions

    def _hydrate(self, rows) -> List[Message]:
        """Build Message objects from message rows plus their records and reactions."""
        ids = [row[0] for row in rows]
        records = self._records_for(ids)
        reactions = self._reactions_for(ids)
        messages = []
        for row in rows:
            (message_id, chat_id, sender_id, text, image, file_url, file_name,
             file_size, file_mime, file_storage, status, created_at, edited,
             client_message_id) = row
            attachment = None
            if file_url:
                attachment = FileAttachment(
                    url=file_url,
                    name=file_name,
                    size=file_size,
                    mimeType=file_mime,
                    storage=StorageBackend(file_storage or StorageBackend.S3.value),
                )
            messages.append(Message(
                id=message_id,
                chatId=chat_id,
                senderId=sender_id,
                text=text,
                image=image,
                file=attachment,
                status=DeliveryState(status),
                deliveryStatus=records.get(message_id, []),
                createdAt=created_at,
                edited=bool(edited),
                reactions=reactions.get(message_id, []),
                clientMessageId=client_message_id,
            ))
        return messages
