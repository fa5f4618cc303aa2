"""Chat roster: dm/group lifecycle and participant lookups.

Wraps MessageStore with the rules that keep rosters valid:
    - A dm has exactly two members, both "member"; one dm per user pair.
    - A group is created with its creator as admin; only admins may rename,
      change the picture, or add/remove participants; a group never ends up
      without an admin.
"""
import logging
import uuid
from typing import List, Optional

import duckdb

from relay.errors import AuthorizationError, NotFoundError, ValidationError

from .schemas import Chat, ChatType, GroupUpdate, Participant, ParticipantRole, utc_now
from .service import MessageStore, dm_pair_key

logger = logging.getLogger(__name__)


class ChatRoster:
    """Roster lookups and mutations over a MessageStore."""

    def __init__(self, store: MessageStore):
        self.store = store

    # -----------------------------------------------------------------------
    # Lookups used by sessions and the send path
    # -----------------------------------------------------------------------

    def chats_for_user(self, user_id: str) -> List[str]:
        return self.store.chats_for_user(user_id)

    def participants_of(self, chat_id: str) -> List[str]:
        return [p.userId for p in self.store.participants_of(chat_id)]

    def get_chat(self, chat_id: str) -> Chat:
        chat = self.store.get_chat(chat_id)
        if chat is None:
            raise NotFoundError("Chat not found")
        return chat

    def require_participant(self, chat_id: str, user_id: str) -> Chat:
        """Return the chat, or raise if it is missing or ``user_id`` is not on it."""
        chat = self.get_chat(chat_id)
        if not chat.has_participant(user_id):
            raise AuthorizationError("Not authorized to access this chat")
        return chat

    def list_chats(self, user_id: str) -> List[Chat]:
        """Chats of a user, most recently active first, with their last message."""
        chats = []
        for chat_id in self.store.chats_for_user(user_id):
            chat = self.store.get_chat(chat_id, with_last_message=True)
            if chat is not None:
                chats.append(chat)
        return chats

    # -----------------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------------

    def get_or_create_dm(self, user_id: str, other_user_id: str) -> Chat:
        """Return the dm between two users, creating it on first request."""
        if user_id == other_user_id:
            raise ValidationError("Cannot create DM with yourself")

        pair_key = dm_pair_key(user_id, other_user_id)
        existing_id = self.store.find_dm_chat_id(pair_key)
        if existing_id:
            return self.store.get_chat(existing_id, with_last_message=True)

        now = utc_now()
        chat = Chat(
            id=str(uuid.uuid4()),
            type=ChatType.DM,
            participants=[
                Participant(userId=user_id, role=ParticipantRole.MEMBER),
                Participant(userId=other_user_id, role=ParticipantRole.MEMBER),
            ],
            createdAt=now,
            updatedAt=now,
        )
        try:
            return self.store.create_chat(chat, pair_key=pair_key)
        except duckdb.ConstraintException:
            # Lost a race with a concurrent request for the same pair.
            existing_id = self.store.find_dm_chat_id(pair_key)
            if existing_id is None:
                raise
            return self.store.get_chat(existing_id, with_last_message=True)

    def create_group(
        self,
        creator_id: str,
        name: str,
        participant_ids: List[str],
        group_picture: Optional[str] = None,
    ) -> Chat:
        """Create a group with the creator as its admin."""
        members = [uid for uid in dict.fromkeys(participant_ids) if uid != creator_id]
        if not name or not members:
            raise ValidationError("Group name and participants are required")

        now = utc_now()
        chat = Chat(
            id=str(uuid.uuid4()),
            type=ChatType.GROUP,
            name=name,
            groupPicture=group_picture or "",
            participants=[Participant(userId=creator_id, role=ParticipantRole.ADMIN)]
            + [Participant(userId=uid, role=ParticipantRole.MEMBER) for uid in members],
            createdAt=now,
            updatedAt=now,
        )
        return self.store.create_chat(chat)

    def update_group(self, chat_id: str, user_id: str, update: GroupUpdate) -> Chat:
        """Rename, change picture, add or remove members. Admins only."""
        chat = self.get_chat(chat_id)
        if chat.type != ChatType.GROUP:
            raise ValidationError("Can only update group chats")
        if not chat.is_admin(user_id):
            raise AuthorizationError("Only group admins can update the group")

        removing = set(update.removeParticipants or [])
        remaining_admins = [
            p for p in chat.participants
            if p.role == ParticipantRole.ADMIN and p.userId not in removing
        ]
        if not remaining_admins:
            raise ValidationError("A group must keep at least one admin")

        self.store.apply_group_update(
            chat_id,
            name=update.name,
            group_picture=update.groupPicture,
            remove=list(removing),
            add=update.addParticipants,
        )

        logger.info("[Roster] Group %s updated by %s", chat_id, user_id)
        return self.store.get_chat(chat_id, with_last_message=True)
