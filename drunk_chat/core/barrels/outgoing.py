"""
Send queue of a conversation.

Outgoing messages are written unsent first; a drain then walks the unsent, not
in-progress messages oldest first inside one store transaction and hands each one to the
transport, stopping at the first transport failure. Only one drain runs per conversation
at a time; requests made while a drain is queued or running coalesce into one follow-up.
"""

import asyncio
import mimetypes
import os
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from slixmpp import Message

from drunk_xmpp.encryption import EncryptionError, SecurityLevel
from drunk_xmpp.references import add_forward_reference, add_media_reference, xml_encoded_length
from drunk_xmpp.transport import NetworkError

from ..constants import (
    ConversationKind, DELAY_THRESHOLD_MS, FILE_MESSAGE_PLACEHOLDER,
    INTERNAL_ERROR_NULL_MESSAGE, SecurityMode,
)
from ..models import Attachment, MessageRecord, new_unique_id, now_ms


def ms_to_datetime(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def attachment_from_file(path: str) -> Attachment:
    """
    Describe a local file as an attachment waiting for upload.

    Args:
        path: Local file path

    Returns:
        Attachment with size, title, MIME type and image flag filled in
    """
    mime_type, _ = mimetypes.guess_type(path)
    return Attachment(
        file_path=path,
        file_size=os.path.getsize(path) if os.path.exists(path) else None,
        title=os.path.basename(path),
        mime_type=mime_type,
        is_image=bool(mime_type and mime_type.startswith('image/')),
    )


class OutgoingMixin:
    """
    Mixin providing the outgoing side of a conversation.

    Requirements (provided by Conversation):
    - self.context: ChatContext
    - self.account, self.user, self.kind, self.thread_id
    - self.logger: Account logger
    - self.create_message_item(), self.mark_as_read_all(), self.get_to(), self.get_type()
    """

    # ============================================================================
    # Composition
    # ============================================================================

    def send_message(self, text: str) -> MessageRecord:
        """
        Queue a text message and request a drain.

        The stanza id of a locally composed message equals its unique id, so the
        origin-id sent on the wire maps straight back to the stored row.

        Args:
            text: Message body

        Returns:
            The stored (still unsent) message
        """
        message_id = new_unique_id()
        message = self.create_message_item(
            text,
            unique_id=message_id,
            stanza_id=message_id,
            incoming=False,
            sent=False,
            read=True,
        )
        if self.can_send_message():
            self.send_messages()
        self.mark_as_read_all()
        return message

    def send_forward_message(self, forwarded_ids: List[str], text: str = '') -> MessageRecord:
        """Queue a message quoting stored messages, followed by an optional comment."""
        message_id = new_unique_id()
        message = self.create_message_item(
            text,
            unique_id=message_id,
            stanza_id=message_id,
            incoming=False,
            sent=False,
            read=True,
            forwarded_ids=list(forwarded_ids),
        )
        if self.can_send_message():
            self.send_messages()
        return message

    def new_file_message(self, files: Iterable[str]) -> str:
        """
        Queue a file message whose attachments still have to be uploaded.

        The message stays in progress (skipped by drains) until update_file_message().

        Args:
            files: Local file paths

        Returns:
            Unique id of the new message
        """
        message_id = new_unique_id()
        self.create_message_item(
            FILE_MESSAGE_PLACEHOLDER,
            unique_id=message_id,
            stanza_id=message_id,
            incoming=False,
            sent=False,
            read=True,
            in_progress=True,
            attachments=[attachment_from_file(path) for path in files],
        )
        self.logger.info(f"File message {message_id} created for {self.user}")
        return message_id

    def update_file_message(self, message_id: str, urls: Dict[str, str],
                            not_uploaded: Optional[Iterable[str]] = None) -> bool:
        """
        Finish a file message after upload and send it.

        Args:
            message_id: Message unique id
            urls: Remote URL per local file path
            not_uploaded: Local paths whose upload failed (dropped from the message)

        Returns:
            False if the message no longer exists
        """
        failed = set(not_uploaded or ())
        store = self.context.store
        with store.transaction():
            message = store.get(message_id)
            if message is None:
                self.logger.warning(f"File message {message_id} vanished before upload finished")
                return False
            attachments = [a for a in message.attachments if a.file_path not in failed]
            for attachment in attachments:
                attachment.file_url = urls.get(attachment.file_path)
            store.replace_attachments(message_id, attachments)
            store.update(message_id, text='', sent=False, in_progress=False,
                         error=False, error_description='')
        self.send_messages()
        return True

    def update_message_with_new_attachments(self, message_id: str, files: Iterable[str]) -> bool:
        """Replace the attachments of a message with ones built from local files."""
        store = self.context.store
        with store.transaction():
            if not store.exists(message_id):
                return False
            store.replace_attachments(message_id, [attachment_from_file(path) for path in files])
        return True

    def update_message_with_error(self, message_id: str, error_description: str) -> bool:
        """Flag a message as failed (e.g. upload error); it leaves the in-progress state."""
        updated = self.context.store.update(
            message_id, error=True, error_description=error_description, in_progress=False
        )
        if updated:
            self.context.signals.message_updated.emit(self.account, self.user)
        return updated

    def remove_error_and_resend(self, message_id: str) -> bool:
        """Clear the error of a message, mark it unsent again and drain."""
        updated = self.context.store.update(
            message_id, error=False, sent=False, error_description=''
        )
        if updated:
            self.send_messages()
        return updated

    # ============================================================================
    # Drain
    # ============================================================================

    def send_messages(self) -> Optional[asyncio.Task]:
        """
        Request a drain of the send queue in the background.

        Returns:
            The drain task (an already queued one when requests coalesce)
        """
        task = self._drain_task
        if task is not None and not task.done():
            self._drain_requested = True
            return task
        self._drain_requested = False
        self._drain_task = self.context.scheduler.submit(
            self._run_drains(), name=f"drain {self.account} -> {self.user}"
        )
        return self._drain_task

    async def _run_drains(self):
        async with self._drain_lock:
            # requests made before this run started are covered by it
            self._drain_requested = False
            self.drain()
            while self._drain_requested:
                self._drain_requested = False
                await asyncio.sleep(0)
                self.drain()

    def drain(self) -> int:
        """
        Send queued messages in order, stopping at the first transport failure.

        Returns:
            Number of messages handled
        """
        if not self.can_send_message():
            self.logger.info(f"Send queue of {self.user} waits for an encrypted session")
            return 0

        store = self.context.store
        handled = 0
        with store.transaction():
            for message in store.pending_outgoing(self.account, self.user):
                if not self._send_queued_message(message):
                    break
                handled += 1
        if handled:
            self.logger.debug(f"Drained {handled} message(s) to {self.user}")
        return handled

    def can_send_message(self) -> bool:
        """
        Check the security policy before sending.

        One-to-one chats under the 'required' policy need an encrypted session; without
        one a session is started and the queue waits.
        """
        if self.kind is not ConversationKind.CHAT:
            return True
        if self.context.settings.security_mode is not SecurityMode.REQUIRED:
            return True
        encryption = self.context.encryption
        if encryption.security_level(self.account, self.user) is not SecurityLevel.PLAIN:
            return True
        try:
            encryption.start_session(self.account, self.user)
        except (EncryptionError, NetworkError) as e:
            self.logger.warning(f"Could not start encrypted session with {self.user}: {e}")
        return False

    def prepare_text(self, text: Optional[str]) -> Optional[str]:
        """
        Transform text for sending.

        Returns:
            Text to put on the wire, or None if it must not be sent
        """
        if text is None or self.kind is not ConversationKind.CHAT:
            return text
        try:
            return self.context.encryption.transform_outgoing(self.account, self.user, text)
        except EncryptionError as e:
            self.logger.warning(f"Could not prepare message for {self.user}: {e}")
            return None

    def _send_queued_message(self, message: MessageRecord) -> bool:
        """
        Build, decorate and send one queued message, then record the outcome.

        Returns:
            False if the transport refused the stanza (the message stays unsent)
        """
        text = self.prepare_text(message.text)
        encrypted = self.context.encryption.is_encrypted_envelope(text)

        current_time = now_ms()
        delay_timestamp = None
        if message.timestamp is not None and current_time - message.timestamp > DELAY_THRESHOLD_MS:
            delay_timestamp = message.timestamp

        if message.attachments:
            msg = self.create_file_message_packet(message.stanza_id, message.attachments, text)
        elif message.forwarded_ids:
            msg = self.create_forward_message_packet(message.stanza_id, message.forwarded_ids, text)
        elif text is not None:
            msg = self.create_message_packet(text, message.stanza_id)
        else:
            msg = None

        if msg is not None:
            msg['chat_state'] = 'active'
            if encrypted:
                msg.enable('carbon_private')
            msg['origin_id']['id'] = message.stanza_id
            if delay_timestamp is not None:
                msg['delay']['stamp'] = ms_to_datetime(delay_timestamp)

            on_ack = self.context.receipts.make_ack_callback(
                self.account, self.user, message.unique_id, self.context.scheduler
            )
            try:
                self.context.transport.send(self.account, msg, on_ack)
            except NetworkError as e:
                self.logger.warning(f"Send queue of {self.user} halted: {e}")
                return False

        fields = {'encrypted': encrypted, 'sent': True}
        if msg is None:
            fields['error'] = True
            fields['error_description'] = INTERNAL_ERROR_NULL_MESSAGE
            self.logger.error(f"No stanza could be built for message {message.unique_id}")
        else:
            fields['original_stanza'] = str(msg)
        if delay_timestamp is not None:
            fields['delay_timestamp'] = delay_timestamp
        if message.timestamp is None:
            fields['timestamp'] = current_time
        self.context.store.update(message.unique_id, **fields)
        self.context.signals.message_updated.emit(self.account, self.user)
        return True

    # ============================================================================
    # Stanza builders
    # ============================================================================

    def create_message_packet(self, body: Optional[str], stanza_id: Optional[str] = None) -> Message:
        """New message stanza to the conversation target, carrying the thread id."""
        msg = Message()
        msg['to'] = self.get_to()
        msg['type'] = self.get_type()
        if body is not None:
            msg['body'] = body
        msg['thread'] = self.thread_id
        if stanza_id:
            msg['id'] = stanza_id
        return msg

    def create_file_message_packet(self, stanza_id: Optional[str], attachments: List[Attachment],
                                   body: Optional[str]) -> Message:
        """
        Message with one URL line per attachment, each covered by a media reference.

        The reference span of a line starts at its separating newline.
        """
        msg = self.create_message_packet(None, stanza_id)
        builder = body or ''
        for attachment in attachments:
            row = ('\n' if builder else '') + (attachment.file_url or '')
            begin = xml_encoded_length(builder)
            builder += row
            add_media_reference(
                msg, begin, xml_encoded_length(builder) - 1, attachment.file_url or '',
                title=attachment.title,
                mime_type=attachment.mime_type,
                size=attachment.file_size,
                width=attachment.image_width,
                height=attachment.image_height,
                duration=attachment.duration,
            )
        msg['body'] = builder
        return msg

    def create_forward_message_packet(self, stanza_id: Optional[str], forwarded_ids: List[str],
                                      text: Optional[str]) -> Message:
        """
        Message quoting forwarded sub-messages ahead of the text.

        Each quote is followed by a newline and covered by a forward reference carrying
        a copy of the quoted message.
        """
        references = []
        builder = ''
        for item in self.context.store.get_many(forwarded_ids):
            fragment = self.create_message_tree(item.unique_id) + '\n'
            begin = xml_encoded_length(builder)
            builder += fragment
            references.append((item, begin, xml_encoded_length(builder) - 1))
        if text is not None:
            builder += text

        msg = self.create_message_packet(builder, stanza_id)
        for item, begin, end in references:
            stamp = ms_to_datetime(item.timestamp) if item.timestamp is not None else None
            add_forward_reference(msg, begin, end, self._forwarded_copy(item), stamp)
        return msg

    def create_message_tree(self, message_id: str, depth: int = 1) -> str:
        """
        Render a message and the messages it forwards as a quote block.

            > bob@example.com:
            >> alice@example.com:
            >> nested text
            > text

        Args:
            message_id: Message unique id
            depth: Quote nesting level

        Returns:
            Quote text ('' if the message no longer exists)
        """
        message = self.context.store.get(message_id)
        if message is None:
            return ''
        prefix = '>' * depth
        lines = [f"{prefix} {self._author_of(message)}:"]
        for child_id in message.forwarded_ids:
            child = self.create_message_tree(child_id, depth + 1)
            if child:
                lines.append(child)
        for line in (message.text or '').split('\n'):
            lines.append(f"{prefix} {line}")
        return '\n'.join(lines)

    def _author_of(self, message: MessageRecord) -> str:
        if message.original_from:
            return message.original_from.split('/', 1)[0]
        return message.user if message.incoming else message.account

    def _forwarded_copy(self, message: MessageRecord) -> Message:
        copy = Message()
        copy['from'] = message.original_from or (message.user if message.incoming else message.account)
        copy['to'] = message.account if message.incoming else message.user
        copy['type'] = 'chat'
        copy['body'] = message.text or ''
        if message.stanza_id:
            copy['id'] = message.stanza_id
        return copy
