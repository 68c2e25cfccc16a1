"""Operator commands typed into the Telegram forum group.

Every command except `/password` requires an authenticated operator.
Command failures are reported back as `❌ Command error: ...` and never
propagate into the polling loop.

Paged listings (`/contacts`, `/searchcontact`, `/listgroups`) carry inline
prev/next buttons; their callback data encodes the page (and the base64 query
for searches), so no per-listing state is kept.

`/backup` exports only the bridge namespace of the host document; `/restore`
replaces it from a backup file attached to (or replied to by) the command.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from datetime import datetime
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Final

from .engine.outbound import ACCESS_DENIED_TEXT
from .sink.messages import extract_sender_id, extract_thread_id
from .source.messages import is_group_jid, user_jid_for_phone

if TYPE_CHECKING:
    from .engine.bridge import Bridge
    from .sink.api import TelegramBotApi

logger = logging.getLogger(__name__)

CONTACTS_PER_PAGE: Final[int] = 20
SEARCH_RESULTS_PER_PAGE: Final[int] = 15
GROUPS_PER_PAGE: Final[int] = 10
REPORT_LINE_LIMIT: Final[int] = 20
MAX_CALLBACK_QUERY_CHARS: Final[int] = 24
_PHONE_RE: Final[re.Pattern[str]] = re.compile(r"^\d{6,15}$")
_INVITE_RE: Final[re.Pattern[str]] = re.compile(
    r"chat\.whatsapp\.com/([0-9A-Za-z]{20,24})", re.IGNORECASE
)
_UNKNOWN_GROUP: Final[str] = "Unknown Group"
BACKUP_FORMAT: Final[str] = "wabridge-backup"
RESTORE_HELP: Final[str] = "\n".join(
    [
        "📁 Restore bridge mappings",
        "",
        "Send a backup file with the caption /restore, or reply /restore to a backup file.",
        "⚠️ This replaces every current mapping, contact and filter.",
    ]
)

BOT_COMMANDS: Final[tuple[tuple[str, str], ...]] = (
    ("start", "Show the bridge menu"),
    ("status", "Show bridge status"),
    ("send", "Send a message: /send <number> <message>"),
    ("contacts", "List contacts"),
    ("searchcontact", "Search contacts by name or phone"),
    ("addfilter", "Block outgoing messages starting with a word"),
    ("filters", "List message filters"),
    ("clearfilters", "Remove all message filters"),
    ("updatetopics", "Rename topics from current contact names"),
    ("reconcile", "Recreate topics that were deleted"),
    ("listgroups", "List joined WhatsApp groups"),
    ("joingroup", "Join a WhatsApp group: /joingroup <invite link>"),
    ("backup", "Download a backup of the bridge mappings"),
    ("restore", "Restore bridge mappings from a backup file"),
    ("password", "Authenticate: /password <password>"),
)

type CommandFn = Callable[[dict[str, Any], str], Awaitable[None]]


def menu_text() -> str:
    lines = ["🤖 WhatsApp Bridge", "", "Available commands:"]
    lines.extend(f"/{name} - {description}" for name, description in BOT_COMMANDS)
    return "\n".join(lines)


def command_text(message: dict[str, Any]) -> str | None:
    """Return the `/command ...` line of a message, or `None`.

    A document carries its command in the caption (a backup sent with
    `/restore`).
    """

    text = message.get("text")
    if text is None and isinstance(message.get("document"), dict):
        text = message.get("caption")
    return text if isinstance(text, str) and text.startswith("/") else None


def backup_payload(namespace: dict[str, Any], created: datetime) -> dict[str, Any]:
    return {
        "format": BACKUP_FORMAT,
        "createdAt": created.isoformat(timespec="seconds"),
        "bridge": namespace,
    }


def parse_backup(raw: bytes) -> Any:
    """Return the bridge namespace stored in a backup file.

    Accepts the files written by `/backup` and whole host-document dumps
    (`{"database": {"bridge": ...}}`).

    Raises:
        ValueError: If the file is not JSON or holds no bridge namespace.
    """

    decoded = json.loads(raw.decode("utf-8"))
    if not isinstance(decoded, dict):
        raise ValueError("Backup file must contain a JSON object")
    if isinstance(decoded.get("bridge"), dict):
        return decoded["bridge"]
    database = decoded.get("database")
    if isinstance(database, dict) and isinstance(database.get("bridge"), dict):
        return database["bridge"]
    raise ValueError("Backup file has no bridge mappings")


def parse_command(text: str) -> tuple[str, str]:
    """Split `/cmd@bot rest` into `("/cmd", "rest")`."""

    head, _sep, rest = text.strip().partition(" ")
    return head.split("@", 1)[0].lower(), rest.strip()


def page_count(total: int, per_page: int) -> int:
    return max(1, (total + per_page - 1) // per_page)


def pager_markup(prefix: str, page: int, pages: int, suffix: str = "") -> dict[str, Any] | None:
    buttons = []
    tail = f"_{suffix}" if suffix else ""
    if page > 0:
        buttons.append({"text": "⬅️ Previous", "callback_data": f"{prefix}_prev_{page - 1}{tail}"})
    if page < pages - 1:
        buttons.append({"text": "Next ➡️", "callback_data": f"{prefix}_next_{page + 1}{tail}"})
    return {"inline_keyboard": [buttons]} if buttons else None


def encode_query(query: str) -> str:
    # Callback data is capped at 64 bytes.
    return base64.urlsafe_b64encode(query[:MAX_CALLBACK_QUERY_CHARS].encode()).decode().rstrip("=")


def decode_query(encoded: str) -> str:
    padded = encoded + "=" * (-len(encoded) % 4)
    return base64.urlsafe_b64decode(padded.encode()).decode()


def _group_subject(metadata: dict[str, Any] | None) -> str:
    subject = metadata.get("subject") if isinstance(metadata, dict) else None
    return subject.strip() if isinstance(subject, str) and subject.strip() else _UNKNOWN_GROUP


class CommandHandler:
    def __init__(self, bridge: Bridge) -> None:
        self.bridge = bridge
        self._commands: dict[str, CommandFn] = {
            "/start": self._start,
            "/status": self._status,
            "/send": self._send,
            "/contacts": self._contacts,
            "/searchcontact": self._search_contact,
            "/addfilter": self._add_filter,
            "/filters": self._filters,
            "/clearfilters": self._clear_filters,
            "/updatetopics": self._update_topics,
            "/reconcile": self._reconcile,
            "/listgroups": self._list_groups,
            "/joingroup": self._join_group,
            "/backup": self._backup,
            "/restore": self._restore,
        }

    @property
    def sink(self) -> TelegramBotApi:
        return self.bridge.sink

    @property
    def chat_id(self) -> int:
        return self.bridge.chat_id

    async def register_bot_commands(self) -> bool:
        commands = [{"command": name, "description": desc} for name, desc in BOT_COMMANDS]
        try:
            await self.sink.set_my_commands(commands)
        except Exception as e:
            logger.warning("Could not register bot commands: %s", e)
            return False
        return True

    async def handle(self, message: dict[str, Any]) -> bool:
        """Run one `/command` message. Returns whether a command ran."""

        text = command_text(message)
        if text is None:
            return False
        command, args = parse_command(text)
        user_id = extract_sender_id(message)

        if command == "/password":
            await self._password(message, user_id, args)
            return True
        if not self.bridge.is_operator_authenticated(user_id):
            await self.reply(message, ACCESS_DENIED_TEXT)
            return False

        handler = self._commands.get(command, self._menu)
        try:
            await handler(message, args)
        except Exception as e:
            logger.exception("Command %s failed", command)
            await self.reply(message, f"❌ Command error: {e}")
            return False
        return True

    async def reply(
        self,
        message: dict[str, Any],
        text: str,
        *,
        reply_markup: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        try:
            return await self.sink.send_message(
                chat_id=self.chat_id,
                text=text,
                message_thread_id=extract_thread_id(message),
                reply_markup=reply_markup,
            )
        except Exception as e:
            logger.warning("Command reply failed: %s", e)
            return None

    async def _edit(self, message_id: int, text: str, reply_markup: dict[str, Any] | None = None) -> None:
        await self.sink.edit_message_text(
            chat_id=self.chat_id, message_id=message_id, text=text, reply_markup=reply_markup
        )

    async def _password(self, message: dict[str, Any], user_id: int | None, args: str) -> None:
        if user_id is None:
            return
        if not args:
            await self.reply(message, "❌ Usage: /password <password>")
            return
        if self.bridge.authenticate_operator(user_id, args):
            await self.reply(message, "✅ Authentication successful. You can now use the bridge.")
        else:
            await self.reply(message, "❌ Invalid password.")

    async def _menu(self, message: dict[str, Any], args: str) -> None:
        await self.reply(message, menu_text())

    async def _start(self, message: dict[str, Any], args: str) -> None:
        await self.reply(message, menu_text())

    async def _status(self, message: dict[str, Any], args: str) -> None:
        bridge = self.bridge
        user_jid = bridge.source.user_jid
        lines = [
            "🤖 Bridge Status",
            "",
            f"🔗 WhatsApp: {'connected as ' + user_jid if user_jid else 'not connected'}",
            f"💬 Mapped chats: {len(bridge.store.chat_mappings())}",
            f"📞 Contacts: {len(bridge.store.contacts())}",
            f"🚫 Filters: {len(bridge.filters)}",
            f"👁️ Status auto-view: {'on' if bridge.config.status_auto_view else 'off'}",
        ]
        await self.reply(message, "\n".join(lines))

    async def _send(self, message: dict[str, Any], args: str) -> None:
        number, _sep, body = args.partition(" ")
        body = body.strip()
        if not number or not body:
            await self.reply(
                message, "❌ Usage: /send <number> <message>\nExample: /send 1234567890 Hello!"
            )
            return
        digits = re.sub(r"\D", "", number)
        if not _PHONE_RE.match(digits):
            await self.reply(message, "❌ Invalid phone number format.")
            return
        jid = user_jid_for_phone(digits)
        await self.bridge.presence.send_typing(jid)
        result = await self.bridge.source.send_message(jid, {"text": body})
        key = result.get("key") if isinstance(result, dict) else None
        if isinstance(key, dict) and key.get("id"):
            await self.reply(message, f"✅ Message sent to {digits}")
        else:
            await self.reply(message, "⚠️ Message sent, but no confirmation")

    # Contact listings

    def contacts_page_text(self, page: int) -> tuple[str, int, int]:
        contacts = sorted(self.bridge.store.contacts(), key=lambda item: item[1].lower())
        if not contacts:
            return "📞 No contacts found.", 0, 1
        pages = page_count(len(contacts), CONTACTS_PER_PAGE)
        page = min(max(page, 0), pages - 1)
        start = page * CONTACTS_PER_PAGE
        lines = [f"📞 Contacts (page {page + 1}/{pages}, {len(contacts)} total)", ""]
        lines.extend(
            f"{i}. {name} (+{phone})"
            for i, (phone, name) in enumerate(contacts[start : start + CONTACTS_PER_PAGE], start + 1)
        )
        return "\n".join(lines), page, pages

    def search_page_text(self, query: str, page: int) -> tuple[str, int, int]:
        needle = query.lower()
        matches = sorted(
            (
                (phone, name)
                for phone, name in self.bridge.store.contacts()
                if needle in phone or needle in name.lower()
            ),
            key=lambda item: item[1].lower(),
        )
        if not matches:
            return f'❌ No contacts found for "{query}"', 0, 1
        pages = page_count(len(matches), SEARCH_RESULTS_PER_PAGE)
        page = min(max(page, 0), pages - 1)
        start = page * SEARCH_RESULTS_PER_PAGE
        lines = [f'🔍 Results for "{query}" (page {page + 1}/{pages}, {len(matches)} found)', ""]
        lines.extend(
            f"{i}. {name} (+{phone})"
            for i, (phone, name) in enumerate(
                matches[start : start + SEARCH_RESULTS_PER_PAGE], start + 1
            )
        )
        return "\n".join(lines), page, pages

    async def _contacts(self, message: dict[str, Any], args: str) -> None:
        requested = int(args) - 1 if args.isdigit() and int(args) > 0 else 0
        text, page, pages = self.contacts_page_text(requested)
        await self.reply(message, text, reply_markup=pager_markup("contacts", page, pages))

    async def _search_contact(self, message: dict[str, Any], args: str) -> None:
        if not args:
            await self.reply(
                message, "❌ Usage: /searchcontact <name or phone>\nExample: /searchcontact John"
            )
            return
        text, page, pages = self.search_page_text(args, 0)
        await self.reply(
            message, text, reply_markup=pager_markup("search", page, pages, encode_query(args))
        )

    async def handle_callback_query(self, callback_query: dict[str, Any]) -> bool:
        """Page through a contact or group listing from an inline button."""

        query_id = callback_query.get("id")
        sender = callback_query.get("from")
        user_id = sender.get("id") if isinstance(sender, dict) else None
        if not isinstance(query_id, str):
            return False
        if not self.bridge.is_operator_authenticated(user_id):
            await self.sink.answer_callback_query(
                query_id, text="🔒 Access denied. Use /password to authenticate.", show_alert=True
            )
            return False

        message = callback_query.get("message")
        message_id = message.get("message_id") if isinstance(message, dict) else None
        data = callback_query.get("data")
        if not isinstance(message_id, int) or not isinstance(data, str):
            await self.sink.answer_callback_query(query_id)
            return False

        parts = data.split("_", 3)
        try:
            if len(parts) >= 3 and parts[0] == "contacts":
                text, page, pages = self.contacts_page_text(int(parts[2]))
                await self._edit(message_id, text, pager_markup("contacts", page, pages))
            elif len(parts) == 4 and parts[0] == "search":
                query = decode_query(parts[3])
                text, page, pages = self.search_page_text(query, int(parts[2]))
                await self._edit(message_id, text, pager_markup("search", page, pages, parts[3]))
            elif len(parts) >= 3 and parts[0] == "listgroups":
                text, page, pages = await self.groups_page_text(int(parts[2]))
                await self._edit(message_id, text, pager_markup("listgroups", page, pages))
            else:
                await self.sink.answer_callback_query(query_id)
                return False
        except (ValueError, binascii.Error) as e:
            logger.warning("Bad callback data %r: %s", data, e)
            await self.sink.answer_callback_query(query_id, text="❌ Error occurred")
            return False
        await self.sink.answer_callback_query(query_id, text=f"📄 Page {page + 1}")
        return True

    # Filters

    async def _add_filter(self, message: dict[str, Any], args: str) -> None:
        if not args:
            await self.reply(message, "❌ Usage: /addfilter <word>")
            return
        word = await self.bridge.add_filter(args)
        await self.reply(message, f"✅ Added filter: {word}")

    async def _filters(self, message: dict[str, Any], args: str) -> None:
        filters = sorted(self.bridge.filters)
        if not filters:
            await self.reply(message, "✅ No filters set.")
            return
        lines = ["🚫 Blocked prefixes:", ""]
        lines.extend(f"- {word}" for word in filters)
        await self.reply(message, "\n".join(lines))

    async def _clear_filters(self, message: dict[str, Any], args: str) -> None:
        await self.bridge.clear_filters()
        await self.reply(message, "🧹 All filters cleared.")

    # Topic maintenance

    async def _update_topics(self, message: dict[str, Any], args: str) -> None:
        progress = await self.reply(message, "🔄 Updating topic names...")
        report = await self.bridge.update_topic_names()
        lines = [
            "✅ Topic update complete",
            "",
            f"Updated: {report.updated}",
            f"Skipped: {report.skipped}",
            f"Errors: {report.errors}",
            f"Total: {report.total}",
        ]
        if report.lines:
            lines.append("")
            lines.extend(report.lines[:REPORT_LINE_LIMIT])
            if len(report.lines) > REPORT_LINE_LIMIT:
                lines.append(f"... and {len(report.lines) - REPORT_LINE_LIMIT} more")
        await self._finish(message, progress, "\n".join(lines))

    async def _reconcile(self, message: dict[str, Any], args: str) -> None:
        progress = await self.reply(message, "🔄 Checking topics...")
        healed = await self.bridge.reconcile_all_topics()
        await self._finish(message, progress, f"✅ Reconciliation complete: {healed} topics recreated")

    async def _finish(self, message: dict[str, Any], progress: dict[str, Any] | None, text: str) -> None:
        progress_id = progress.get("message_id") if isinstance(progress, dict) else None
        if isinstance(progress_id, int):
            await self._edit(progress_id, text)
        else:
            await self.reply(message, text)

    # Groups

    async def groups_page_text(self, page: int) -> tuple[str, int, int]:
        groups = await self.bridge.source.participating_groups()
        if not groups:
            return "⚠️ The bridged account has not joined any WhatsApp groups yet.", 0, 1
        listed = sorted(groups.items(), key=lambda item: _group_subject(item[1]).lower())
        pages = page_count(len(listed), GROUPS_PER_PAGE)
        page = min(max(page, 0), pages - 1)
        start = page * GROUPS_PER_PAGE
        lines = [f"👥 WhatsApp groups (page {page + 1}/{pages}, {len(listed)} total)", ""]
        for i, (jid, metadata) in enumerate(listed[start : start + GROUPS_PER_PAGE], start + 1):
            participants = metadata.get("participants")
            members = len(participants) if isinstance(participants, list) else 0
            lines.append(f"{i}. {_group_subject(metadata)} ({members} members)")
            lines.append(f"   {jid}")
        return "\n".join(lines), page, pages

    async def _list_groups(self, message: dict[str, Any], args: str) -> None:
        requested = int(args) - 1 if args.isdigit() and int(args) > 0 else 0
        text, page, pages = await self.groups_page_text(requested)
        await self.reply(message, text, reply_markup=pager_markup("listgroups", page, pages))

    async def _join_group(self, message: dict[str, Any], args: str) -> None:
        if not args:
            await self.reply(
                message,
                "❌ Usage: /joingroup <invite link>\n"
                "Example: /joingroup https://chat.whatsapp.com/ABCDEFGHIJKLMNOPQRST",
            )
            return
        match = _INVITE_RE.search(args)
        if match is None:
            await self.reply(message, "❌ Invalid WhatsApp group invite link.")
            return

        progress = await self.reply(message, "🔄 Joining WhatsApp group...")
        group_jid = await self.bridge.source.accept_group_invite(match.group(1))
        if not group_jid or not is_group_jid(group_jid):
            await self._finish(
                message, progress, "❌ Could not join the group. The link may be invalid or expired."
            )
            return
        try:
            name = _group_subject(await self.bridge.source.group_metadata(group_jid))
        except Exception as e:
            logger.warning("Joined %s but could not fetch its metadata: %s", group_jid, e)
            name = _UNKNOWN_GROUP
        logger.info("Joined WhatsApp group %r (%s)", name, group_jid)
        await self._finish(message, progress, f"✅ Joined WhatsApp group: {name}")

    # Backup

    async def _backup(self, message: dict[str, Any], args: str) -> None:
        store = self.bridge.store
        await store.flush()
        namespace = store.export_namespace()
        created = datetime.now()
        data = json.dumps(backup_payload(namespace, created), ensure_ascii=False, indent=2)
        caption = "\n".join(
            [
                "✅ Bridge backup created",
                "",
                f"💬 Mapped chats: {len(namespace['chatMappings'])}",
                f"👥 Users: {len(namespace['userMappings'])}",
                f"📞 Contacts: {len(namespace['contactMappings'])}",
                f"🚫 Filters: {len(namespace['filters'])}",
                "",
                "⚠️ Keep this file safe. Restore it with /restore.",
            ]
        )
        await self.sink.send_document(
            chat_id=self.chat_id,
            document=data.encode("utf-8"),
            filename=f"wabridge-backup-{created.strftime('%Y%m%d-%H%M%S')}.json",
            caption=caption,
            message_thread_id=extract_thread_id(message),
        )
        logger.info("Bridge backup sent (%d chat mappings)", len(namespace["chatMappings"]))

    async def _restore(self, message: dict[str, Any], args: str) -> None:
        document = message.get("document")
        if not isinstance(document, dict):
            replied = message.get("reply_to_message")
            document = replied.get("document") if isinstance(replied, dict) else None
        if not isinstance(document, dict) or not isinstance(document.get("file_id"), str):
            await self.reply(message, RESTORE_HELP)
            return
        file_name = document.get("file_name")
        if not isinstance(file_name, str) or not file_name.lower().endswith(".json"):
            await self.reply(message, "❌ Please provide a JSON backup file.")
            return

        progress = await self.reply(message, "🔄 Restoring bridge mappings...")
        raw = await self.bridge.media.download_sink_file(document["file_id"])
        try:
            restored = await self.bridge.store.restore(parse_backup(raw))
        except ValueError as e:
            logger.warning("Rejected backup %s: %s", file_name, e)
            await self._finish(message, progress, f"❌ Restore failed: {e}")
            return
        await self._finish(
            message,
            progress,
            "\n".join(
                [
                    "✅ Bridge mappings restored",
                    "",
                    f"💬 Mapped chats: {len(restored.chat_mappings)}",
                    f"📞 Contacts: {len(restored.contact_mappings)}",
                    f"🚫 Filters: {len(restored.filters)}",
                ]
            ),
        )

