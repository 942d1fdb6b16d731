"""
Chat transcript parser.

Turns an exported chat transcript into ParsedMessage records, oldest first.
Two line-start grammars are recognised:

    [5/1/24, 10:30:00] Alice: hello          (bracketed, iOS exports)
    5/1/24, 10:30 - Alice: hello             (dashed, Android exports)

Lines matching neither grammar are continuation lines of the pending
message. Parsing is a two-state machine (idle, accumulating); every
finished message goes through flush_pending, which owns date parsing,
system-message filtering and media detection.
"""

import enum
import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

from chat_import.config import settings
from chat_import.media import classify_by_placeholder
from chat_import.schemas import EXPORT_SOURCE, ParsedMessage

logger = logging.getLogger(__name__)


# =============================================================================
# Grammars
# =============================================================================

_DATE = r"(\d{1,2})/(\d{1,2})/(\d{2,4}),\s"
_TIME = r"(\d{1,2}:\d{2}(?::\d{2})?(?:\s[AP]M)?)"

BRACKETED_LINE = re.compile(r"^\[" + _DATE + _TIME + r"\]\s(.+?):\s(.*)$")
DASHED_LINE = re.compile(r"^" + _DATE + _TIME + r"\s-\s(.+?):\s(.*)$")
LINE_GRAMMARS = (BRACKETED_LINE, DASHED_LINE)

TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?(?:\s([AP]M))?$")

INVISIBLE_CHARACTERS = re.compile("[\u200e\u200f\u202a\u202b\u202c]")

SYSTEM_PATTERNS = [
    re.compile(r"Messages and calls are end-to-end encrypted"),
    re.compile(r"created group", re.IGNORECASE),
    re.compile(r"added you", re.IGNORECASE),
    re.compile(r"^[^\n]+ left$"),
    re.compile(r"changed the (subject|icon|description|group)", re.IGNORECASE),
    re.compile(r"removed .+ from this group", re.IGNORECASE),
    re.compile(r"joined using this group", re.IGNORECASE),
    re.compile(r"Your security code with", re.IGNORECASE),
    re.compile(r"This message was deleted", re.IGNORECASE),
    re.compile(r"Missed (voice|video) call", re.IGNORECASE),
]


# =============================================================================
# Helpers
# =============================================================================

def make_group_id(group_name: str) -> str:
    return "export:" + re.sub(r"\s+", "_", group_name.lower())


def make_sender_jid(sender: str) -> str:
    return "export:" + re.sub(r"\s+", "_", sender.lower())


def preprocess(text: str) -> List[str]:
    """Strip BOM and bidi marks, normalise line endings, split into lines."""
    if text.startswith("\ufeff"):
        text = text[1:]
    text = INVISIBLE_CHARACTERS.sub("", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return text.split("\n")


def is_system_message(body: str) -> bool:
    return any(pattern.search(body) for pattern in SYSTEM_PATTERNS)


def parse_timestamp(day: str, month: str, year: str, time_str: str, tz: ZoneInfo) -> Optional[datetime]:
    """
    Build an aware datetime from transcript date/time fields.

    Two-digit years are taken as 20xx. Returns None for anything that is
    not a real calendar date or clock time.
    """
    match = TIME_PATTERN.match(time_str.replace("\u202f", " "))
    if not match:
        return None

    y = int(year)
    if y < 100:
        y += 2000
    hour = int(match.group(1))
    minute = int(match.group(2))
    second = int(match.group(3)) if match.group(3) else 0
    meridiem = match.group(4)
    if meridiem == "PM" and hour != 12:
        hour += 12
    if meridiem == "AM" and hour == 12:
        hour = 0

    try:
        return datetime(y, int(month), int(day), hour, minute, second, tzinfo=tz)
    except ValueError:
        return None


def epoch_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


# =============================================================================
# State machine
# =============================================================================

class ParserState(enum.Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"


@dataclass
class PendingMessage:
    day: str
    month: str
    year: str
    time: str
    sender: str
    body: str

    def append(self, line: str) -> None:
        self.body += "\n" + line


@dataclass
class ParseContext:
    group_name: str
    group_id: str
    tz: ZoneInfo
    id_scheme: str = "sequence"
    messages: List[ParsedMessage] = field(default_factory=list)
    _content_ids: dict = field(default_factory=dict)

    def next_message_id(self, pending: PendingMessage, timestamp: datetime) -> str:
        millis = epoch_millis(timestamp)
        if self.id_scheme != "content":
            return f"export_{self.group_id}_{millis}_{len(self.messages)}"

        digest = hashlib.sha1(
            f"{pending.sender.strip()}|{millis}|{pending.body.strip()}".encode("utf-8")
        ).hexdigest()[:16]
        base = f"export_{self.group_id}_{digest}"
        seen = self._content_ids.get(base, 0)
        self._content_ids[base] = seen + 1
        return base if seen == 0 else f"{base}_{seen}"


def flush_pending(pending: PendingMessage, context: ParseContext) -> Optional[ParsedMessage]:
    """
    Finalize one pending message.

    Returns None when the message is dropped: unparsable timestamp, empty
    body, system notice, or nothing left after media rewriting.
    """
    timestamp = parse_timestamp(pending.day, pending.month, pending.year, pending.time, context.tz)
    if timestamp is None:
        logger.debug(f"Dropping message with unparsable timestamp: {pending.day}/{pending.month}/{pending.year} {pending.time}")
        return None

    body = pending.body.strip()
    if not body or is_system_message(body):
        return None

    detection = classify_by_placeholder(body)
    clean_body = detection.body.strip()
    if not detection.has_media and not clean_body:
        return None

    return ParsedMessage(
        message_id=context.next_message_id(pending, timestamp),
        group_id=context.group_id,
        group_name=context.group_name,
        sender_jid=make_sender_jid(pending.sender),
        sender_name=pending.sender.strip(),
        body=clean_body,
        timestamp=timestamp,
        has_media=detection.has_media,
        media_type=detection.media_type,
        media_filename=detection.media_filename,
        source=EXPORT_SOURCE,
    )


class TranscriptParser:
    """Line-driven parser; feed lines in order, then call finish()."""

    def __init__(self, context: ParseContext):
        self.context = context
        self.state = ParserState.IDLE
        self.pending: Optional[PendingMessage] = None

    def feed(self, line: str) -> None:
        match = match_message_line(line)
        if match:
            self._flush()
            day, month, year, time, sender, body = match.groups()
            self.pending = PendingMessage(day, month, year, time, sender, body)
            self.state = ParserState.ACCUMULATING
        elif self.state is ParserState.ACCUMULATING and line.strip():
            self.pending.append(line)

    def finish(self) -> List[ParsedMessage]:
        self._flush()
        return self.context.messages

    def _flush(self) -> None:
        if self.state is ParserState.ACCUMULATING:
            message = flush_pending(self.pending, self.context)
            if message is not None:
                self.context.messages.append(message)
        self.pending = None
        self.state = ParserState.IDLE


def match_message_line(line: str) -> Optional[re.Match]:
    for grammar in LINE_GRAMMARS:
        match = grammar.match(line)
        if match:
            return match
    return None


def parse_lines(lines: Iterable[str], context: ParseContext) -> List[ParsedMessage]:
    parser = TranscriptParser(context)
    for line in lines:
        parser.feed(line)
    return parser.finish()


def parse_chat_export(
    text: str,
    group_name: str,
    limit: Optional[int] = None,
    tz: Optional[ZoneInfo] = None,
    id_scheme: Optional[str] = None,
) -> List[ParsedMessage]:
    """
    Parse a chat transcript into messages, oldest first.

    Args:
        text: Raw transcript text
        group_name: Human-readable group name; the group id derives from it
        limit: Keep only the most recent `limit` messages when set
        tz: Zone for transcript wall-clock times (default EXPORT_TIMEZONE)
        id_scheme: "sequence" or "content" (default MESSAGE_ID_SCHEME)

    Returns:
        List of ParsedMessage in chronological order
    """
    context = ParseContext(
        group_name=group_name,
        group_id=make_group_id(group_name),
        tz=tz or ZoneInfo(settings.EXPORT_TIMEZONE),
        id_scheme=id_scheme or settings.MESSAGE_ID_SCHEME,
    )
    messages = parse_lines(preprocess(text), context)
    logger.info(f"Parsed {len(messages)} messages for group {context.group_id}")

    if limit and len(messages) > limit:
        messages = messages[len(messages) - limit:]
        logger.info(f"Kept the {limit} most recent messages")
    return messages
