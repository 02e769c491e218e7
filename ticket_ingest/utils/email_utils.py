"""
Email Text Utilities
Sender parsing, HTML stripping, ticket number extraction and content digests
"""
import hashlib
import re
from typing import Iterable, Optional, Tuple

from ticket_ingest.database.models import PRIORITIES

TICKET_NUMBER_PATTERN = re.compile(r'(?<![A-Z0-9])\[?\s*INC\d{6}\s*\]?(?!\d)', re.IGNORECASE)
REPLY_PREFIX_PATTERN = re.compile(r'^(Re:|Fwd:)\s*', re.IGNORECASE)
SENDER_PATTERN = re.compile(r'^"?([^"<]+?)"?\s*<([^>]+)>$')


def parse_sender_info(from_header: str) -> Tuple[str, str]:
    """
    Parse a From header into display name and address

    Example: 'Jane Doe <jane@example.com>' -> ('Jane Doe', 'jane@example.com')

    Returns:
        Tuple of (name, email); the name falls back to the local part
    """
    value = (from_header or '').strip()
    match = SENDER_PATTERN.match(value)
    if match:
        name = match.group(1).strip()
        email = match.group(2).strip().lower()
    else:
        bracketed = re.search(r'<(.+)>', value)
        email = (bracketed.group(1) if bracketed else value).strip().lower()
        name = ''
    if not name:
        name = email.split('@')[0] if email else ''
    return name, email


def parse_display_name(from_header: str, default: str) -> str:
    """Display name before the <address> part of a From header, else `default`"""
    match = re.match(r'^([^<]+)<', (from_header or '').strip())
    name = match.group(1).strip().strip('"').strip() if match else ''
    return name or default


def strip_html(html: Optional[str]) -> str:
    """Remove style/script blocks, tags and named entities, collapse whitespace"""
    if not html:
        return ''
    text = re.sub(r'<style[\s\S]*?</style>', '', html, flags=re.IGNORECASE)
    text = re.sub(r'<script[\s\S]*?</script>', '', text, flags=re.IGNORECASE)
    text = re.sub(r'<[^>]*>?', '', text)
    text = re.sub(r'&[a-z]+;', ' ', text, flags=re.IGNORECASE)
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def extract_ticket_number(subject: Optional[str]) -> Optional[str]:
    """
    Find an explicit ticket reference in a subject line

    Accepts [INC000001], INC000001 or inc000001 and returns the
    canonical upper-case form.
    """
    if not subject:
        return None
    match = TICKET_NUMBER_PATTERN.search(subject)
    if not match:
        return None
    return re.sub(r'\[|\]|\s+', '', match.group(0)).upper()


def has_reply_prefix(subject: Optional[str]) -> bool:
    return bool(subject and REPLY_PREFIX_PATTERN.match(subject))


def strip_reply_prefix(subject: Optional[str]) -> str:
    return REPLY_PREFIX_PATTERN.sub('', subject or '', count=1)


def contains_reply_indicator(body: Optional[str], phrases: Iterable[str]) -> bool:
    lowered = (body or '').lower()
    return any(phrase.lower() in lowered for phrase in phrases)


def next_priority(current: str) -> str:
    """One step up the priority ladder; urgent stays urgent"""
    try:
        index = PRIORITIES.index(current)
    except ValueError:
        return current
    return PRIORITIES[min(index + 1, len(PRIORITIES) - 1)]


def compute_content_hash(body: Optional[str], subject: Optional[str], sender_email: str) -> str:
    """
    SHA-256 hex digest identifying an email's content

    Body whitespace is collapsed, a leading Re:/Fwd: is dropped from the
    subject, and all three parts are lower-cased before hashing.
    """
    normalized_body = re.sub(r'\s+', ' ', body or '').strip().lower()
    normalized_subject = strip_reply_prefix(subject).strip().lower()
    normalized_sender = (sender_email or '').lower()
    content = f"{normalized_body}|{normalized_subject}|{normalized_sender}"
    return hashlib.sha256(content.encode('utf-8')).hexdigest()
