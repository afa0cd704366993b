"""
QR Payload Codec Module - QR Check-in Attendance System

This module turns a person and their class or department into the text that is
embedded in a QR code, and turns scanned or pasted text back into an
IdentityReference.

Encoding always produces the canonical attendance URL. Decoding accepts every
format that has ever been printed on a badge, tried in a fixed order:

1. Attendance URL   https://host/attendance-check?type=student&id=...
2. JSON object      {"type": "student", "id": "..."}
3. Legacy prefix    student:<id> / staff:<id>
4. Bare identifier  <id>, kind discovered later by roster lookup
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, quote, urlencode, urlsplit

from checkin.modules.errors import DecodeError, ValidationError
from checkin.modules.identity import IdentityReference, PersonKind

DEFAULT_BASE_URL = 'http://localhost:5000'
DEFAULT_ATTENDANCE_CHECK_PATH = '/attendance-check'
DEFAULT_APP_MARKER = 'qr-checkin'

BARE_ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.\-]{0,127}$')


class NoMatch(Exception):
    """Raised by a matcher that does not recognize the text; carries the reason."""


def _kind_or_fail(value: Optional[str], format_name: str) -> PersonKind:
    try:
        return PersonKind((value or '').strip().lower())
    except ValueError:
        raise DecodeError.from_attempts(
            [(format_name, f"unknown type {value!r}, expected 'student' or 'staff'")],
            heading='Invalid attendance code:'
        )


class AttendanceURLMatcher:
    """Canonical format emitted by QRPayloadCodec.encode."""

    name = 'attendance URL'

    def __init__(self, check_path: str = DEFAULT_ATTENDANCE_CHECK_PATH):
        self.check_path = '/' + check_path.strip('/')

    def match(self, text: str) -> IdentityReference:
        try:
            parts = urlsplit(text)
        except ValueError:
            raise NoMatch('not a URL')
        if not parts.scheme or not parts.netloc:
            raise NoMatch('not a URL')
        if not parts.path.rstrip('/').endswith(self.check_path):
            raise NoMatch(f"URL does not point at {self.check_path}")

        params = parse_qs(parts.query)
        type_value = params.get('type', [''])[0].strip()
        person_id = params.get('id', [''])[0].strip()
        missing = [name for name, value in (('type', type_value), ('id', person_id)) if not value]
        if missing:
            raise DecodeError.from_attempts([(
                self.name,
                f"URL present but missing required fields: {', '.join(missing)}"
            )], heading='Invalid attendance URL:')

        return IdentityReference(
            id=person_id,
            kind=_kind_or_fail(type_value, self.name),
            display_name=params.get('name', [''])[0],
            class_or_dept_label=params.get('class', [''])[0],
            issued_at=params.get('timestamp', [''])[0],
            source_format='url',
        )


class JSONMatcher:
    """Object payloads printed by earlier releases."""

    name = 'JSON'

    def match(self, text: str) -> IdentityReference:
        try:
            data = json.loads(text)
        except ValueError:
            raise NoMatch('not valid JSON')
        if not isinstance(data, dict):
            raise NoMatch('JSON value is not an object')

        person_id = str(data.get('id') or '').strip()
        type_value = str(data.get('type') or '').strip()
        missing = [name for name, value in (('type', type_value), ('id', person_id)) if not value]
        if missing:
            raise DecodeError.from_attempts([(
                self.name,
                f"JSON object missing required fields: {', '.join(missing)}"
            )], heading='Invalid JSON attendance code:')

        return IdentityReference(
            id=person_id,
            kind=_kind_or_fail(type_value, self.name),
            display_name=str(data.get('name') or ''),
            class_or_dept_label=str(data.get('class') or ''),
            issued_at=str(data.get('timestamp') or ''),
            source_format='json',
        )


class LegacyPrefixMatcher:
    """First-generation 'student:<id>' / 'staff:<id>' badges."""

    name = 'legacy prefix'

    def match(self, text: str) -> IdentityReference:
        for kind in PersonKind:
            prefix = f"{kind.value}:"
            if text.startswith(prefix):
                person_id = text[len(prefix):].strip()
                if not person_id:
                    raise NoMatch(f"'{prefix}' prefix without an id")
                return IdentityReference(id=person_id, kind=kind, source_format='legacy')
        raise NoMatch("does not start with 'student:' or 'staff:'")


class BareIdentifierMatcher:
    """A raw id; the resolver searches students first, then staff."""

    name = 'bare identifier'

    def match(self, text: str) -> IdentityReference:
        if not BARE_ID_PATTERN.match(text):
            raise NoMatch('not a single identifier token')
        return IdentityReference(id=text, kind=None, source_format='bare')


class QRPayloadCodec:
    """
    Encodes identities into attendance URLs and decodes any supported payload
    format back into an IdentityReference.
    """

    def __init__(self, base_url: str = DEFAULT_BASE_URL,
                 check_path: str = DEFAULT_ATTENDANCE_CHECK_PATH,
                 app_marker: str = DEFAULT_APP_MARKER,
                 matchers: Optional[Sequence] = None):
        self.logger = logging.getLogger(__name__)
        self.base_url = base_url.rstrip('/')
        self.check_path = '/' + check_path.strip('/')
        self.app_marker = app_marker

        # Priority order matters: every URL and JSON object is also a candidate
        # for the looser formats further down.
        self.matchers = list(matchers) if matchers is not None else [
            AttendanceURLMatcher(self.check_path),
            JSONMatcher(),
            LegacyPrefixMatcher(),
            BareIdentifierMatcher(),
        ]

    @classmethod
    def from_config(cls, config) -> 'QRPayloadCodec':
        return cls(
            base_url=config.APP_BASE_URL,
            check_path=config.ATTENDANCE_CHECK_PATH,
            app_marker=config.APP_MARKER,
        )

    def encode(self, person_kind, person_id: str, display_name: Optional[str] = '',
               class_or_dept_label: Optional[str] = '',
               issued_at: Optional[datetime] = None) -> str:
        """
        Build the canonical attendance URL for a person.

        Args:
            person_kind: 'student' or 'staff' (str or PersonKind)
            person_id (str): Opaque roster id
            display_name (str): "first last" snapshot used for fallback matching
            class_or_dept_label (str): Human-readable class or department
            issued_at (datetime): Encode time, defaults to now (UTC)

        Returns:
            str: Absolute URL with every query value percent-encoded
        """
        if not person_kind:
            raise ValidationError('Person type is required', field='type')
        kind = PersonKind.parse(person_kind)
        person_id = (person_id or '').strip()
        if not person_id:
            raise ValidationError('Person id is required', field='id')

        issued_at = issued_at or datetime.now(timezone.utc)
        query = urlencode([
            ('type', kind.value),
            ('id', person_id),
            ('name', display_name or ''),
            ('class', class_or_dept_label or ''),
            ('timestamp', issued_at.isoformat()),
            ('app', self.app_marker),
        ], quote_via=quote)
        return f"{self.base_url}{self.check_path}?{query}"

    def decode(self, raw_text: Optional[str]) -> IdentityReference:
        """
        Decode scanned or pasted text.

        Raises:
            DecodeError: listing every format tried and why it was rejected
        """
        text = (raw_text or '').strip()
        if not text:
            raise DecodeError('Empty QR code payload')

        attempts: List[Tuple[str, str]] = []
        for matcher in self.matchers:
            try:
                reference = matcher.match(text)
            except NoMatch as e:
                attempts.append((matcher.name, str(e)))
                continue
            self.logger.debug(f"Decoded payload as {matcher.name}: {reference.kind} {reference.id}")
            return reference

        self.logger.info(f"Unrecognized payload ({len(text)} chars)")
        raise DecodeError.from_attempts(attempts)
