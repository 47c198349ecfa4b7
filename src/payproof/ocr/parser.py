"""Heuristic candidate parser for bank and e-wallet payment receipts."""

from __future__ import annotations

import dataclasses
import logging
import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional, Sequence, Tuple

from rapidfuzz import fuzz, process

from payproof.config import Settings, get_settings
from payproof.models.receipt import FieldCandidate, FieldKind, RawExtraction
from payproof.ocr import scoring
from payproof.ocr.sanitize import normalize_text

logger = logging.getLogger(__name__)

Span = Tuple[int, int]

BANK_PATTERNS: Sequence[Tuple[str, Sequence[re.Pattern[str]]]] = (
    ("GCash", (re.compile(r"g\s?cash", re.I),)),
    ("Maya", (re.compile(r"\bmaya\b", re.I), re.compile(r"pay\s*maya", re.I))),
    ("BDO", (re.compile(r"\bbdo\b", re.I), re.compile(r"bdo\s+unibank", re.I))),
    ("BPI", (re.compile(r"\bbpi\b", re.I), re.compile(r"bank of the philippine islands", re.I))),
    ("Metrobank", (re.compile(r"metro\s?bank", re.I),)),
    ("UnionBank", (re.compile(r"union\s*bank", re.I),)),
    ("RCBC", (re.compile(r"\brcbc\b", re.I),)),
    ("PNB", (re.compile(r"\bpnb\b", re.I), re.compile(r"philippine national bank", re.I))),
    ("China Bank", (re.compile(r"china\s*bank", re.I),)),
    ("LANDBANK", (re.compile(r"land\s*bank", re.I),)),
    ("Security Bank", (re.compile(r"security\s*bank", re.I),)),
    ("EastWest", (re.compile(r"east\s*west", re.I),)),
    ("CIMB", (re.compile(r"\bcimb\b", re.I), re.compile(r"octo\s+by\s+cimb", re.I))),
    ("Tonik", (re.compile(r"\btonik\b", re.I),)),
    ("MariBank", (re.compile(r"mari\s*bank", re.I),)),
    ("PSBank", (re.compile(r"\bps\s*bank\b", re.I), re.compile(r"philippine\s+savings\s+bank", re.I))),
)

# Names long enough for fuzzy matching to mean something.
_FUZZY_CHOICES = {
    name.lower().replace(" ", ""): name for name, _ in BANK_PATTERNS if len(name) >= 5
}

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH_NAME = (
    r"(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?"
    r"|sep(?:t|tember)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\.?"
)
_TIME = (
    r"(\d{1,2}):([0-5]\d)(?::([0-5]\d))?(?:\s*([AaPp])\s*\.?\s*[Mm]\b\.?)?(?![\d:])"
)
_TIME_RE = re.compile(r"(?<![\d:])" + _TIME)
_ISO_DATETIME_RE = re.compile(
    r"\b(20\d{2})[-/](\d{1,2})[-/](\d{1,2})(?:T|,?\s+)" + _TIME
)

# Bare date patterns in the order they claim text.
_DATE_PATTERNS: Sequence[Tuple[str, re.Pattern[str]]] = (
    ("date.iso", re.compile(r"\b(20\d{2})[-/](\d{1,2})[-/](\d{1,2})\b")),
    (
        "date.month_name",
        re.compile(r"\b" + _MONTH_NAME + r"[-\s]+(\d{1,2})[-\s,]+(20\d{2})\b", re.I),
    ),
    (
        "date.noisy",
        re.compile(r"\b" + _MONTH_NAME + r"\s+(\d{1,2})[^0-9]{0,20}(20\d{2})\b", re.I),
    ),
    ("date.numeric", re.compile(r"\b(\d{1,2})[./-](\d{1,2})[./-](20\d{2})\b")),
    (
        "date.day_month",
        re.compile(r"\b(\d{1,2})\s+" + _MONTH_NAME + r"[a-z]*,?\s*(20\d{2})\b", re.I),
    ),
)

_DATE_LABEL_RE = re.compile(r"\b(?:date|transaction\s+date|posted)\b[^\d\n]{0,12}$", re.I)
_TIME_LABEL_RE = re.compile(r"\btime\b[^\d\n]{0,12}$", re.I)
_ADJACENT_GAP_RE = re.compile(r"[^\d]{0,24}")

_AMOUNT_TOKEN_RE = re.compile(
    r"(?<![\w.,])(?<!\d:)(?:(?P<currency>PHP|P)\s?)?"
    r"(?P<number>\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?)"
    r"(?![\d,:]|\.\d)"
)
_AMOUNT_LABEL_RE = re.compile(
    r"\b(?:transfer\s+amount|total\s+amount|amount\s+(?:paid|due|sent)|amount|amt|total|sent|paid)\b",
    re.I,
)
_AMOUNT_PENALTY_RE = re.compile(
    r"\b(?:fee|charges?|balance|available|discount|change|cash\s*back|points)\b", re.I
)

_TOKEN = r"([A-Z0-9](?:\d{3}\s\d{3}\s\d{6}|[A-Z0-9-]{5,24}))"
_SEPARATOR = r"[-\s:.#]*"
_REFERENCE_PATTERNS: Sequence[Tuple[str, re.Pattern[str]]] = (
    (
        "reference.labeled",
        re.compile(r"\bref(?:erence)?\b" + _SEPARATOR + r"(?:no\.?|number|id)?" + _SEPARATOR + _TOKEN, re.I),
    ),
    (
        "reference.confirmation",
        re.compile(r"\bconf(?:irmation)?\b\s*(?:no\.?|number|id|code)?" + _SEPARATOR + _TOKEN, re.I),
    ),
    (
        "reference.transaction",
        re.compile(r"\b(?:txn|trans(?:action)?)\b\s*(?:id|no\.?|code)?" + _SEPARATOR + _TOKEN, re.I),
    ),
    (
        "reference.trace",
        re.compile(r"\btrace\b\s*(?:no\.?|number|id)?" + _SEPARATOR + _TOKEN, re.I),
    ),
    (
        "reference.receipt",
        re.compile(
            r"(?:\bofficial\s+receipt\b|\breceipt\s*(?:no\.?|number|#)|\bo\.\s?r\.?|\bor\s*(?:no\.?|#))"
            + _SEPARATOR
            + _TOKEN,
            re.I,
        ),
    ),
)
_BARE_REFERENCE_RE = re.compile(r"(?<![\d.,])\d{6,20}(?![\d.,])")
_PHONE_LIKE_RE = re.compile(r"^(?:09\d{9}|639\d{9})$")

_FROM_MARKERS = (
    re.compile(r"\b(?:transfer\s+from|from)\b", re.I),
    re.compile(r"\b(?:sender|payer|source\s+account)\b", re.I),
)
_TO_MARKERS = (
    re.compile(r"\b(?:transfer\s+to|to)\b", re.I),
    re.compile(r"\b(?:recipient|beneficiary)\b", re.I),
)
_CONTEXT_BOUNDARIES = (
    re.compile(r"\btransfer\s+to\b", re.I),
    re.compile(r"\bto\b", re.I),
    re.compile(r"\bbeneficiary\b", re.I),
    re.compile(r"\brecipient\b", re.I),
    re.compile(r"\bacct\.?\b", re.I),
    re.compile(r"\baccount\b", re.I),
    re.compile(r"\bref(?:erence)?\b", re.I),
    re.compile(r"\bamount\b", re.I),
    re.compile(r"\bdate\b", re.I),
    re.compile(r"\btime\b", re.I),
    re.compile(r"\bmethod\b", re.I),
    re.compile(r"\bprocessing\b", re.I),
)
_CONTEXT_WINDOW = 320

_MONEY_MARKER_RE = re.compile(r"(?:₱|\bPHP\b)", re.I)
_RECEIPT_KEYWORD_RE = re.compile(
    r"\b(?:amount|php|reference|ref|txn|transaction|date|time|instapay|transfer|account"
    r"|acct|official\s+receipt|invoice)\b",
    re.I,
)


@dataclasses.dataclass
class _AmountToken:
    value: Decimal
    span: Span
    currency: bool
    label_gap: Optional[int]
    penalized: bool

    @property
    def pattern(self) -> str:
        if self.label_gap is not None:
            return "amount.labeled"
        if self.currency:
            return "amount.currency"
        return "amount.bare"


def _overlaps(span: Span, spans: Iterable[Span]) -> bool:
    start, end = span
    return any(start < other_end and other_start < end for other_start, other_end in spans)


def _valid_date(year: int, month: int, day: int) -> Optional[str]:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def _to_24h(hour: int, minute: int, meridiem: Optional[str]) -> Optional[str]:
    if meridiem:
        if not 1 <= hour <= 12:
            return None
        marker = meridiem.upper()
        if marker == "A" and hour == 12:
            hour = 0
        elif marker == "P" and hour < 12:
            hour += 12
    elif hour > 23:
        return None
    return f"{hour:02d}:{minute:02d}"


def _time_from_groups(groups: Sequence[Optional[str]]) -> Optional[str]:
    hour, minute, _seconds, meridiem = groups
    return _to_24h(int(hour), int(minute), meridiem)


def _date_from_match(pattern: str, match: re.Match[str]) -> Optional[str]:
    if pattern == "date.iso":
        return _valid_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    if pattern in {"date.month_name", "date.noisy"}:
        month = _MONTHS[match.group(1)[:3].lower()]
        return _valid_date(int(match.group(3)), month, int(match.group(2)))
    if pattern == "date.numeric":
        first, second = int(match.group(1)), int(match.group(2))
        month, day = (first, second) if first <= 12 else (second, first)
        return _valid_date(int(match.group(3)), month, day)
    if pattern == "date.day_month":
        month = _MONTHS[match.group(2)[:3].lower()]
        return _valid_date(int(match.group(3)), month, int(match.group(1)))
    return None


def parse_amount(token: str) -> Optional[Decimal]:
    """Parse a thousands-grouped peso amount into a two-place Decimal."""

    cleaned = re.sub(r"(?i)^(?:php|p|₱)\s*", "", token.strip()).replace(",", "")
    if not cleaned:
        return None
    try:
        return Decimal(cleaned).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def signal_score(text: str) -> float:
    """Score how receipt-like ``text`` is (see :func:`scoring.receipt_signal`)."""

    return scoring.receipt_signal(
        text,
        len(_MONEY_MARKER_RE.findall(text)),
        len(_RECEIPT_KEYWORD_RE.findall(text)),
    )


class CandidateParser:
    """Turn OCR text into scored candidates for every payment field.

    Spans on the returned candidates index into the normalized text
    (see :func:`payproof.ocr.sanitize.normalize_text`).
    """

    def __init__(
        self,
        *,
        amount_min: Decimal = Decimal("1"),
        amount_max: Decimal = Decimal("1000000"),
        fuzzy_threshold: float = 85.0,
    ) -> None:
        self._amount_min = Decimal(amount_min)
        self._amount_max = Decimal(amount_max)
        self._fuzzy_threshold = fuzzy_threshold

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CandidateParser":
        settings = settings or get_settings()
        return cls(
            amount_min=Decimal(str(settings.amount_min)),
            amount_max=Decimal(str(settings.amount_max)),
        )

    def parse(self, raw: RawExtraction) -> List[FieldCandidate]:
        text = normalize_text(raw.raw_text or "")
        if not text:
            return []

        candidates: List[FieldCandidate] = []
        datetime_candidates, datetime_spans = self._dates_and_times(text)
        candidates.extend(datetime_candidates)

        labeled_references = self._labeled_references(text, datetime_spans)
        candidates.extend(labeled_references)
        reference_spans = [c.span for c in labeled_references if c.span]

        amount_candidates = self._amounts(text, datetime_spans + reference_spans)
        candidates.extend(amount_candidates)

        money_spans = [
            c.span for c in amount_candidates if c.span and c.pattern != "amount.bare"
        ]
        candidates.extend(
            self._bare_references(text, datetime_spans + reference_spans + money_spans)
        )
        candidates.extend(self._banks(text))

        logger.debug(
            "Parsed %s candidates from %s characters of %s text",
            len(candidates),
            len(text),
            raw.source,
        )
        return candidates

    # ------------------------------------------------------------------ dates
    def _dates_and_times(self, text: str) -> Tuple[List[FieldCandidate], List[Span]]:
        candidates: List[FieldCandidate] = []
        claimed: List[Span] = []

        for match in _ISO_DATETIME_RE.finditer(text):
            iso = _valid_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
            clock = _time_from_groups(match.groups()[3:7])
            if iso is None or clock is None:
                continue
            span = match.span()
            claimed.append(span)
            confidence = scoring.datetime_confidence("datetime.iso")
            candidates.append(self._candidate(FieldKind.DATE, iso, "datetime.iso", span, confidence))
            candidates.append(self._candidate(FieldKind.TIME, clock, "datetime.iso", span, confidence))

        date_spans: List[Span] = []
        for pattern, regex in _DATE_PATTERNS:
            for match in regex.finditer(text):
                span = match.span()
                if _overlaps(span, claimed) or _overlaps(span, date_spans):
                    continue
                iso = _date_from_match(pattern, match)
                if iso is None:
                    continue
                date_spans.append(span)
                labeled = bool(_DATE_LABEL_RE.search(text[max(0, span[0] - 24) : span[0]]))
                adjacent = self._adjacent_time(text, span[1], claimed + date_spans)
                if adjacent is not None:
                    clock, time_span = adjacent
                    claimed.append(time_span)
                    confidence = scoring.datetime_confidence("datetime.adjacent", labeled=labeled)
                    candidates.append(
                        self._candidate(FieldKind.DATE, iso, "datetime.adjacent", span, confidence)
                    )
                    candidates.append(
                        self._candidate(FieldKind.TIME, clock, "datetime.adjacent", time_span, confidence)
                    )
                else:
                    confidence = scoring.datetime_confidence(pattern, labeled=labeled)
                    candidates.append(self._candidate(FieldKind.DATE, iso, pattern, span, confidence))
        claimed.extend(date_spans)

        for match in _TIME_RE.finditer(text):
            span = match.span()
            if _overlaps(span, claimed):
                continue
            clock = _time_from_groups(match.groups()[:4])
            if clock is None:
                continue
            claimed.append(span)
            pattern = "time.meridiem" if match.group(4) else "time.clock"
            labeled = bool(_TIME_LABEL_RE.search(text[max(0, span[0] - 24) : span[0]]))
            confidence = scoring.datetime_confidence(pattern, labeled=labeled)
            candidates.append(self._candidate(FieldKind.TIME, clock, pattern, span, confidence))

        return candidates, claimed

    @staticmethod
    def _adjacent_time(text: str, start: int, taken: List[Span]) -> Optional[Tuple[str, Span]]:
        match = _TIME_RE.search(text, start, min(len(text), start + 48))
        if match is None:
            return None
        if not _ADJACENT_GAP_RE.fullmatch(text[start : match.start()]):
            return None
        if _overlaps(match.span(), taken):
            return None
        clock = _time_from_groups(match.groups()[:4])
        if clock is None:
            return None
        return clock, match.span()

    # ---------------------------------------------------------------- amounts
    def _amounts(self, text: str, blocked: List[Span]) -> List[FieldCandidate]:
        tokens: List[_AmountToken] = []
        for match in _AMOUNT_TOKEN_RE.finditer(text):
            span = match.span()
            if _overlaps(span, blocked):
                continue
            number = match.group("number")
            value = parse_amount(number)
            if value is None or not self._amount_min <= value <= self._amount_max:
                continue
            currency = match.group("currency") is not None
            formatted = "," in number or "." in number
            label_gap = self._label_gap(text, span[0])
            if label_gap is None and not currency:
                # Unlabelled plain numbers only count when they look like money.
                digits = len(number.split(".")[0])
                if value < 100 or (not formatted and digits > 6):
                    continue
            elif not formatted and len(number) > 6:
                continue
            tokens.append(
                _AmountToken(
                    value=value,
                    span=span,
                    currency=currency,
                    label_gap=label_gap,
                    penalized=self._penalized(text, span[0]),
                )
            )

        largest_by_pattern: dict[str, Decimal] = {}
        for token in tokens:
            if not token.penalized:
                current = largest_by_pattern.get(token.pattern)
                if current is None or token.value > current:
                    largest_by_pattern[token.pattern] = token.value

        length = max(1, len(text))
        candidates = []
        for token in tokens:
            pattern = token.pattern
            confidence = scoring.amount_confidence(
                pattern,
                currency_marker=token.currency,
                label_gap=token.label_gap,
                position=token.span[0] / length,
                penalized=token.penalized,
                largest=largest_by_pattern.get(pattern) == token.value,
            )
            candidates.append(
                self._candidate(FieldKind.AMOUNT, f"{token.value:.2f}", pattern, token.span, confidence)
            )
        return candidates

    @staticmethod
    def _label_gap(text: str, start: int) -> Optional[int]:
        window_start = max(0, start - 48)
        window = text[window_start:start]
        labels = list(_AMOUNT_LABEL_RE.finditer(window))
        if not labels:
            return None
        gap = window[labels[-1].end() :]
        if len(gap) > 16 or gap.count("\n") > 1 or any(char.isdigit() for char in gap):
            return None
        return len(gap.strip(" :=-#\n"))

    @staticmethod
    def _penalized(text: str, start: int) -> bool:
        line_start = text.rfind("\n", 0, start) + 1
        prefix = text[max(line_start, start - 32) : start]
        hits = list(_AMOUNT_PENALTY_RE.finditer(prefix))
        if not hits:
            return False
        return not any(char.isdigit() for char in prefix[hits[-1].end() :])

    # ------------------------------------------------------------- references
    def _labeled_references(self, text: str, blocked: List[Span]) -> List[FieldCandidate]:
        candidates: List[FieldCandidate] = []
        claimed: List[Span] = []
        for pattern, regex in _REFERENCE_PATTERNS:
            for match in regex.finditer(text):
                value = re.sub(r"\s", "", match.group(1)).strip("-").upper()
                if not any(char.isdigit() for char in value) or len(value) < 6:
                    continue
                span = match.span(1)
                if _overlaps(span, claimed) or _overlaps(span, blocked):
                    continue
                claimed.append(span)
                confidence = scoring.reference_confidence(pattern, value)
                candidates.append(
                    self._candidate(FieldKind.REFERENCE_NUMBER, value, pattern, span, confidence)
                )
        return candidates

    def _bare_references(self, text: str, blocked: List[Span]) -> List[FieldCandidate]:
        candidates: List[FieldCandidate] = []
        for match in _BARE_REFERENCE_RE.finditer(text):
            span = match.span()
            if _overlaps(span, blocked):
                continue
            value = match.group()
            confidence = scoring.reference_confidence(
                "reference.bare", value, phone_like=bool(_PHONE_LIKE_RE.match(value))
            )
            candidates.append(
                self._candidate(FieldKind.REFERENCE_NUMBER, value, "reference.bare", span, confidence)
            )
        return candidates

    # ------------------------------------------------------------------ banks
    def _banks(self, text: str) -> List[FieldCandidate]:
        candidates: List[FieldCandidate] = []
        for pattern, markers in (("bank.from_context", _FROM_MARKERS), ("bank.to_context", _TO_MARKERS)):
            segment = self._context_segment(text, markers)
            if segment is None:
                continue
            offset, body = segment
            hit = self._find_bank(body)
            if hit is not None:
                name, (start, end) = hit
                candidates.append(
                    self._candidate(
                        FieldKind.BANK,
                        name,
                        pattern,
                        (offset + start, offset + end),
                        scoring.bank_confidence(pattern),
                    )
                )

        exact_names = set()
        for name, regexes in BANK_PATTERNS:
            spans = [m.span() for regex in regexes for m in [regex.search(text)] if m]
            if not spans:
                continue
            exact_names.add(name)
            candidates.append(
                self._candidate(
                    FieldKind.BANK,
                    name,
                    "bank.keyword",
                    min(spans),
                    scoring.bank_confidence("bank.keyword"),
                )
            )

        candidates.extend(self._fuzzy_banks(text, exact_names))
        return candidates

    @staticmethod
    def _context_segment(text: str, markers: Sequence[re.Pattern[str]]) -> Optional[Tuple[int, str]]:
        for marker in markers:
            match = marker.search(text)
            if match is None:
                continue
            start = match.end()
            rest = text[start : start + _CONTEXT_WINDOW]
            end = len(rest)
            for boundary in _CONTEXT_BOUNDARIES:
                hit = boundary.search(rest)
                if hit is not None and hit.start() < end:
                    end = hit.start()
            return start, rest[:end]
        return None

    @staticmethod
    def _find_bank(segment: str) -> Optional[Tuple[str, Span]]:
        for name, regexes in BANK_PATTERNS:
            for regex in regexes:
                match = regex.search(segment)
                if match is not None:
                    return name, match.span()
        return None

    def _fuzzy_banks(self, text: str, exact_names: set[str]) -> List[FieldCandidate]:
        words = list(re.finditer(r"[A-Za-z]{3,}", text))
        probes: List[Tuple[str, Span]] = [(w.group().lower(), w.span()) for w in words]
        for left, right in zip(words, words[1:]):
            if text[left.end() : right.start()].strip() == "":
                probes.append(((left.group() + right.group()).lower(), (left.start(), right.end())))

        best: dict[str, Tuple[float, Span]] = {}
        for probe, span in probes:
            if len(probe) < 4:
                continue
            result = process.extractOne(
                probe, list(_FUZZY_CHOICES), scorer=fuzz.ratio, score_cutoff=self._fuzzy_threshold
            )
            if result is None:
                continue
            choice, similarity, _ = result
            name = _FUZZY_CHOICES[choice]
            if name in exact_names:
                continue
            if name not in best or similarity > best[name][0]:
                best[name] = (similarity, span)

        return [
            self._candidate(
                FieldKind.BANK,
                name,
                "bank.fuzzy",
                span,
                scoring.bank_confidence("bank.fuzzy", similarity),
            )
            for name, (similarity, span) in best.items()
        ]

    @staticmethod
    def _candidate(
        kind: FieldKind, value: str, pattern: str, span: Span, confidence: float
    ) -> FieldCandidate:
        return FieldCandidate(
            kind=kind,
            value=value,
            confidence=confidence,
            pattern=pattern,
            specificity=scoring.specificity(pattern),
            span=span,
        )


_DEFAULT_PARSER = CandidateParser()


def parse(raw: RawExtraction) -> List[FieldCandidate]:
    """Parse ``raw`` with the default amount bounds."""

    return _DEFAULT_PARSER.parse(raw)


__all__ = ["BANK_PATTERNS", "CandidateParser", "parse", "parse_amount", "signal_score"]
