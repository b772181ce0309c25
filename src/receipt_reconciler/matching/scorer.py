"""Match scorer for candidate documents against bank transactions.

Scoring is additive over independent signals (partner, amount, date and
document-likelihood heuristics), followed by two multiplicative terms:
a date-distance decay based on the email date and a penalty for a strongly
contradicting amount. The result is clamped to MAX_SCORE and rounded.

The scorer is pure: no I/O, no state, and it tolerates any absent field.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, time
from typing import Any

from ..schemas.models import CandidateDocument, Partner, Transaction

logger = logging.getLogger(__name__)

# Multilingual receipt keywords (EN, DE, NL, FR)
RECEIPT_KEYWORDS = (
    "invoice",
    "rechnung",
    "receipt",
    "beleg",
    "quittung",
    "faktura",
    "bon",
    "bill",
)

RECEIPT_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "image/jpeg",
        "image/png",
        "image/webp",
        "image/gif",
    }
)

# Legal form suffixes ignored when comparing partner names
LEGAL_SUFFIXES = frozenset({"gmbh", "ag", "kg", "ohg", "ug", "e.k.", "ek", "inc", "ltd", "llc", "co"})

MIN_TOKEN_LENGTH = 3

_SENDER_DOMAIN_RE = re.compile(r"@([a-z0-9.-]+\.[a-z]{2,})")
_NON_ALNUM_RE = re.compile(r"[\W_]+")

CATEGORY_PARTNER = "partner"
CATEGORY_AMOUNT = "amount"
CATEGORY_DATE = "date"
CATEGORY_DOCUMENT = "document"


@dataclass
class MatchScore:
    """Individual signal contribution to a match score."""

    signal: str
    category: str
    points: float
    detail: str


@dataclass
class MatchResult:
    """Result of scoring one candidate document against one transaction."""

    transaction_id: str
    document_id: str
    score: int
    label: str | None = None
    reasons: list[str] = field(default_factory=list)
    signals: list[MatchScore] = field(default_factory=list)
    multiplier: float = 1.0
    amount_mismatch: bool = False

    @property
    def breakdown(self) -> dict[str, float]:
        """Points per signal category, before multipliers."""
        totals: dict[str, float] = {}
        for s in self.signals:
            totals[s.category] = totals.get(s.category, 0) + s.points
        return totals

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "transaction_id": self.transaction_id,
            "document_id": self.document_id,
            "score": self.score,
            "label": self.label,
            "reasons": self.reasons,
            "breakdown": self.breakdown,
            "multiplier": self.multiplier,
            "amount_mismatch": self.amount_mismatch,
            "signals": [
                {
                    "signal": s.signal,
                    "category": s.category,
                    "points": s.points,
                    "detail": s.detail,
                }
                for s in self.signals
            ],
        }


def tokenize(text: str | None) -> list[str]:
    """Lowercase, split on non-alphanumerics and keep tokens of 3+ chars."""
    if not text:
        return []
    return [t for t in _NON_ALNUM_RE.split(text.lower()) if len(t) >= MIN_TOKEN_LENGTH]


def normalize_name(name: str | None) -> str:
    """Normalize a company name for comparison (drops legal form suffixes)."""
    if not name:
        return ""
    words = _NON_ALNUM_RE.split(name.lower().replace("e.k.", "ek"))
    return " ".join(w for w in words if w and w not in LEGAL_SUFFIXES)


def names_match(a: str | None, b: str | None) -> bool:
    """Case-insensitive substring match in either direction."""
    left, right = normalize_name(a), normalize_name(b)
    if len(left) < MIN_TOKEN_LENGTH or len(right) < MIN_TOKEN_LENGTH:
        return False
    return left in right or right in left


def normalize_iban(iban: str | None) -> str:
    return (iban or "").replace(" ", "").upper()


def contains_keyword(text: str) -> bool:
    return any(k in text for k in RECEIPT_KEYWORDS)


def amount_variants(amount_minor: int) -> list[str]:
    """Spellings of an amount as it may appear in an email or filename.

    For 448000 minor units: "4480.00", "4480,00", "4,480.00", "4.480,00", "4480".
    """
    cents = abs(amount_minor)
    units, rest = divmod(cents, 100)
    fixed = f"{units}.{rest:02d}"
    grouped = f"{units:,}"
    variants = [
        fixed,
        fixed.replace(".", ","),
        f"{grouped}.{rest:02d}",
        f"{grouped.replace(',', '.')},{rest:02d}",
        str(math.floor(cents / 100 + 0.5)),
    ]
    seen: list[str] = []
    for v in variants:
        if v.lower() not in seen:
            seen.append(v.lower())
    return seen


def sender_domain(sender: str | None) -> str | None:
    if not sender:
        return None
    match = _SENDER_DOMAIN_RE.search(sender.lower())
    return match.group(1) if match else None


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class MatchScorer:
    """Scores candidate documents against transactions.

    Signals (points, additive):
    - Partner: same partner id (dominant), partner text, filename fuzzy, IBAN
    - Amount: relative difference of the extracted amount
    - Date: distance of the extracted document date
    - Document: receipt likelihood heuristics from mime type, filename and
      email metadata

    The total is then scaled by the email date-distance multiplier and the
    amount mismatch penalty, clamped to MAX_SCORE and rounded half-up.
    """

    POINTS_PARTNER_ID = 35
    POINTS_PARTNER_TEXT = 20
    POINTS_PARTNER_FILENAME = 15
    POINTS_IBAN = 10

    POINTS_MIME = 15
    POINTS_FILENAME_KEYWORD = 25
    POINTS_SUBJECT_KEYWORD = 15
    POINTS_TEXT_KEYWORD = 10
    POINTS_AMOUNT_IN_TEXT = 20
    POINTS_PARTNER_TOKENS = 10
    POINTS_REFERENCE_TOKENS = 10
    POINTS_SENDER_DOMAIN = 20
    POINTS_LEARNED_PATTERN = 10

    # (max relative difference, points)
    AMOUNT_STEPS = ((0.0, 40), (0.01, 38), (0.05, 30), (0.10, 20))
    AMOUNT_MISMATCH_RATIO = 0.5
    MISMATCH_PENALTY = 0.4

    # (max days, points)
    DATE_STEPS = ((0, 15), (3, 12), (7, 8), (14, 4))

    # (max days, multiplier); invoices usually precede the payment
    EMAIL_BEFORE_STEPS = ((14, 1.0), (30, 0.95), (60, 0.9), (90, 0.85), (180, 0.75))
    EMAIL_BEFORE_FLOOR = 0.6
    EMAIL_AFTER_STEPS = ((7, 1.0), (14, 0.9), (30, 0.75), (60, 0.55), (90, 0.4))
    EMAIL_AFTER_FLOOR = 0.3

    MAX_SCORE = 95

    def __init__(
        self,
        max_score: int = MAX_SCORE,
        strong_threshold: int = 75,
        likely_threshold: int = 40,
    ) -> None:
        """Initialize the scorer.

        Args:
            max_score: Upper clamp for every score.
            strong_threshold: Minimum score labelled "Strong".
            likely_threshold: Minimum score labelled "Likely".
        """
        self.max_score = max_score
        self.strong_threshold = strong_threshold
        self.likely_threshold = likely_threshold

    def score(
        self,
        txn: Transaction,
        doc: CandidateDocument,
        partner: Partner | None = None,
    ) -> MatchResult:
        """Score a candidate document against a transaction.

        Args:
            txn: Transaction to explain.
            doc: Candidate document (downloaded or not).
            partner: The transaction's resolved partner, if any.

        Returns:
            MatchResult with score in [0, max_score], label and reasons.
        """
        signals: list[MatchScore] = []

        partner_id_match = bool(
            txn.partner_id and doc.partner_id and txn.partner_id == doc.partner_id
        )
        if partner_id_match:
            signals.append(
                MatchScore("partner_id", CATEGORY_PARTNER, self.POINTS_PARTNER_ID, "Same partner")
            )

        amount_signal, amount_mismatch = self._score_amount(txn, doc)
        if amount_signal:
            signals.append(amount_signal)

        names = self._partner_names(txn, partner)
        if not partner_id_match:
            partner_signal = self._score_partner_text(names, doc)
            if partner_signal:
                signals.append(partner_signal)

        iban_signal = self._score_iban(txn, doc)
        if iban_signal:
            signals.append(iban_signal)

        date_signal = self._score_date(txn, doc)
        if date_signal:
            signals.append(date_signal)

        signals.extend(self._score_document_likelihood(txn, doc, partner, names, partner_id_match))

        total = float(sum(s.points for s in signals))
        reasons = [s.detail for s in signals]

        multiplier = 1.0
        if doc.email_date is not None:
            multiplier, reason = self._date_multiplier(txn, doc.email_date)
            total *= multiplier
            reasons.append(reason)

        if amount_mismatch:
            total *= self.MISMATCH_PENALTY
            reasons.append(f"Amount mismatch penalty (×{self.MISMATCH_PENALTY})")

        final = round_half_up(max(0.0, min(total, float(self.max_score))))

        result = MatchResult(
            transaction_id=txn.id,
            document_id=doc.key,
            score=final,
            label=self.label_for(final),
            reasons=reasons,
            signals=signals,
            multiplier=multiplier,
            amount_mismatch=amount_mismatch,
        )
        logger.debug(f"Scored document {doc.key} against transaction {txn.id}: {final}")
        return result

    def label_for(self, score: int) -> str | None:
        if score >= self.strong_threshold:
            return "Strong"
        if score >= self.likely_threshold:
            return "Likely"
        return None

    def _partner_names(self, txn: Transaction, partner: Partner | None) -> list[str]:
        names = list(partner.names) if partner else []
        if txn.counterparty:
            names.append(txn.counterparty)
        if not names and txn.description:
            names.append(txn.description)
        return names

    def _score_amount(
        self, txn: Transaction, doc: CandidateDocument
    ) -> tuple[MatchScore | None, bool]:
        """Score the extracted amount.

        Returns:
            (signal or None, amount mismatch flag)
        """
        if doc.extracted_amount is None or txn.amount == 0:
            return None, False

        txn_amount = abs(txn.amount)
        doc_amount = abs(doc.extracted_amount)
        diff = abs(doc_amount - txn_amount) / txn_amount

        points = 0.0
        for max_diff, step_points in self.AMOUNT_STEPS:
            if diff <= max_diff:
                points = step_points
                break

        currency_differs = bool(
            doc.extracted_currency
            and txn.currency
            and doc.extracted_currency.upper() != txn.currency.upper()
        )
        if currency_differs:
            # Raw amounts in different currencies are only loosely comparable
            points /= 2
            if points == 0:
                return None, False
            return (
                MatchScore(
                    "amount",
                    CATEGORY_AMOUNT,
                    points,
                    f"Amount within {diff:.0%} ({doc.extracted_currency.upper()} vs {txn.currency.upper()})",
                ),
                False,
            )

        mismatch = diff > self.AMOUNT_MISMATCH_RATIO
        if points == 0:
            return None, mismatch

        detail = "Exact amount match" if diff == 0 else f"Amount within {diff:.1%}"
        return MatchScore("amount", CATEGORY_AMOUNT, points, detail), mismatch

    def _score_partner_text(
        self, names: list[str], doc: CandidateDocument
    ) -> MatchScore | None:
        if not names:
            return None

        if doc.extracted_partner:
            for name in names:
                if names_match(doc.extracted_partner, name):
                    return MatchScore(
                        "partner_text",
                        CATEGORY_PARTNER,
                        self.POINTS_PARTNER_TEXT,
                        f"Partner matches: {doc.extracted_partner}",
                    )
            return None

        if doc.filename:
            filename_tokens = set(tokenize(doc.filename))
            compact_filename = "".join(tokenize(doc.filename))
            for name in names:
                name_tokens = [t for t in tokenize(name) if t not in LEGAL_SUFFIXES]
                compact_name = "".join(name_tokens)
                if any(t in filename_tokens for t in name_tokens) or (
                    compact_name and compact_name in compact_filename
                ):
                    return MatchScore(
                        "partner_filename",
                        CATEGORY_PARTNER,
                        self.POINTS_PARTNER_FILENAME,
                        f"Filename mentions {name}",
                    )
        return None

    def _score_iban(self, txn: Transaction, doc: CandidateDocument) -> MatchScore | None:
        txn_iban = normalize_iban(txn.counterparty_iban)
        if txn_iban and txn_iban == normalize_iban(doc.extracted_iban):
            return MatchScore("iban", CATEGORY_PARTNER, self.POINTS_IBAN, "IBAN matches")
        return None

    def _score_date(self, txn: Transaction, doc: CandidateDocument) -> MatchScore | None:
        if doc.extracted_date is None:
            return None

        days = abs((doc.extracted_date - txn.date).days)
        for max_days, points in self.DATE_STEPS:
            if days <= max_days:
                detail = "Same day" if days == 0 else f"Document date {days} days apart"
                return MatchScore("date", CATEGORY_DATE, points, detail)
        return None

    def _score_document_likelihood(
        self,
        txn: Transaction,
        doc: CandidateDocument,
        partner: Partner | None,
        names: list[str],
        partner_id_match: bool,
    ) -> list[MatchScore]:
        """Heuristic signals that the candidate is a receipt for this transaction."""
        signals: list[MatchScore] = []
        filename = (doc.filename or "").lower()
        subject = (doc.email_subject or "").lower()
        combined = " ".join(
            p for p in (doc.email_subject, doc.email_snippet, doc.email_from, doc.email_body) if p
        ).lower()

        if doc.mime_type and doc.mime_type.lower() in RECEIPT_MIME_TYPES:
            signals.append(
                MatchScore("mime", CATEGORY_DOCUMENT, self.POINTS_MIME, f"Receipt file type ({doc.mime_type})")
            )
        if filename and contains_keyword(filename):
            signals.append(
                MatchScore(
                    "filename_keyword",
                    CATEGORY_DOCUMENT,
                    self.POINTS_FILENAME_KEYWORD,
                    "Filename looks like an invoice",
                )
            )
        if subject and contains_keyword(subject):
            signals.append(
                MatchScore(
                    "subject_keyword",
                    CATEGORY_DOCUMENT,
                    self.POINTS_SUBJECT_KEYWORD,
                    "Email subject mentions an invoice",
                )
            )
        if combined and contains_keyword(combined):
            signals.append(
                MatchScore(
                    "text_keyword",
                    CATEGORY_DOCUMENT,
                    self.POINTS_TEXT_KEYWORD,
                    "Email text mentions an invoice",
                )
            )

        if txn.amount and (combined or filename):
            for variant in amount_variants(txn.amount):
                if variant in combined or variant in filename:
                    signals.append(
                        MatchScore(
                            "amount_in_text",
                            CATEGORY_AMOUNT,
                            self.POINTS_AMOUNT_IN_TEXT,
                            f"Amount {variant} found in email",
                        )
                    )
                    break

        if not combined:
            return signals

        if not partner_id_match:
            partner_tokens = [
                t for name in names for t in tokenize(name) if t not in LEGAL_SUFFIXES
            ]
            if any(t in combined for t in partner_tokens):
                signals.append(
                    MatchScore(
                        "partner_tokens",
                        CATEGORY_PARTNER,
                        self.POINTS_PARTNER_TOKENS,
                        "Partner name found in email",
                    )
                )

        if any(t in combined for t in tokenize(txn.reference)):
            signals.append(
                MatchScore(
                    "reference_tokens",
                    CATEGORY_DOCUMENT,
                    self.POINTS_REFERENCE_TOKENS,
                    "Payment reference found in email",
                )
            )

        if partner is not None and not partner_id_match:
            domain = sender_domain(doc.email_from)
            if domain and any(
                domain == known or domain.endswith("." + known)
                for known in (d.lower() for d in partner.email_domains)
            ):
                signals.append(
                    MatchScore(
                        "sender_domain",
                        CATEGORY_PARTNER,
                        self.POINTS_SENDER_DOMAIN,
                        f"Sender domain {domain} belongs to {partner.name}",
                    )
                )
            if doc.source_id is not None and doc.source_id in partner.pattern_source_ids:
                signals.append(
                    MatchScore(
                        "learned_pattern",
                        CATEGORY_PARTNER,
                        self.POINTS_LEARNED_PATTERN,
                        "Mailbox previously supplied documents for this partner",
                    )
                )

        return signals

    def _date_multiplier(self, txn: Transaction, email_date: datetime) -> tuple[float, str]:
        """Decay for emails far from the transaction date.

        Returns:
            (multiplier, reason)
        """
        txn_start = datetime.combine(txn.date, time.min, tzinfo=email_date.tzinfo)
        days = (email_date - txn_start).total_seconds() / 86400
        distance = abs(days)

        if days < 0:
            direction = "before"
            steps, floor = self.EMAIL_BEFORE_STEPS, self.EMAIL_BEFORE_FLOOR
        else:
            direction = "after"
            steps, floor = self.EMAIL_AFTER_STEPS, self.EMAIL_AFTER_FLOOR

        multiplier = floor
        for max_days, value in steps:
            if distance <= max_days:
                multiplier = value
                break

        return multiplier, f"Date distance: {round_half_up(distance)} days {direction} (×{multiplier:.2f})"


_default_scorer = MatchScorer()


def score_document(
    txn: Transaction,
    doc: CandidateDocument,
    partner: Partner | None = None,
) -> MatchResult:
    """Score with default thresholds."""
    return _default_scorer.score(txn, doc, partner)
