"""
Email classification for mailbox search.

Decides how an email should be treated before anything is downloaded:
- emails with a PDF attachment are handled by attachment search
- emails without a PDF whose text reads like an order or payment
  confirmation are candidates for storing the email body itself
"""

from dataclasses import dataclass, field

from receipt_reconciler.mailbox_client import MailboxMessage

# The email body IS the invoice (EN + DE)
MAIL_INVOICE_KEYWORDS = (
    "order confirmation",
    "payment received",
    "payment confirmation",
    "your purchase",
    "order summary",
    "receipt for your",
    "thank you for your order",
    "your order has been",
    "purchase confirmation",
    "bestellbestätigung",
    "zahlungsbestätigung",
    "zahlungseingang",
    "ihre bestellung",
    "kaufbestätigung",
    "vielen dank für ihre bestellung",
    "ihre zahlung",
    "buchungsbestätigung",
)

# The email links to an invoice download (EN + DE)
INVOICE_LINK_KEYWORDS = (
    "download your invoice",
    "view your invoice",
    "download invoice",
    "view invoice",
    "click here to download",
    "access your invoice",
    "get your receipt",
    "download pdf",
    "download receipt",
    "rechnung herunterladen",
    "rechnung anzeigen",
    "rechnung abrufen",
    "hier klicken",
    "pdf herunterladen",
    "beleg herunterladen",
    "rechnung ansehen",
    "zum download",
)


@dataclass
class EmailClassification:
    """How likely an email is to carry an invoice, and in which form."""

    has_pdf_attachment: bool
    possible_mail_invoice: bool
    possible_invoice_link: bool
    confidence: int
    matched_keywords: list[str] = field(default_factory=list)


def _first_match(text: str, keywords: tuple[str, ...]) -> str | None:
    for keyword in keywords:
        if keyword in text:
            return keyword
    return None


def classify_email(message: MailboxMessage) -> EmailClassification:
    """
    Classify an email from its subject, snippet and attachments.

    A mail invoice is only reported for emails without a PDF attachment.
    Emails with a PDF are at least 50% likely to be relevant.
    """
    text = f"{message.subject} {message.snippet}".lower()
    matched: list[str] = []

    has_pdf = message.has_pdf

    mail_invoice = _first_match(text, MAIL_INVOICE_KEYWORDS)
    if mail_invoice:
        matched.append(mail_invoice)
    invoice_link = _first_match(text, INVOICE_LINK_KEYWORDS)
    if invoice_link:
        matched.append(invoice_link)

    confidence = 0
    if has_pdf:
        confidence += 40
    if mail_invoice:
        confidence += 30
    if invoice_link:
        confidence += 25
    confidence = min(confidence, 100)
    if has_pdf and confidence < 50:
        confidence = 50

    return EmailClassification(
        has_pdf_attachment=has_pdf,
        possible_mail_invoice=bool(mail_invoice) and not has_pdf,
        possible_invoice_link=bool(invoice_link),
        confidence=confidence,
        matched_keywords=matched,
    )
