"""Payment proof OCR: extraction, candidate parsing and reconciliation."""

from .engines import HttpOcrRecognizer, RecognizerUnavailable, TesseractRecognizer
from .extractor import ReceiptTextExtractor, validate_receipt_image
from .parser import CandidateParser, parse
from .reconciler import PaymentForm, apply_to_form, record_edit, select_winners
from .session import ReceiptIntakeSession

__all__ = [
    "CandidateParser",
    "HttpOcrRecognizer",
    "PaymentForm",
    "ReceiptIntakeSession",
    "ReceiptTextExtractor",
    "RecognizerUnavailable",
    "TesseractRecognizer",
    "apply_to_form",
    "parse",
    "record_edit",
    "select_winners",
    "validate_receipt_image",
]
