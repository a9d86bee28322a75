"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004
    UNSUPPORTED_PROVIDER = 60005

    # Reconciliation failures (61xxx)
    ROUTING_FAILED = 61000
    NOT_MATCHED = 61001
    AMOUNT_MISMATCH = 61002
    INVALID_PAYLOAD = 61003
    PAYMENT_EXPIRED = 61004
    TRANSACTION_ALREADY_RECORDED = 61005

    # Refund protocol (62xxx)
    REFUND_NOT_ALLOWED = 62000
    REFUND_AMOUNT_INVALID = 62001


# Gateway status codes -> canonical callback status
# (success / pending / processing / failed / cancelled)
PROVIDER_STATUS_TO_INTERNAL = {
    "payplus": {
        "000": "success",
        "001": "processing",
        "002": "pending",
        "003": "failed",
        "004": "cancelled",
    },
    "pelecard": {
        "000": "success",
        "001": "processing",
        "002": "pending",
    },
    "paypal": {
        # webhook event_type
        "PAYMENT.CAPTURE.COMPLETED": "success",
        "PAYMENT.CAPTURE.DENIED": "failed",
        "PAYMENT.CAPTURE.DECLINED": "failed",
        "CHECKOUT.ORDER.APPROVED": "processing",
        "PAYMENT.CAPTURE.REFUNDED": "cancelled",
        # order / capture resource status
        "COMPLETED": "success",
        "APPROVED": "processing",
        "SAVED": "pending",
        "CREATED": "pending",
        "PAYER_ACTION_REQUIRED": "pending",
        "PENDING": "pending",
        "DECLINED": "failed",
        "FAILED": "failed",
        "VOIDED": "cancelled",
        "REFUNDED": "cancelled",
    },
    "quick_payments": {
        "completed": "success",
        "success": "success",
        "initial": "pending",
        "pending": "pending",
        "failure": "failed",
        "failed": "failed",
        "refunded": "cancelled",
    },
}
