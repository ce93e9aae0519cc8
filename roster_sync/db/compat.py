from __future__ import annotations

import re

"""Last-resort detection of "transactions unsupported" driver errors.

Stores advertise transaction support through ``supports_transactions``; the
upsert engine branches on that flag. This text match only covers drivers and
poolers that accept BEGIN and fail later with a message instead of a typed
error. Keep every signature here so nothing else parses error text.
"""

__all__ = [
    "TRANSACTION_UNSUPPORTED_SIGNATURES",
    "is_transaction_unsupported_error",
]

TRANSACTION_UNSUPPORTED_SIGNATURES: tuple[re.Pattern[str], ...] = (
    # MongoDB standalone (no replica set)
    re.compile(r"Transaction numbers are only allowed", re.IGNORECASE),
    # pgbouncer in statement pooling mode
    re.compile(r"transaction blocks not allowed in statement pooling mode", re.IGNORECASE),
    re.compile(r"transactions? (are|is) not supported", re.IGNORECASE),
)


def is_transaction_unsupported_error(error: BaseException) -> bool:
    message = str(error)
    return any(p.search(message) for p in TRANSACTION_UNSUPPORTED_SIGNATURES)
