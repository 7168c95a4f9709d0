"""
Trace / Step / Detail identifiers

Formats:
- trace:  trc_<epoch-ms base36>_<8 hex>
- step:   stp_<trace random suffix>_<step sequence>
- detail: dtl_<trace random suffix>_<step sequence>_<detail sequence>
          or dtl_<12 hex> for one-shot details

Step and structured detail IDs embed the owning trace's random suffix, so the
lineage of any ID can be recovered without a lookup.
"""

import secrets
import time
from typing import Optional

TRACE_PREFIX = "trc"
STEP_PREFIX = "stp"
DETAIL_PREFIX = "dtl"

# Suffix reserved for inert IDs handed out when no trace context exists.
INERT_SUFFIX = "00000000"
NULL_STEP_ID = f"{STEP_PREFIX}_{INERT_SUFFIX}_0"
NULL_DETAIL_ID = f"{DETAIL_PREFIX}_{INERT_SUFFIX}_0_0"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(number: int) -> str:
    if number < 0:
        raise ValueError("base36 encoding expects a non-negative integer")
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def random_suffix() -> str:
    """8 hex characters, never the inert suffix."""
    while True:
        suffix = secrets.token_hex(4)
        if suffix != INERT_SUFFIX:
            return suffix


def generate_trace_id(now_ms: Optional[int] = None, suffix: Optional[str] = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{TRACE_PREFIX}_{to_base36(now_ms)}_{suffix or random_suffix()}"


def generate_step_id(trace_id: str, sequence: int) -> str:
    suffix = trace_id.rsplit("_", 1)[-1]
    return f"{STEP_PREFIX}_{suffix}_{sequence}"


def generate_detail_id(step_id: str, sequence: int) -> str:
    body = step_id[len(STEP_PREFIX) + 1:] if step_id.startswith(f"{STEP_PREFIX}_") else step_id
    return f"{DETAIL_PREFIX}_{body}_{sequence}"


def generate_random_detail_id() -> str:
    return f"{DETAIL_PREFIX}_{secrets.token_hex(6)}"


def lineage_suffix(identifier: Optional[str]) -> Optional[str]:
    """
    Recover the owning trace's random suffix from an ID.

    Returns None for IDs that carry no lineage (random detail IDs, junk).
    """
    if not identifier or not isinstance(identifier, str):
        return None

    parts = identifier.split("_")
    prefix = parts[0]
    if prefix == TRACE_PREFIX and len(parts) == 3:
        return parts[2]
    if prefix == STEP_PREFIX and len(parts) == 3:
        return parts[1]
    if prefix == DETAIL_PREFIX and len(parts) == 4:
        return parts[1]
    return None


def is_inert(identifier: Optional[str]) -> bool:
    return identifier is None or lineage_suffix(identifier) == INERT_SUFFIX
