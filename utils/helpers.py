"""Helper utilities for the SkillSwap backend"""

import uuid


def generate_transaction_reference() -> str:
    """Globally unique public reference for a ledger row"""
    return str(uuid.uuid4())


def normalize_reason(reason) -> str:
    """Collapse surrounding whitespace; blank input becomes an empty string"""
    return (reason or "").strip()
