"""Deterministic addressing for private conversations."""

SEPARATOR = "-"


def conversation_id(id_a: str, id_b: str) -> str:
    """
    Key for the private channel between two connection ids.

    Symmetric: conversation_id(a, b) == conversation_id(b, a).
    Ids must be non-empty and must not contain the separator.
    """
    first, second = sorted((id_a, id_b))
    return f"{first}{SEPARATOR}{second}"
