from typing import Iterable, Optional

NUMBER_WIDTH = 3


def initials(name: str) -> str:
    """First letter of every word, uppercased: "Innovate Inc." -> "II"."""
    return "".join(word[0] for word in (name or "").split()).upper()


def invoice_prefix(name: str, prefix_override: Optional[str] = None) -> str:
    if prefix_override and prefix_override.strip():
        return prefix_override.strip()
    return initials(name)


def next_invoice_number(name: str, prefix_override: Optional[str], history: Iterable[str]) -> str:
    """
    Next sequential number for a client or project.

    `history` holds the invoice numbers already issued in the same numbering scope.
    The number is not reserved; two concurrent callers reading the same history get
    the same result and the store's uniqueness constraint rejects the second save.
    """
    prefix = invoice_prefix(name, prefix_override)
    used = sum(1 for number in history if number and number.startswith(prefix))
    return f"{prefix}{used + 1:0{NUMBER_WIDTH}d}"
