from __future__ import annotations


def redact_secret(value: str, *, keep: int = 4) -> str:
    if not value:
        return ""
    if len(value) <= keep * 2:
        return "*" * len(value)
    return f"{value[:keep]}...{value[-keep:]}"


def short_address(address: str | None) -> str:
    if not address:
        return ""
    return f"{address[:6]}...{address[-4:]}"
