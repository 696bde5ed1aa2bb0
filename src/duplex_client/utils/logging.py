"""Structured logging utilities."""

import logging

MASK_KEEP_CHARS = 4
MASK_MAX_STARS = 8


def setup_logging(level: str = "INFO", verbose: bool = False) -> None:
    """Setup logging for the client.

    Args:
        level: Logging level name
        verbose: Force DEBUG regardless of ``level``
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def mask_identifier(value: str | None, keep: int = MASK_KEEP_CHARS) -> str | None:
    """Mask an identifier or token for logging.

    Keeps the first ``keep`` characters and replaces the rest with at most
    eight asterisks, so log lines stay correlatable without leaking the value.

    Args:
        value: Identifier, token or None
        keep: Number of leading characters to keep

    Returns:
        Masked string, or None when ``value`` is None
    """
    if value is None:
        return None
    if len(value) <= keep:
        return "*" * len(value)
    return value[:keep] + "*" * min(MASK_MAX_STARS, len(value) - keep)
