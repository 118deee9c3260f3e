from __future__ import annotations

import logging

_configured = False


def configure_logging(level: str | int = "INFO") -> None:
    """Configura el logging del proceso una sola vez."""
    global _configured
    if _configured:
        return

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )
    _configured = True
