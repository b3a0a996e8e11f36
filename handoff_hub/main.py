"""
Main entry point for the handoff hub.
"""

import uvicorn

from handoff_hub.config import get_settings
from handoff_hub.utils.logging import setup_logging


def main() -> None:
    """Run the handoff hub API."""
    settings = get_settings()
    setup_logging(settings)
    
    uvicorn.run(
        "handoff_hub.api.app:app",
        host=settings.api.host,
        port=settings.api.port,
        workers=settings.api.workers if not settings.api.debug else 1,
        reload=settings.api.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
