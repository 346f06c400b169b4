import logging
import os

import uvicorn

from pharmacare_authz.core.config import settings


def _read_port() -> int:
    """Fetch and validate the PORT environment variable."""
    value = os.environ.get("PORT", "8000")
    try:
        return int(value)
    except ValueError as exc:
        raise SystemExit(f"Invalid PORT '{value}': {exc}") from exc


def main() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("pharmacare_authz.main:create_app", factory=True, host="0.0.0.0", port=_read_port())


if __name__ == "__main__":
    main()
