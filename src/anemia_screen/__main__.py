from __future__ import annotations

import uvicorn

from .api.app import create_app
from .config import Settings


def main(settings: Settings | None = None) -> None:
    s = settings or Settings.load()
    uvicorn.run(create_app(s), host="0.0.0.0", port=s.app.port, log_config=None)


if __name__ == "__main__":  # pragma: no cover - script entry
    main()
